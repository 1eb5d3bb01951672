"""Merge staging tables into the wide mappings table, compact, and patch columns.

The merge materializes a multi-way left outer join: the union of all
accessions seen in any staging table (and in the existing wide table, when
extending) drives one join against every staging table. SQLite has
transactional DDL, so the whole merge commits or rolls back as one unit.
Compaction runs afterwards and is safe to repeat; it also clears leftovers
of sessions that stopped between merge and compaction.
"""

from tqdm import tqdm

from accdb import config, database
from accdb.database import count_rows, quote, table_exists, transaction
from accdb.errors import ClassificationExistsError, StoreError
from accdb.load import iter_source_records, open_source

MAPPINGS = config.MAPPINGS_TABLE
PREVIOUS = config.PREVIOUS_MAPPINGS_TABLE
UNION = config.UNION_TABLE
ACC = config.ACCESSION_COLUMN

# SQLite refuses joins over more than 64 tables
MAX_JOIN_TABLES = 64


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

def recover_previous_table(con):
    """Resolve a mappings_previous table left by an interrupted session."""
    if not table_exists(con, PREVIOUS):
        return
    if table_exists(con, MAPPINGS):
        # the current wide table already contains everything the old one had
        print(f"  Dropping stale {PREVIOUS}")
        con.execute(f"DROP TABLE {PREVIOUS}")
    else:
        print(f"  Restoring {PREVIOUS} as {MAPPINGS}")
        con.execute(f"ALTER TABLE {PREVIOUS} RENAME TO {MAPPINGS}")


def create_accession_union(con, staging_tables, include_mappings):
    selects = [f"SELECT {ACC} FROM {quote(t)}" for t in staging_tables]
    if include_mappings:
        selects.append(f"SELECT {ACC} FROM {MAPPINGS}")

    con.execute(f"DROP TABLE IF EXISTS {UNION}")
    con.execute(f"CREATE TABLE {UNION} ({ACC} TEXT PRIMARY KEY) WITHOUT ROWID")
    con.execute(f"INSERT INTO {UNION} ({ACC}) " + " UNION ".join(selects))
    return count_rows(con, UNION)


def create_mappings_table(con, prior_columns, names):
    """Create the wide table; prior columns keep their order, new ones follow."""
    known = {c.lower() for c in prior_columns}
    columns = list(prior_columns) + [n for n in names if n.lower() not in known]
    column_defs = "".join(f", {quote(c)} INTEGER" for c in columns)
    con.execute(f"CREATE TABLE {MAPPINGS} ({ACC} TEXT PRIMARY KEY{column_defs}) WITHOUT ROWID")
    return columns


def populate_mappings(con, columns, names, has_previous):
    joins = [f"FROM {UNION} AS u"]
    if has_previous:
        joins.append(f"LEFT OUTER JOIN {PREVIOUS} AS p ON p.{ACC} = u.{ACC}")

    staged = {}
    for i, name in enumerate(names):
        alias = f"s{i}"
        staged[name.lower()] = alias
        table = quote(database.staging_table_name(name))
        joins.append(f"LEFT OUTER JOIN {table} AS {alias} ON {alias}.{ACC} = u.{ACC}")

    selects = [f"u.{ACC}"]
    for column in columns:
        alias = staged.get(column.lower())
        if alias is not None:
            selects.append(f"{alias}.{config.STAGING_VALUE_COLUMN}")
        else:
            # zero is the absence sentinel, never stored
            selects.append(f"NULLIF(p.{quote(column)}, 0)")

    column_list = ", ".join([ACC] + [quote(c) for c in columns])
    con.execute(
        f"INSERT INTO {MAPPINGS} ({column_list}) SELECT {', '.join(selects)} " + " ".join(joins)
    )


def drop_empty_rows(con, columns):
    """Delete accessions left without any value, e.g. by a rebuilt classification."""
    condition = " AND ".join(f"{quote(c)} IS NULL" for c in columns)
    return con.execute(f"DELETE FROM {MAPPINGS} WHERE {condition}").rowcount


def merge_tables(con):
    """Fold every staging table into the wide table; returns the merged names.

    A classification that is both an existing column and staged is replaced
    by its staged values. Staging and union tables stay behind for
    compact_store() to drop.
    """
    staging = database.list_staging_tables(con)
    if not staging:
        print("  Nothing to merge")
        return []
    if len(staging) + 2 > MAX_JOIN_TABLES:
        raise StoreError(
            f"{len(staging)} staged classifications exceed the join limit, merge in batches"
        )
    names = [database.classification_of(t) for t in staging]
    print(f"  Merging {len(names)} classification(s): {', '.join(names)}")

    with transaction(con):
        recover_previous_table(con)
        extending = table_exists(con, MAPPINGS)

        print("  Creating accession table...")
        n_accessions = create_accession_union(con, staging, include_mappings=extending)

        prior_columns = []
        if extending:
            prior_columns = database.get_mapping_columns(con)
            con.execute(f"ALTER TABLE {MAPPINGS} RENAME TO {PREVIOUS}")

        print("  Joining tables...")
        columns = create_mappings_table(con, prior_columns, names)
        populate_mappings(con, columns, names, has_previous=extending)
        if extending:
            n_accessions -= drop_empty_rows(con, columns)

    print(f"  {MAPPINGS}: {n_accessions:,} accessions, {len(columns)} classifications")
    return names


# ---------------------------------------------------------------------------
# Compaction
# ---------------------------------------------------------------------------

def compact_store(con):
    """Drop merged staging tables and merge leftovers, VACUUM, refresh counts.

    Staging tables whose classification is not yet a column of the wide
    table are kept and reported as pending.
    """
    has_mappings = table_exists(con, MAPPINGS)
    merged = {c.lower() for c in database.get_mapping_columns(con)}
    dropped = []
    pending = []

    print("  Cleaning up...")
    with transaction(con):
        if table_exists(con, UNION):
            con.execute(f"DROP TABLE {UNION}")
            dropped.append(UNION)
        if has_mappings and table_exists(con, PREVIOUS):
            con.execute(f"DROP TABLE {PREVIOUS}")
            dropped.append(PREVIOUS)
        for table in database.list_staging_tables(con):
            name = database.classification_of(table)
            if name.lower() in merged:
                con.execute(f"DROP TABLE {quote(table)}")
                dropped.append(table)
            else:
                pending.append(name)

    con.execute("VACUUM")

    counts = {}
    total = None
    if has_mappings:
        registered = set(database.list_classifications(con))
        with transaction(con):
            total = count_rows(con, MAPPINGS)
            database.ensure_general_record(con)
            database.set_count(con, config.GENERAL_ID, total)
            for column in database.get_mapping_columns(con):
                n = con.execute(f"SELECT COUNT({quote(column)}) FROM {MAPPINGS}").fetchone()[0]
                counts[column] = n
                if column in registered:
                    database.set_count(con, column, n)
                else:
                    database.put_classification_info(con, column, "", n)

    if dropped:
        print(f"  Dropped {len(dropped)} table(s): {', '.join(dropped)}")
    if pending:
        print(f"  Pending (staged, not merged): {', '.join(pending)}")
    if total is not None:
        print(f"  Store size: {total:,} accessions")
    return {"dropped": dropped, "pending": pending, "size": total, "counts": counts}


# ---------------------------------------------------------------------------
# Incremental column
# ---------------------------------------------------------------------------

def add_column(con, name, path, description, accession_column=0, value_column=1,
               has_header=False, extra_columns=False, show_progress=config.SHOW_PROGRESS):
    """Add one classification column to an existing wide table.

    Only rows already in the store are updated; mappings for accessions the
    store does not know are dropped. Returns the number of values set.
    """
    database.validate_classification_name(name)
    if not table_exists(con, MAPPINGS):
        raise StoreError(f"No {MAPPINGS} table, build and merge the store first")
    if name.lower() in {c.lower() for c in database.get_mapping_columns(con)}:
        raise ClassificationExistsError(f"Classification {name} is already a column of {MAPPINGS}")
    database.check_name_collision(con, name)

    n_read = 0
    with open_source(path) as handle, \
            tqdm(handle, desc=f"Adding {name}", unit=" lines", disable=not show_progress) as lines:
        records = iter_source_records(
            lines, path,
            accession_column=accession_column, value_column=value_column,
            has_header=has_header, extra_columns=extra_columns,
        )

        def updates():
            nonlocal n_read
            for _, accession, value in records:
                n_read += 1
                yield value, accession

        with transaction(con):
            con.execute(f"ALTER TABLE {MAPPINGS} ADD COLUMN {quote(name)} INTEGER")
            con.executemany(
                f"UPDATE {MAPPINGS} SET {quote(name)} = ? WHERE {ACC} = ?", updates()
            )
            count = con.execute(f"SELECT COUNT({quote(name)}) FROM {MAPPINGS}").fetchone()[0]
            database.put_classification_info(con, name, description, count)

    print(f"  Column {name}: set {count:,} values")
    if n_read > count:
        print(f"  Column {name}: {n_read - count:,} mappings not applied (unknown or repeated accessions)")
    return count
