import os
import re
import sqlite3
from contextlib import contextmanager
from pathlib import Path

import pandas as pd

from accdb import config
from accdb.errors import (
    ClassificationExistsError,
    ClassificationNotFoundError,
    InvalidClassificationNameError,
    StoreError,
)

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def get_connection(db_path=None, read_only=False, options=None):
    """Open a store file.

    Connections run in autocommit mode; writers group statements with
    transaction(). Read-only handles use a mode=ro URI so they never take a
    write lock.
    """
    if db_path is None:
        db_path = config.DB_PATH
    if options is None:
        options = config.StoreOptions()

    if read_only:
        uri = Path(db_path).resolve().as_uri() + "?mode=ro"
        con = sqlite3.connect(uri, uri=True, isolation_level=None)
        con.execute(f"PRAGMA cache_size = {int(options.cache_size)}")
        return con

    con = sqlite3.connect(str(db_path), isolation_level=None)
    con.execute(f"PRAGMA cache_size = {int(options.build_cache_size)}")
    con.execute("PRAGMA locking_mode = EXCLUSIVE")
    con.execute("PRAGMA synchronous = NORMAL")
    if options.temp_store_in_memory:
        con.execute("PRAGMA temp_store = MEMORY")
    elif options.temp_store_directory:
        directory = options.temp_store_directory
        if os.path.isdir(directory) and os.access(directory, os.W_OK):
            escaped = directory.replace("'", "''")
            con.execute(f"PRAGMA temp_store_directory = '{escaped}'")
    return con


@contextmanager
def transaction(con):
    """BEGIN ... COMMIT, rolling back on any exception (DDL included)."""
    con.execute("BEGIN")
    try:
        yield con
    except BaseException:
        # SQLite may already have rolled back on I/O or disk-full errors
        if con.in_transaction:
            con.execute("ROLLBACK")
        raise
    con.execute("COMMIT")


# ---------------------------------------------------------------------------
# Names
# ---------------------------------------------------------------------------

def quote(identifier):
    return '"' + identifier.replace('"', '""') + '"'


def validate_classification_name(name):
    if not isinstance(name, str) or not _NAME_RE.match(name):
        raise InvalidClassificationNameError(
            f"Invalid classification name {name!r}: must be a letter or underscore "
            f"followed by letters, digits or underscores"
        )
    if name.lower() in config.RESERVED_NAMES:
        raise InvalidClassificationNameError(f"Classification name {name!r} is reserved")
    return name


def staging_table_name(name):
    return config.STAGING_PREFIX + name


def classification_of(staging_table):
    return staging_table[len(config.STAGING_PREFIX):]


# ---------------------------------------------------------------------------
# Schema inspection
# ---------------------------------------------------------------------------

def table_exists(con, table_name):
    result = con.execute(
        "SELECT COUNT(*) FROM sqlite_master WHERE type = 'table' AND lower(name) = lower(?)",
        [table_name],
    ).fetchone()
    return result[0] > 0


def get_table_columns(con, table_name):
    """[(name, declared_type), ...] in column order."""
    rows = con.execute(f"PRAGMA table_info({quote(table_name)})").fetchall()
    return [(r[1], r[2]) for r in rows]


def list_staging_tables(con):
    rows = con.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name LIKE ? ESCAPE '\\' "
        "ORDER BY rowid",
        [config.STAGING_PREFIX.replace("_", "\\_") + "%"],
    ).fetchall()
    return [r[0] for r in rows]


def get_mapping_columns(con):
    """Classification columns of the wide table, accession column excluded."""
    if not table_exists(con, config.MAPPINGS_TABLE):
        return []
    return [name for name, _ in get_table_columns(con, config.MAPPINGS_TABLE)
            if name != config.ACCESSION_COLUMN]


def check_name_collision(con, name):
    """Reject a name that differs only in case from one already in the store.

    SQLite matches table and column names case-insensitively, while info ids
    are case-sensitive; an exact match is a rebuild and is allowed.
    """
    known = set(list_classifications(con)) | set(get_mapping_columns(con))
    known.update(classification_of(t) for t in list_staging_tables(con))
    for other in known:
        if other != name and other.lower() == name.lower():
            raise ClassificationExistsError(
                f"Classification {name} collides with existing classification {other}"
            )


def count_rows(con, table_name):
    return con.execute(f"SELECT COUNT(*) FROM {quote(table_name)}").fetchone()[0]


# ---------------------------------------------------------------------------
# Metadata catalog
# ---------------------------------------------------------------------------

def create_info_table(con):
    con.execute(f"""
        CREATE TABLE IF NOT EXISTS {config.INFO_TABLE} (
            id TEXT PRIMARY KEY,
            description TEXT,
            count INTEGER
        )
    """)


def put_classification_info(con, name, description, count):
    # ON CONFLICT keeps the rowid, so registration order survives updates
    con.execute(f"""
        INSERT INTO {config.INFO_TABLE} (id, description, count) VALUES (?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET description = excluded.description, count = excluded.count
    """, [name, description, count])


def set_general_description(con, description):
    con.execute(f"""
        INSERT INTO {config.INFO_TABLE} (id, description, count) VALUES (?, ?, NULL)
        ON CONFLICT(id) DO UPDATE SET description = excluded.description
    """, [config.GENERAL_ID, description])


def ensure_general_record(con):
    con.execute(
        f"INSERT OR IGNORE INTO {config.INFO_TABLE} (id, description, count) VALUES (?, '', NULL)",
        [config.GENERAL_ID],
    )


def set_count(con, info_id, count):
    con.execute(f"UPDATE {config.INFO_TABLE} SET count = ? WHERE id = ?", [count, info_id])


def set_edition(con, edition):
    con.execute(f"""
        INSERT INTO {config.INFO_TABLE} (id, description, count) VALUES (?, ?, NULL)
        ON CONFLICT(id) DO UPDATE SET description = excluded.description
    """, [config.EDITION_ID, edition])


def get_edition(con):
    row = con.execute(
        f"SELECT description FROM {config.INFO_TABLE} WHERE id = ?", [config.EDITION_ID]
    ).fetchone()
    return row[0] if row else None


def _get_record(con, info_id):
    row = con.execute(
        f"SELECT description, count FROM {config.INFO_TABLE} WHERE id = ?", [info_id]
    ).fetchone()
    if row is None:
        raise ClassificationNotFoundError(info_id)
    return row


def get_description(con, name):
    return _get_record(con, name)[0] or ""


def get_count(con, name):
    """Registered count; raises ClassificationNotFoundError if never registered."""
    return _get_record(con, name)[1] or 0


def get_general_description(con):
    row = con.execute(
        f"SELECT description FROM {config.INFO_TABLE} WHERE id = ?", [config.GENERAL_ID]
    ).fetchone()
    return row[0] if row else None


def get_general_count(con):
    row = con.execute(
        f"SELECT count FROM {config.INFO_TABLE} WHERE id = ?", [config.GENERAL_ID]
    ).fetchone()
    if row is not None and row[0] is not None:
        return row[0]
    if table_exists(con, config.MAPPINGS_TABLE):
        return count_rows(con, config.MAPPINGS_TABLE)
    return 0


def list_classifications(con):
    rows = con.execute(
        f"SELECT id FROM {config.INFO_TABLE} WHERE id NOT IN (?, ?) ORDER BY rowid",
        [config.GENERAL_ID, config.EDITION_ID],
    ).fetchall()
    return [r[0] for r in rows]


def format_classification_info(con, name):
    return f"{get_description(con, name)}, size: {get_count(con, name):,}"


def get_info_string(con):
    description = get_general_description(con)
    if description is None:
        raise StoreError("Store has no general info record")
    lines = [description]
    for name in list_classifications(con):
        lines.append(f"{name}: {format_classification_info(con, name)}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def _format_size(size_bytes):
    if size_bytes >= 1_073_741_824:
        return f"{size_bytes / 1_073_741_824:.2f} GB"
    if size_bytes >= 1_048_576:
        return f"{size_bytes / 1_048_576:.1f} MB"
    if size_bytes >= 1024:
        return f"{size_bytes / 1024:.1f} KB"
    return f"{size_bytes} bytes"


def coverage_frame(con):
    """Per-classification coverage of the wide table as a DataFrame."""
    columns = get_mapping_columns(con)
    total = count_rows(con, config.MAPPINGS_TABLE) if columns else 0
    registered = set(list_classifications(con))
    records = []
    for name in columns:
        n_mapped = con.execute(
            f"SELECT COUNT({quote(name)}) FROM {config.MAPPINGS_TABLE}"
        ).fetchone()[0]
        records.append({
            "classification": name,
            "mapped": n_mapped,
            "coverage": n_mapped / total if total else 0.0,
            "registered_count": get_count(con, name) if name in registered else None,
            "description": get_description(con, name) if name in registered else "",
        })
    return pd.DataFrame(
        records,
        columns=["classification", "mapped", "coverage", "registered_count", "description"],
    )


def print_store_report(con, db_path):
    print("  ========== ACCESSION STORE REPORT ==========")

    if os.path.exists(db_path):
        print(f"  Store: {db_path} ({_format_size(os.path.getsize(db_path))})")
    else:
        print(f"  Store: {db_path} (file not found)")

    edition = get_edition(con)
    if edition:
        print(f"  Edition: {edition}")

    tables = [r[0] for r in con.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name"
    ).fetchall()]
    for table in tables:
        print(f"  {table:30s} {count_rows(con, table):>12,} rows")

    pending = list_staging_tables(con)
    if pending:
        print(f"  Staged, not compacted: {', '.join(classification_of(t) for t in pending)}")

    df = coverage_frame(con)
    if df.empty:
        print("  No merged classifications")
    else:
        df["coverage"] = (df["coverage"] * 100).round(1).astype(str) + "%"
        for line in df.to_string(index=False).splitlines():
            print(f"  {line}")

    print("  ============================================")
