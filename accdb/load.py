"""Load per-classification source files into staging tables.

A source file has one mapping per line, accession and integer value
separated by a tab. Zero values mean "no mapping" and are never stored.
Each classification lands in its own staging table until the merge folds
it into the wide table.
"""

import gzip
import re
import sqlite3

from tqdm import tqdm

from accdb import config, database
from accdb.database import quote, transaction
from accdb.errors import DuplicateAccessionError, SourceFormatError

_INTEGER_RE = re.compile(r"^[+-]?\d+$")

# SQLite INTEGER is a signed 64-bit value
MIN_VALUE = -2 ** 63
MAX_VALUE = 2 ** 63 - 1


def open_source(path):
    """Open a source file as bytes; lines are decoded one at a time."""
    path = str(path)
    if path.endswith(".gz"):
        return gzip.open(path, "rb")
    return open(path, "rb")


def _decode(raw, path, line_number):
    if isinstance(raw, str):
        return raw
    try:
        return raw.decode("utf-8-sig" if line_number == 1 else "utf-8")
    except UnicodeDecodeError as e:
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        raise SourceFormatError(path, line_number, line, f"invalid UTF-8 ({e.reason})") from e


def iter_source_records(lines, path, accession_column=0, value_column=1,
                        has_header=False, extra_columns=False):
    """Yield (line_number, accession, value) for every non-zero mapping.

    Accepts str or bytes lines. Blank lines and '#' comment lines are
    skipped; with has_header the first line is skipped whatever it contains.
    """
    n_fields = max(accession_column, value_column) + 1
    for line_number, raw in enumerate(lines, start=1):
        line = _decode(raw, path, line_number).rstrip("\r\n")
        if has_header and line_number == 1:
            continue
        if not line.strip() or line.startswith("#"):
            continue

        fields = line.split("\t")
        if len(fields) < n_fields or (len(fields) > n_fields and not extra_columns):
            raise SourceFormatError(
                path, line_number, line,
                f"expected {n_fields} tab-separated fields, found {len(fields)}",
            )

        accession = fields[accession_column].strip()
        if not accession:
            raise SourceFormatError(path, line_number, line, "empty accession")

        token = fields[value_column].strip()
        if not _INTEGER_RE.match(token):
            raise SourceFormatError(path, line_number, line, f"value {token!r} is not an integer")

        value = int(token)
        if not MIN_VALUE <= value <= MAX_VALUE:
            raise SourceFormatError(path, line_number, line, f"value {token} is out of range")
        if value != 0:
            yield line_number, accession, value


def create_staging_table(con, name):
    table = quote(database.staging_table_name(name))
    con.execute(f"DROP TABLE IF EXISTS {table}")
    con.execute(f"""
        CREATE TABLE {table} (
            {config.ACCESSION_COLUMN} TEXT PRIMARY KEY,
            {config.STAGING_VALUE_COLUMN} INTEGER NOT NULL
        ) WITHOUT ROWID
    """)


def build_classification_table(con, name, path, description, accession_column=0,
                               value_column=1, has_header=False, extra_columns=False,
                               show_progress=config.SHOW_PROGRESS):
    """Stage one classification source file; returns the number of stored mappings.

    Table creation, inserts and the catalog entry share one transaction, so a
    malformed line or a duplicate accession leaves no trace in the store.
    """
    database.validate_classification_name(name)
    database.check_name_collision(con, name)
    table = database.staging_table_name(name)
    current = None

    with open_source(path) as handle, \
            tqdm(handle, desc=f"Loading {name}", unit=" lines", disable=not show_progress) as lines:
        records = iter_source_records(
            lines, path,
            accession_column=accession_column, value_column=value_column,
            has_header=has_header, extra_columns=extra_columns,
        )

        def rows():
            nonlocal current
            for line_number, accession, value in records:
                current = (line_number, accession)
                yield accession, value

        try:
            with transaction(con):
                create_staging_table(con, name)
                con.executemany(
                    f"INSERT INTO {quote(table)} ({config.ACCESSION_COLUMN}, "
                    f"{config.STAGING_VALUE_COLUMN}) VALUES (?, ?)",
                    rows(),
                )
                count = database.count_rows(con, table)
                database.put_classification_info(con, name, description, count)
        except sqlite3.IntegrityError as e:
            line_number, accession = current
            raise DuplicateAccessionError(name, accession, line_number) from e

    print(f"  Table {name}: added {count:,} items")
    return count
