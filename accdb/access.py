"""Read-only access to a merged accession mapping store.

Lookups return 0 for "no mapping". Single-key lookups never raise: SQLite
errors on that path are logged and counted in ``error_count`` instead, so a
caller resolving millions of accessions is not interrupted by one failure.
Batched lookups are the hot path and do raise.
"""

import logging
import os
import sqlite3
from itertools import islice

import numpy as np
import pandas as pd

from accdb import config, database
from accdb.database import quote
from accdb.errors import AccessionDBError, IncompatibleStoreError, StoreNotFoundError

logger = logging.getLogger(__name__)

MAPPINGS = config.MAPPINGS_TABLE
ACC = config.ACCESSION_COLUMN

NOT_FOUND = -1


class AccessionStore:
    """Read-only handle on a store file.

    ``classifications`` names the classifications the caller will query with
    get(); they are resolved to column positions once, at open. Names the
    store does not contain resolve to NOT_FOUND and look up as 0. With None,
    every column of the store is resolved.
    """

    def __init__(self, db_path, classifications=None, options=None):
        self.db_path = str(db_path)
        self.options = options or config.StoreOptions()
        self.requested = list(classifications) if classifications is not None else None
        self.error_count = 0
        self.con = None
        self._open()

    def _open(self):
        if not os.path.isfile(self.db_path) or os.path.getsize(self.db_path) == 0:
            raise StoreNotFoundError(f"File not found or unreadable: {self.db_path}")

        try:
            con = database.get_connection(self.db_path, read_only=True, options=self.options)
        except sqlite3.Error as e:
            raise StoreNotFoundError(f"File not found or unreadable: {self.db_path}") from e

        try:
            general = database.get_general_description(con)
            edition = database.get_edition(con)
            columns = database.get_table_columns(con, MAPPINGS)
        except sqlite3.Error as e:
            con.close()
            raise StoreNotFoundError(
                f"File not found or unreadable: {self.db_path} ({e})"
            ) from e
        if not columns:
            con.close()
            raise StoreNotFoundError(f"Not a merged accession mapping store: {self.db_path}")

        for marker in (general, edition):
            if marker is not None and not self.options.file_filter(marker):
                con.close()
                raise IncompatibleStoreError(
                    f"Mapping file {os.path.basename(self.db_path)} is intended for a different "
                    f"edition, it is not compatible with this reader"
                )

        self.con = con
        self.edition = edition
        self.column_names = [name for name, _ in columns if name != ACC]
        self._column_types = {name: decl for name, decl in columns}
        self._positions = {name: i for i, name in enumerate(self.column_names)}
        names = self.requested if self.requested is not None else self.column_names
        self._index = {name: self._positions.get(name, NOT_FOUND) for name in names}
        self._select_list = ", ".join([ACC] + [quote(c) for c in self.column_names])

        logger.debug("Opened %s read-only: %d classification columns", self.db_path, len(self.column_names))

    def reopen(self):
        """Reconnect and re-resolve column positions, e.g. after a rebuild."""
        self.close()
        self._open()

    def close(self):
        if self.con is not None:
            self.con.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # -----------------------------------------------------------------------
    # Column resolution
    # -----------------------------------------------------------------------

    @property
    def classification_index(self):
        return dict(self._index)

    def index_of(self, classification):
        return self._index.get(classification, NOT_FOUND)

    def get_type(self, classification):
        declared = self._column_types.get(classification)
        if declared is None:
            return None
        declared = declared.upper()
        if declared == "TEXT":
            return "TEXT"
        if declared.startswith("INT") or declared.startswith("NUM"):
            return "INT"
        return None

    # -----------------------------------------------------------------------
    # Lookups
    # -----------------------------------------------------------------------

    def _value(self, raw):
        if not raw:
            return 0
        return self.options.value_filter(int(raw))

    def get(self, classification, accession):
        """Value of one accession in one classification, 0 if there is none."""
        index = self._index.get(classification, NOT_FOUND)
        if index == NOT_FOUND:
            return 0
        column = quote(self.column_names[index])
        try:
            row = self.con.execute(
                f"SELECT {column} FROM {MAPPINGS} WHERE {ACC} = ?", [accession]
            ).fetchone()
            return self._value(row[0]) if row is not None else 0
        except (sqlite3.Error, ValueError) as e:
            self.error_count += 1
            logger.warning("Lookup of %s in %s failed (%s): %s", accession, classification, self.db_path, e)
            return 0

    def get_many(self, accessions, count=None):
        """Full value rows for the first ``count`` accessions (all if None).

        Returns {accession: [value per column, in column order]}. Accessions
        the store does not contain are left out. Each IN (...) query binds at
        most options.max_query_variables accessions.
        """
        keys = list(dict.fromkeys(islice(accessions, count)))
        step = max(1, self.options.max_query_variables)
        results = {}
        for start in range(0, len(keys), step):
            chunk = keys[start:start + step]
            placeholders = ", ".join("?" * len(chunk))
            rows = self.con.execute(
                f"SELECT {self._select_list} FROM {MAPPINGS} WHERE {ACC} IN ({placeholders})",
                chunk,
            )
            for row in rows:
                results[row[0]] = [self._value(v) for v in row[1:]]
        return results

    def get_values(self, accessions, classifications):
        """One row per input accession, in input order, for the named classifications."""
        accessions = list(accessions)
        indices = [self._positions.get(name, NOT_FOUND) for name in classifications]
        rows = self.get_many(accessions)
        result = []
        for accession in accessions:
            row = rows.get(accession)
            if row is None:
                result.append([0] * len(indices))
            else:
                result.append([row[i] if i != NOT_FOUND else 0 for i in indices])
        return result

    def get_frame(self, accessions, classifications=None):
        """Found accessions as an int64 DataFrame indexed by accession."""
        names = list(classifications) if classifications is not None else list(self.column_names)
        indices = [self._positions.get(name, NOT_FOUND) for name in names]
        rows = self.get_many(accessions)
        matrix = np.array(
            [[row[i] if i != NOT_FOUND else 0 for i in indices] for row in rows.values()],
            dtype=np.int64,
        ).reshape(len(rows), len(names))
        return pd.DataFrame(matrix, index=pd.Index(list(rows), name=ACC), columns=names)

    # -----------------------------------------------------------------------
    # Catalog
    # -----------------------------------------------------------------------

    def classification_names(self):
        return database.list_classifications(self.con)

    def get_info(self):
        return database.get_info_string(self.con)

    def get_classification_info(self, classification):
        return database.format_classification_info(self.con, classification)

    def get_size(self):
        return database.get_general_count(self.con)

    def get_size_of(self, classification):
        return database.get_count(self.con, classification)


def contained_classifications(db_path, options=None):
    """Classification names in a store, or [] if it cannot be opened."""
    try:
        with AccessionStore(db_path, options=options) as store:
            return store.classification_names()
    except (AccessionDBError, sqlite3.Error):
        return []
