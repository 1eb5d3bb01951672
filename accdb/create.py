import os

from accdb import config, database, load, merge
from accdb.errors import StoreError


class StoreBuilder:
    """Write side of an accession mapping store.

    Holds one exclusive writer connection. With overwrite=True any existing
    file is replaced, otherwise the store is extended: newly staged
    classifications are merged into the existing wide table.
    """

    def __init__(self, db_path, info=None, overwrite=False, edition=None, options=None):
        self.db_path = str(db_path)
        self.options = options or config.StoreOptions()
        self.staged = []

        if overwrite:
            if os.path.isdir(self.db_path):
                raise StoreError(f"Invalid store path, is a directory: {self.db_path}")
            parent = os.path.dirname(os.path.abspath(self.db_path))
            if not os.path.isdir(parent):
                raise StoreError(f"Invalid store path, no such directory: {parent}")
            for suffix in ("", "-journal", "-wal", "-shm"):
                if os.path.exists(self.db_path + suffix):
                    os.remove(self.db_path + suffix)

        self.con = database.get_connection(self.db_path, options=self.options)
        with database.transaction(self.con):
            database.create_info_table(self.con)
            if info is not None:
                database.set_general_description(self.con, info)
            else:
                database.ensure_general_record(self.con)
            if edition is not None:
                database.set_edition(self.con, edition)

    def insert_classification(self, name, path, description, accession_column=0,
                              value_column=1, has_header=False, extra_columns=False):
        """Stage one classification; merging happens in merge_tables()."""
        count = load.build_classification_table(
            self.con, name, path, description,
            accession_column=accession_column, value_column=value_column,
            has_header=has_header, extra_columns=extra_columns,
            show_progress=self.options.show_progress,
        )
        if name not in self.staged:
            self.staged.append(name)
        return count

    def merge_tables(self):
        """Merge everything staged, then compact. Takes a long time on real data."""
        names = merge.merge_tables(self.con)
        result = merge.compact_store(self.con)
        self.staged = [n for n in self.staged if n in result["pending"]]
        return names

    def compact(self):
        return merge.compact_store(self.con)

    def add_column(self, name, path, description, accession_column=0, value_column=1,
                   has_header=False, extra_columns=False):
        return merge.add_column(
            self.con, name, path, description,
            accession_column=accession_column, value_column=value_column,
            has_header=has_header, extra_columns=extra_columns,
            show_progress=self.options.show_progress,
        )

    def get_info(self):
        return database.get_info_string(self.con)

    def close(self):
        if self.con is not None:
            self.con.close()
            self.con = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
