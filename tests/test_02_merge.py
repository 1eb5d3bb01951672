"""Layer 2: staging tables → wide mappings table."""

import pytest

from accdb import config, database, merge
from accdb.access import AccessionStore
from accdb.create import StoreBuilder
from accdb.errors import StoreError


def _mappings(con):
    columns = database.get_mapping_columns(con)
    rows = con.execute(f"SELECT * FROM {config.MAPPINGS_TABLE} ORDER BY Accession").fetchall()
    return columns, {r[0]: tuple(r[1:]) for r in rows}


@pytest.fixture
def builder(store_path, options):
    b = StoreBuilder(store_path, info="merge test", overwrite=True, options=options)
    yield b
    b.close()


class TestFreshMerge:
    def test_union_of_accessions(self, builder, write_source):
        taxon = write_source("taxon.tsv", [("acc1", 100), ("acc2", 0), ("acc3", 42)])
        kegg = write_source("kegg.tsv", [("acc2", 7), ("acc4", 9)])
        builder.insert_classification("taxon", taxon, "NCBI taxonomy")
        builder.insert_classification("kegg", kegg, "KEGG")
        names = merge.merge_tables(builder.con)

        assert names == ["taxon", "kegg"]
        columns, rows = _mappings(builder.con)
        assert columns == ["taxon", "kegg"]
        assert rows == {
            "acc1": (100, None),
            "acc2": (None, 7),
            "acc3": (42, None),
            "acc4": (None, 9),
        }

    def test_absent_values_stored_as_null(self, two_class_store, options):
        con = database.get_connection(two_class_store, read_only=True, options=options)
        try:
            zeros = con.execute(
                f"SELECT COUNT(*) FROM {config.MAPPINGS_TABLE} WHERE taxon = 0 OR kegg = 0"
            ).fetchone()[0]
            nulls = con.execute(
                f"SELECT COUNT(*) FROM {config.MAPPINGS_TABLE} WHERE taxon IS NULL"
            ).fetchone()[0]
        finally:
            con.close()
        assert zeros == 0
        assert nulls == 2

    def test_without_rowid(self, two_class_store, options):
        con = database.get_connection(two_class_store, read_only=True, options=options)
        try:
            sql = con.execute(
                "SELECT sql FROM sqlite_master WHERE name = ?", [config.MAPPINGS_TABLE]
            ).fetchone()[0]
        finally:
            con.close()
        assert "WITHOUT ROWID" in sql.upper()

    def test_nothing_to_merge(self, builder):
        assert merge.merge_tables(builder.con) == []
        assert not database.table_exists(builder.con, config.MAPPINGS_TABLE)

    def test_single_classification(self, builder, write_source):
        path = write_source("ec.tsv", [("a", 1), ("b", 2)])
        builder.insert_classification("EC", path, "EC numbers")
        builder.merge_tables()
        columns, rows = _mappings(builder.con)
        assert columns == ["EC"]
        assert rows == {"a": (1,), "b": (2,)}

    def test_join_limit(self, builder, write_source, monkeypatch):
        monkeypatch.setattr(merge, "MAX_JOIN_TABLES", 3)
        for name in ("a1", "a2"):
            builder.insert_classification(name, write_source(f"{name}.tsv", [("x", 1)]), name)
        with pytest.raises(StoreError):
            merge.merge_tables(builder.con)
        assert not database.table_exists(builder.con, config.MAPPINGS_TABLE)


class TestExtendingMerge:
    def test_new_column_keeps_existing_data(self, two_class_store, write_source, options):
        """A later merge adds a column and may add accessions; old values survive."""
        ec = write_source("ec.tsv", [("acc1", 5), ("acc9", 6)])
        with StoreBuilder(two_class_store, options=options) as builder:
            builder.insert_classification("EC", ec, "EC numbers")
            builder.merge_tables()
            columns, rows = _mappings(builder.con)

        assert columns == ["taxon", "kegg", "EC"]
        assert rows == {
            "acc1": (100, None, 5),
            "acc2": (None, 7, None),
            "acc3": (42, None, None),
            "acc4": (None, 9, None),
            "acc9": (None, None, 6),
        }

    def test_restaged_classification_replaces_column(self, two_class_store, write_source, options):
        kegg = write_source("kegg2.tsv", [("acc1", 70)])
        with StoreBuilder(two_class_store, options=options) as builder:
            builder.insert_classification("kegg", kegg, "KEGG 2024")
            builder.merge_tables()
            columns, rows = _mappings(builder.con)
            description = database.get_description(builder.con, "kegg")

        assert columns == ["taxon", "kegg"]
        assert rows == {"acc1": (100, 70), "acc3": (42, None)}
        assert description == "KEGG 2024"

    def test_restaged_classification_drops_orphaned_accessions(self, two_class_store, write_source, options):
        """Accessions only the old version of a classification had leave the store."""
        kegg = write_source("kegg2.tsv", [("acc1", 70)])
        with StoreBuilder(two_class_store, options=options) as builder:
            builder.insert_classification("kegg", kegg, "KEGG 2024")
            builder.merge_tables()
        with AccessionStore(two_class_store, options=options) as store:
            assert store.get_many(["acc2", "acc4"]) == {}
            assert store.get_size() == 2
            assert store.get_size_of("kegg") == 1

    def test_remerge_without_staging_is_noop(self, two_class_store, options):
        with StoreBuilder(two_class_store, options=options) as builder:
            before = _mappings(builder.con)
            assert builder.merge_tables() == []
            assert _mappings(builder.con) == before

    def test_stale_previous_table_dropped(self, two_class_store, write_source, options):
        """A mappings_previous left beside a complete wide table is discarded."""
        with StoreBuilder(two_class_store, options=options) as builder:
            builder.con.execute(
                f"CREATE TABLE {config.PREVIOUS_MAPPINGS_TABLE} AS SELECT * FROM {config.MAPPINGS_TABLE}"
            )
            builder.insert_classification("EC", write_source("ec.tsv", [("acc1", 5)]), "EC")
            builder.merge_tables()
            assert not database.table_exists(builder.con, config.PREVIOUS_MAPPINGS_TABLE)
            columns, rows = _mappings(builder.con)
        assert columns == ["taxon", "kegg", "EC"]
        assert rows["acc1"] == (100, None, 5)

    def test_orphaned_previous_table_restored(self, two_class_store, write_source, options):
        """Interrupted after the rename: the old wide table comes back first."""
        with StoreBuilder(two_class_store, options=options) as builder:
            builder.con.execute(
                f"ALTER TABLE {config.MAPPINGS_TABLE} RENAME TO {config.PREVIOUS_MAPPINGS_TABLE}"
            )
            builder.insert_classification("EC", write_source("ec.tsv", [("acc4", 5)]), "EC")
            builder.merge_tables()
            columns, rows = _mappings(builder.con)
        assert columns == ["taxon", "kegg", "EC"]
        assert rows["acc4"] == (None, 9, 5)
        assert rows["acc1"] == (100, None, None)


class TestScenarios:
    def test_single_taxon_store(self, store_path, write_source, options):
        path = write_source("taxon.tsv", ["acc1\t100", "acc2\t0", "acc3\t42"])
        with StoreBuilder(store_path, info="taxon only", overwrite=True, options=options) as b:
            b.insert_classification("taxon", path, "NCBI taxonomy")
            b.merge_tables()
        with AccessionStore(store_path, options=options) as store:
            assert store.get("taxon", "acc1") == 100
            assert store.get("taxon", "acc2") == 0
            assert store.get("taxon", "acc3") == 42
            assert store.get("taxon", "acc4") == 0

    def test_cross_classification_absence(self, store_path, write_source, options):
        with StoreBuilder(store_path, info="two", overwrite=True, options=options) as b:
            b.insert_classification("taxon", write_source("t.tsv", ["acc1\t100"]), "tax")
            b.insert_classification("kegg", write_source("k.tsv", ["acc2\t7"]), "kegg")
            b.merge_tables()
            _, rows = _mappings(b.con)
        assert set(rows) == {"acc1", "acc2"}
        with AccessionStore(store_path, options=options) as store:
            assert store.get("kegg", "acc1") == 0
            assert store.get("taxon", "acc2") == 0
            assert store.get_many(["acc1", "acc2"]) == {"acc1": [100, 0], "acc2": [0, 7]}
