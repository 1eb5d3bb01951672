import sys
import os

import pytest

# Ensure the project root is on the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from accdb import config
from accdb.access import AccessionStore
from accdb.create import StoreBuilder


@pytest.fixture
def options():
    return config.StoreOptions(show_progress=False)


@pytest.fixture
def write_source(tmp_path):
    """Factory: write lines (or (accession, value) pairs) to a TSV file."""
    def _write(name, rows, header=None):
        path = tmp_path / name
        with open(path, "w", encoding="utf-8") as f:
            if header is not None:
                f.write(header + "\n")
            for row in rows:
                if isinstance(row, str):
                    f.write(row + "\n")
                else:
                    f.write("\t".join(str(x) for x in row) + "\n")
        return path
    return _write


@pytest.fixture
def store_path(tmp_path):
    return str(tmp_path / "map.db")


@pytest.fixture
def two_class_store(store_path, write_source, options):
    """taxon: acc1..acc3 (acc2 has a zero); kegg: acc2, acc4."""
    taxon = write_source("taxon.tsv", [("acc1", 100), ("acc2", 0), ("acc3", 42)])
    kegg = write_source("kegg.tsv", [("acc2", 7), ("acc4", 9)])
    with StoreBuilder(store_path, info="test store", overwrite=True, options=options) as builder:
        builder.insert_classification("taxon", taxon, "NCBI taxonomy")
        builder.insert_classification("kegg", kegg, "KEGG orthology")
        builder.merge_tables()
    return store_path


@pytest.fixture
def reader(two_class_store, options):
    store = AccessionStore(two_class_store, options=options)
    yield store
    store.close()
