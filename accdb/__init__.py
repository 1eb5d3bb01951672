from accdb.access import NOT_FOUND, AccessionStore, contained_classifications
from accdb.config import StoreOptions
from accdb.create import StoreBuilder
from accdb.errors import (
    AccessionDBError,
    ClassificationExistsError,
    ClassificationNotFoundError,
    DuplicateAccessionError,
    IncompatibleStoreError,
    InvalidClassificationNameError,
    SchemaError,
    SourceFormatError,
    StoreError,
    StoreNotFoundError,
)

__version__ = "0.1.0"
