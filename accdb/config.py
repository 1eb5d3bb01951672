from dataclasses import dataclass
from typing import Callable, Optional

# Store file
DB_PATH = "accession-map.db"

# Table names
MAPPINGS_TABLE = "mappings"
PREVIOUS_MAPPINGS_TABLE = "mappings_previous"
UNION_TABLE = "accession_union"
INFO_TABLE = "info"
STAGING_PREFIX = "staging_"
ACCESSION_COLUMN = "Accession"
STAGING_VALUE_COLUMN = "value"

# Reserved info ids
GENERAL_ID = "general"
EDITION_ID = "edition"
RESERVED_NAMES = frozenset({"accession", GENERAL_ID, EDITION_ID})

# SQLite tuning
READ_CACHE_SIZE = 10000          # pages, reader handles
BUILD_CACHE_SIZE = 10000         # pages, writer connection
TEMP_STORE_IN_MEMORY = False
TEMP_STORE_DIRECTORY = ""        # empty = SQLite default

# Bound-parameter limit per IN (...) query. Older SQLite builds cap a
# statement at 999 variables.
MAX_QUERY_VARIABLES = 999

# Batch size for the lookup command
LOOKUP_BATCH_SIZE = 5000

# Raw values at or below this floor are treated as absent on the read path.
VALUE_FLOOR = -1000

# Stores whose general info or edition ends with this suffix belong to a
# different product edition.
INCOMPATIBLE_EDITION_SUFFIX = "_UE"

SHOW_PROGRESS = True


def default_value_filter(value):
    return value if value > VALUE_FLOOR else 0


def default_file_filter(info):
    return not info.endswith(INCOMPATIBLE_EDITION_SUFFIX)


@dataclass
class StoreOptions:
    """Tuning knobs and filters passed to builders and readers."""
    value_filter: Callable[[int], int] = default_value_filter
    file_filter: Callable[[str], bool] = default_file_filter
    cache_size: int = READ_CACHE_SIZE
    build_cache_size: int = BUILD_CACHE_SIZE
    temp_store_in_memory: bool = TEMP_STORE_IN_MEMORY
    temp_store_directory: Optional[str] = TEMP_STORE_DIRECTORY
    max_query_variables: int = MAX_QUERY_VARIABLES
    show_progress: bool = SHOW_PROGRESS
