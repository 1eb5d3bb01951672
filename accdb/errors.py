"""Typed exceptions for the accession mapping store.

Build-time problems (bad input, bad schema) are raised to the operator.
Open-time problems distinguish a missing/unreadable file from a store built
for an incompatible edition. Lookups on the read path never raise these.
"""


class AccessionDBError(Exception):
    """Base class for all store errors."""


class SourceFormatError(AccessionDBError):
    """A classification source file contains a malformed line."""

    def __init__(self, path, line_number, line, reason):
        self.path = str(path)
        self.line_number = line_number
        self.line = line
        self.reason = reason
        super().__init__(f"{self.path}:{line_number}: {reason}: {line!r}")


class SchemaError(AccessionDBError):
    pass


class InvalidClassificationNameError(SchemaError, ValueError):
    pass


class DuplicateAccessionError(SchemaError):
    def __init__(self, name, accession, line_number):
        self.name = name
        self.accession = accession
        self.line_number = line_number
        super().__init__(
            f"Duplicate accession {accession!r} in classification {name} "
            f"(line {line_number})"
        )


class ClassificationExistsError(SchemaError):
    pass


class ClassificationNotFoundError(AccessionDBError, KeyError):
    def __str__(self):
        return f"Classification not registered: {self.args[0]}"


class StoreError(AccessionDBError):
    """Store-level operational failure."""


class StoreNotFoundError(StoreError, FileNotFoundError):
    """Store file is missing, empty or not a readable database."""


class IncompatibleStoreError(StoreError):
    """Store was built for an edition this reader does not accept."""
