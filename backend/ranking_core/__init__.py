"""Ranking administration domain: import, storage and table views."""

from .errors import (
    DecodeError,
    EmptyFileError,
    NoDataRowsError,
    PersistenceError,
    RankingError,
    ValidationError,
)
from .importer import RankingImporter
from .records import ImportResult, RankingRecord, SchemaDescriptor, SheetPreview
from .store import DataStore

__all__ = [
    "DataStore",
    "DecodeError",
    "EmptyFileError",
    "ImportResult",
    "NoDataRowsError",
    "PersistenceError",
    "RankingError",
    "RankingImporter",
    "RankingRecord",
    "SchemaDescriptor",
    "SheetPreview",
    "ValidationError",
]
