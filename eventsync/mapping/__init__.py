"""
Mapping Module
"""
from .entries import MappingEntry, MatchKind, Resolution, SaveResult, SourceIdentifiers, normalize_entry
from .resolver import MappingResolver
from .store import MappingStore

__all__ = [
    "MappingEntry",
    "MatchKind",
    "Resolution",
    "SaveResult",
    "SourceIdentifiers",
    "normalize_entry",
    "MappingResolver",
    "MappingStore",
]
