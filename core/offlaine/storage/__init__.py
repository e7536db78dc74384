"""Storage module - key-value persistence, typed records and artifact files."""

from offlaine.storage.artifacts import ArtifactFileStore, sanitize_model_id
from offlaine.storage.filesystem import FileInfo, FileSystem, LocalFileSystem
from offlaine.storage.kv_store import (
    InMemoryKeyValueStore,
    JsonFileKeyValueStore,
    KeyValueStore,
)
from offlaine.storage.records import RecordStore

__all__ = [
    "ArtifactFileStore",
    "sanitize_model_id",
    "FileInfo",
    "FileSystem",
    "LocalFileSystem",
    "InMemoryKeyValueStore",
    "JsonFileKeyValueStore",
    "KeyValueStore",
    "RecordStore",
]
