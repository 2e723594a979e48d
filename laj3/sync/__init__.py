"""Dictionary, diff and transfer machinery for laj3."""

from __future__ import annotations

from .manifest import Dictionary, DictionaryBuilder, FileEntry, build_dictionary, compute_file_hash
from .store import deserialize, load_dictionary, save_dictionary, serialize
from .diff import ChangeKind, Changeset, diff
from .server import Project, ProjectRegistry, ServerSettings, SessionState, SyncServer, load_project
from .client import ClientSettings, InstallResult, InstallTarget, SyncClient, load_local_dictionary

__all__ = [
    # Manifest
    "Dictionary",
    "DictionaryBuilder",
    "FileEntry",
    "build_dictionary",
    "compute_file_hash",
    # Store
    "serialize",
    "deserialize",
    "save_dictionary",
    "load_dictionary",
    # Diff
    "ChangeKind",
    "Changeset",
    "diff",
    # Server
    "Project",
    "ProjectRegistry",
    "ServerSettings",
    "SessionState",
    "SyncServer",
    "load_project",
    # Client
    "ClientSettings",
    "InstallResult",
    "InstallTarget",
    "SyncClient",
    "load_local_dictionary",
]
