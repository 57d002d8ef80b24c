"""Owner-only permissions for the ledger's on-disk state."""

from __future__ import annotations

import os
from pathlib import Path


# SQLite in WAL mode keeps committed-but-uncheckpointed pages in these files.
_SIDECAR_SUFFIXES = ("-wal", "-shm")


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def secure_database_files(db_path: Path) -> None:
    """Restrict the database file and any WAL sidecars to the owner (0600)."""
    candidates = [db_path] + [db_path.with_name(db_path.name + s) for s in _SIDECAR_SUFFIXES]
    for path in candidates:
        if path.exists():
            os.chmod(path, 0o600)
