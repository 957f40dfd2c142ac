"""
Durable file helpers shared by the registry and the workflow ledger.

- atomic_write: temp file in the same directory, fsync, rename, fsync dir
- file_lock: advisory fcntl lock held for a read-compute-write cycle
"""

import fcntl
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


def atomic_write(path: Path, data: bytes) -> None:
    """Replace `path` with `data`; readers see the old or the new bytes, never a mix."""
    directory = path.parent
    directory.mkdir(parents=True, exist_ok=True)

    temp_fd, temp_path = tempfile.mkstemp(dir=directory, prefix=f".tmp_{path.name}_")
    try:
        with os.fdopen(temp_fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())

        os.replace(temp_path, path)

        dir_fd = os.open(directory, os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


@contextmanager
def file_lock(lock_path: Path, shared: bool = False) -> Iterator[None]:
    """
    Hold an advisory lock on `lock_path` for the duration of the block.

    Exclusive by default; `shared=True` takes a read lock. The lock file is
    created if missing and never removed.
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with open(lock_path, "a") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_SH if shared else fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
