from __future__ import annotations

import errno
import fcntl
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from .errors import CleanupError, WorkspaceBusyError, WorkspaceError

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = ".ubuntu-image.lock"


class WorkspaceLock:
    """Exclusive claim on a workspace directory.

    The lock is an flock on a sidecar file held open for the whole run, so a
    crashed run's lock is released by the kernel and the next Setup sees it
    as free. The file also records the owner PID for diagnosis. Releasing
    with ``remove`` unlinks the file while still locked; ``acquire`` checks
    that the file it locked is still the one at the path and retries if not.
    """

    def __init__(self, workspace: Path) -> None:
        self.path = workspace / LOCK_FILE_NAME
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        if self._fd is not None:
            return
        while True:
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT | os.O_CLOEXEC, 0o644)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError as e:
                os.close(fd)
                if e.errno not in (errno.EWOULDBLOCK, errno.EAGAIN):
                    raise
                owner = _read_owner(self.path)
                raise WorkspaceBusyError(
                    f"Workspace {self.path.parent} is in use by another run" + (f" (pid {owner})" if owner else ""),
                    hint="Wait for the other build to finish or pick a different --workdir",
                ) from e
            # The previous holder may have unlinked the file between our open and flock.
            if _same_file(fd, self.path):
                break
            os.close(fd)

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        logger.debug("Acquired workspace lock %s", self.path)

    def release(self, *, remove: bool = False) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            if remove:
                self.path.unlink(missing_ok=True)
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        logger.debug("Released workspace lock %s", self.path)


def _same_file(fd: int, path: Path) -> bool:
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return False
    held = os.fstat(fd)
    return (held.st_dev, held.st_ino) == (st.st_dev, st.st_ino)


def _read_owner(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8").strip() or None
    except OSError:
        return None


class Workspace:
    """The run's working directory: state record, lock and intermediate artifacts."""

    def __init__(self, path: Optional[Path]) -> None:
        self.temporary = path is None
        self.path = Path(path) if path is not None else None
        self.lock: Optional[WorkspaceLock] = None

    def claim(self) -> None:
        try:
            if self.path is None:
                self.path = Path(tempfile.mkdtemp(prefix="ubuntu-image-"))
                logger.info("Using temporary workspace %s", self.path)
            else:
                self.path.mkdir(parents=True, exist_ok=True)
            self.lock = WorkspaceLock(self.path)
            self.lock.acquire()
        except OSError as e:
            raise WorkspaceError(
                f"Cannot use workspace {self.path}: {e}",
                hint="Pick a writable directory with --workdir",
            ) from e

    def release(self, *, remove_lock_file: bool = False) -> None:
        if self.lock is not None:
            self.lock.release(remove=remove_lock_file)

    def contains(self, p: Path) -> bool:
        assert self.path is not None
        try:
            Path(p).resolve().relative_to(self.path.resolve())
        except ValueError:
            return False
        return True

    def remove_paths(self, paths) -> None:
        """Remove transient artifacts that live inside the workspace."""

        failed = []
        for p in paths:
            p = Path(p)
            if not self.contains(p) or not (p.exists() or p.is_symlink()):
                continue
            try:
                if p.is_dir() and not p.is_symlink():
                    shutil.rmtree(p)
                else:
                    p.unlink()
            except OSError as e:
                failed.append(f"{p}: {e}")
        if failed:
            raise CleanupError("Could not remove transient artifacts:\n  " + "\n  ".join(failed))

    def remove(self) -> None:
        assert self.path is not None
        try:
            shutil.rmtree(self.path)
        except OSError as e:
            raise CleanupError(f"Could not remove workspace {self.path}: {e}") from e
