from __future__ import annotations

import contextlib
import os
import shutil
import signal
import stat
import sys
import tempfile
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from types import FrameType

from .errors import DestinationExistsError


class Interrupted(Exception):
    """Raised in the main thread when a termination signal arrives."""

    def __init__(self, signum: int) -> None:
        super().__init__(f"Interrupted by signal {signum}")
        self.signum: int = signum

    @property
    def exit_code(self) -> int:
        return 128 + int(self.signum)


@dataclass(frozen=True)
class Destination:
    rootfs: Path
    rundir: Path
    keep: bool


def rundir_for(rootfs: Path) -> Path:
    return rootfs.parent / f".{rootfs.name}"


def _warn(message: str) -> None:
    print(f"WARNING: {message}", file=sys.stderr)


_DIR_OWNER_BITS = stat.S_IRUSR | stat.S_IWUSR | stat.S_IXUSR


def _add_mode(path: str, bits: int) -> None:
    with contextlib.suppress(OSError):
        os.chmod(path, stat.S_IMODE(os.lstat(path).st_mode) | bits)


def _make_owner_writable(root: Path) -> None:
    _add_mode(str(root), _DIR_OWNER_BITS)
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames:
            p = os.path.join(dirpath, name)
            if not os.path.islink(p):
                _add_mode(p, _DIR_OWNER_BITS)
        for name in filenames:
            p = os.path.join(dirpath, name)
            if not os.path.islink(p):
                _add_mode(p, stat.S_IWUSR)


def force_remove(path: Path) -> bool:
    """Remove ``path`` recursively, granting owner write permission on failure.

    Returns False (after a warning) if the tree survives the second attempt.
    """

    if not os.path.lexists(path):
        return True
    try:
        shutil.rmtree(path)
        return True
    except OSError:
        pass

    _make_owner_writable(path)
    try:
        shutil.rmtree(path)
    except OSError as e:
        _warn(f"Failed to remove {path}: {e}")
        return False
    return True


def _remove_rundir(rundir: Path) -> None:
    with contextlib.suppress(OSError):
        rundir.rmdir()


@contextlib.contextmanager
def destination(target_dir: str, *, keep: bool, tmpdir: Path) -> Iterator[Destination]:
    """Allocate the destination and run directories for one invocation.

    Persistent (``keep``) destinations are left in place; only the run
    directory is removed. Ephemeral destinations are deleted on every exit
    path, including exceptions raised mid-extraction.
    """

    if keep:
        rootfs = Path(target_dir).expanduser().resolve()
        rundir = rundir_for(rootfs)
        if os.path.lexists(rootfs):
            raise DestinationExistsError(f"File already exists: {rootfs}")
        rootfs.mkdir(parents=True)
        try:
            rundir.mkdir(parents=True, exist_ok=True)
            yield Destination(rootfs=rootfs, rundir=rundir, keep=True)
        finally:
            _remove_rundir(rundir)
        return

    name = Path(target_dir).name or "rootfs"
    tmpdir.mkdir(parents=True, exist_ok=True)
    rootfs = Path(tempfile.mkdtemp(prefix=f"{name}.", dir=str(tmpdir)))
    rundir = rundir_for(rootfs)
    try:
        rundir.mkdir(parents=True, exist_ok=True)
        yield Destination(rootfs=rootfs, rundir=rundir, keep=False)
    finally:
        _ = force_remove(rootfs)
        _remove_rundir(rundir)


_GUARDED_SIGNALS = (signal.SIGTERM, signal.SIGHUP)


def _raise_interrupted(signum: int, frame: FrameType | None) -> None:
    _ = frame
    raise Interrupted(signum)


@contextlib.contextmanager
def signal_guard() -> Iterator[None]:
    """Turn SIGTERM and SIGHUP into `Interrupted` so cleanup code runs."""

    previous: dict[int, object] = {}
    for signum in _GUARDED_SIGNALS:
        previous[int(signum)] = signal.signal(signum, _raise_interrupted)
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)  # type: ignore[arg-type]
