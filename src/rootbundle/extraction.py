from __future__ import annotations

import os
import shlex
import shutil
import stat
import subprocess
import sys
import tarfile
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Generic, TypeVar

from .archive import Manifest, header_length
from .errors import (
    ExtractionError,
    InsufficientSpaceError,
    IntegrityError,
    ManifestError,
    ToolMissingError,
)
from .settings import Settings

_T = TypeVar("_T")
_DRAIN_CHUNK = 64 * 1024


def _read_exact(f: IO[bytes], size: int) -> bytes:
    data = f.read(int(size))
    if len(data) != int(size):
        raise IntegrityError("Unexpected end of archive")
    return data


def iter_range(
    path: Path, offset: int, length: int, *, block_size: int
) -> Iterator[bytes]:
    """Stream ``[offset, offset + length)`` of ``path`` in ``block_size`` pieces.

    The length is split into whole blocks followed by one remainder piece, so
    at most one block is held in memory at a time.
    """

    if offset < 0 or length < 0 or block_size <= 0:
        raise ValueError(
            f"invalid range: offset={offset} length={length} block_size={block_size}"
        )

    blocks, remainder = divmod(int(length), int(block_size))
    with path.open("rb") as f:
        _ = f.seek(int(offset), os.SEEK_SET)
        for _i in range(blocks):
            yield _read_exact(f, block_size)
        if remainder:
            yield _read_exact(f, remainder)


def _stream_is_tty(stream: IO[str] | None) -> bool:
    if stream is None:
        return False
    try:
        return bool(stream.isatty())
    except (AttributeError, ValueError):
        return False


def progress_argv(
    size: int,
    *,
    quiet: bool,
    settings: Settings,
    stream: IO[str] | None = None,
) -> list[str] | None:
    if quiet or not settings.progress_argv:
        return None
    if not _stream_is_tty(sys.stderr if stream is None else stream):
        return None
    tool = shutil.which(settings.progress_argv[0])
    if tool is None:
        return None
    return [tool, *settings.progress_argv[1:], "-s", str(int(size))]


def resolve_decompressor(command: str) -> list[str]:
    try:
        argv = shlex.split(command)
    except ValueError as e:
        raise ManifestError(f"Malformed decompress command {command!r}: {e}") from None
    if not argv:
        raise ManifestError("Manifest decompress command is empty")
    resolved = shutil.which(argv[0])
    if resolved is None:
        raise ToolMissingError(argv[0])
    return [resolved, *argv[1:]]


def check_layout(path: Path, manifest: Manifest, header_len: int) -> None:
    payload = int(path.stat().st_size) - int(header_len)
    if payload != manifest.payload_size:
        raise IntegrityError(
            f"Payload size mismatch: manifest declares {manifest.payload_size} bytes, archive holds {payload}"
        )


def check_free_space(dest: Path, total_size_kb: int) -> None:
    available_kb = int(shutil.disk_usage(dest).free // 1024)
    if available_kb < int(total_size_kb):
        raise InsufficientSpaceError(
            f"Not enough space left in {dest.parent} ({total_size_kb} KB needed)",
            needed_kb=int(total_size_kb),
            available_kb=available_kb,
        )


def _feed(chunks: Iterable[bytes], sink: IO[bytes]) -> bool:
    complete = True
    try:
        for chunk in chunks:
            _ = sink.write(chunk)
    except BrokenPipeError:
        complete = False
    finally:
        try:
            sink.close()
        except BrokenPipeError:
            complete = False
    return complete


def _drain(stream: IO[bytes]) -> None:
    while stream.read(_DRAIN_CHUNK):
        pass


def _kill_all(procs: list[subprocess.Popen[bytes]]) -> None:
    for proc in procs:
        if proc.poll() is None:
            proc.kill()


@dataclass(frozen=True)
class PipelineResult(Generic[_T]):
    value: _T
    argv: list[list[str]]
    returncodes: list[int]
    input_complete: bool


def run_pipeline(
    chunks: Iterable[bytes],
    stages: list[list[str]],
    consume: Callable[[IO[bytes]], _T],
) -> PipelineResult[_T]:
    """Run ``chunks`` through the ``stages`` processes into ``consume``.

    A worker thread writes ``chunks`` into the first process while the caller's
    thread hands the last process' stdout to ``consume``. Returns once every
    stage has exited.
    """

    if not stages:
        raise ValueError("pipeline needs at least one stage")

    procs: list[subprocess.Popen[bytes]] = []
    try:
        upstream: int | IO[bytes] = subprocess.PIPE
        for argv in stages:
            proc = subprocess.Popen(list(argv), stdin=upstream, stdout=subprocess.PIPE)
            if procs and procs[-1].stdout is not None:
                # The child holds its own copy; closing ours lets EOF and
                # SIGPIPE propagate between stages.
                procs[-1].stdout.close()
            procs.append(proc)
            upstream = proc.stdout if proc.stdout is not None else subprocess.DEVNULL

        first_in = procs[0].stdin
        last_out = procs[-1].stdout
        assert first_in is not None and last_out is not None

        with ThreadPoolExecutor(max_workers=1) as executor:
            fed = executor.submit(_feed, chunks, first_in)
            try:
                value = consume(last_out)
                _drain(last_out)
            except BaseException as e:
                _kill_all(procs)
                if isinstance(e, Exception):
                    feed_error = fed.exception()
                    if feed_error is not None:
                        raise feed_error from e
                raise
            input_complete = fed.result()
    finally:
        if procs and procs[0].stdin is not None and not procs[0].stdin.closed:
            try:
                procs[0].stdin.close()
            except BrokenPipeError:
                pass
        for proc in procs:
            if proc.stdout is not None:
                proc.stdout.close()
        for proc in procs:
            _ = proc.wait()

    return PipelineResult(
        value=value,
        argv=[list(a) for a in stages],
        returncodes=[int(p.returncode) for p in procs],
        input_complete=input_complete,
    )


@dataclass
class UnpackStats:
    members: int = 0
    skipped: int = 0


def _strip_root(name: str) -> str:
    # tar -x drops leading slashes and extracts under the destination
    return name.lstrip("/") or "."


def _member_target(dest: Path, name: str) -> Path | None:
    if not name:
        return None
    base = os.path.normpath(str(dest))
    normalized = os.path.normpath(os.path.join(base, _strip_root(name)))
    if normalized != base and not normalized.startswith(base + os.sep):
        return None
    return Path(normalized)


def _relative_member(member: tarfile.TarInfo) -> tarfile.TarInfo:
    changes: dict[str, str] = {}
    if member.name.startswith("/"):
        changes["name"] = _strip_root(member.name)
    if member.islnk() and member.linkname.startswith("/"):
        changes["linkname"] = _strip_root(member.linkname)
    if not changes:
        return member
    return member.replace(**changes, deep=False)


def _is_real_dir(path: Path) -> bool:
    return path.is_dir() and not path.is_symlink()


def unpack_tar_stream(stream: IO[bytes], dest: Path) -> UnpackStats:
    """Unpack a tar stream into ``dest`` the way ``tar -pxf -`` would.

    Directory attributes are applied once the stream ends so that entries can
    still be created inside directories that are read-only in the archive.
    """

    stats = UnpackStats()
    directories: list[tuple[tarfile.TarInfo, Path]] = []

    with tarfile.open(fileobj=stream, mode="r|") as tf:
        for member in tf:
            target = _member_target(dest, member.name)
            if target is None:
                stats.skipped += 1
                continue
            member = _relative_member(member)

            if member.isdir():
                tf.extract(member, path=dest, set_attrs=False, filter="fully_trusted")
                directories.append((member, target))
            else:
                if os.path.lexists(target) and not _is_real_dir(target):
                    target.unlink()
                tf.extract(member, path=dest, filter="fully_trusted")
            stats.members += 1

        directories.sort(key=lambda item: item[0].name, reverse=True)
        for member, target in directories:
            tf.chown(member, str(target), False)
            tf.utime(member, str(target))
            tf.chmod(member, str(target))

    return stats


def grant_owner_write(dest: Path) -> list[Path]:
    """Give ``u+w`` to ``dest``, its subdirectories, ``usr`` and its subdirectories.

    Deeper levels are left alone.
    """

    seen: set[Path] = set()
    fixed: list[Path] = []
    for root in (dest, dest / "usr"):
        if not _is_real_dir(root):
            continue
        candidates = [root]
        try:
            candidates.extend(sorted(p for p in root.iterdir() if _is_real_dir(p)))
        except PermissionError:
            pass
        for d in candidates:
            if d in seen:
                continue
            seen.add(d)
            mode = d.lstat().st_mode
            if not mode & stat.S_IWUSR:
                os.chmod(d, stat.S_IMODE(mode) | stat.S_IWUSR)
                fixed.append(d)

    os.utime(dest)
    return fixed


@dataclass(frozen=True)
class ExtractionReport:
    segments: int
    members: int
    skipped: int
    writable_fixups: int


def _check_pipeline(result: PipelineResult[UnpackStats], index: int) -> None:
    for argv, rc in zip(result.argv, result.returncodes):
        if rc != 0:
            raise ExtractionError(
                f"{Path(argv[0]).name} exited with status {rc} on segment {index}",
                segment=index,
            )
    if not result.input_complete:
        raise ExtractionError(
            f"Decompressor stopped reading segment {index} early", segment=index
        )


def extract_archive(
    path: Path,
    manifest: Manifest,
    dest: Path,
    *,
    quiet: bool,
    settings: Settings,
    progress_stream: IO[str] | None = None,
) -> ExtractionReport:
    decompress_argv = resolve_decompressor(manifest.decompress)

    header_len = header_length(path, manifest.skip_lines)
    check_layout(path, manifest, header_len)
    check_free_space(dest, manifest.total_size)

    members = 0
    skipped = 0
    for index, offset, size in manifest.segment_ranges(header_len):
        stages: list[list[str]] = []
        progress = progress_argv(
            size, quiet=quiet, settings=settings, stream=progress_stream
        )
        if progress is not None:
            stages.append(progress)
        stages.append(decompress_argv)

        chunks = iter_range(path, offset, size, block_size=settings.block_size)
        try:
            result = run_pipeline(
                chunks, stages, lambda stream: unpack_tar_stream(stream, dest)
            )
        except (tarfile.TarError, OSError) as e:
            raise ExtractionError(
                f"Failed to unpack segment {index}: {type(e).__name__}: {e}",
                segment=index,
            ) from e

        _check_pipeline(result, index)
        members += result.value.members
        skipped += result.value.skipped

    fixed = grant_owner_write(dest)
    return ExtractionReport(
        segments=len(manifest.file_sizes),
        members=members,
        skipped=skipped,
        writable_fixups=len(fixed),
    )
