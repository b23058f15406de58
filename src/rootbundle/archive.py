"""Self-extracting archive layout.

An archive is a text header of exactly ``skip_lines`` lines followed by the
payload: the compressed segments concatenated in manifest order, with no
separators. The header is an executable script whose assignment lines carry
the manifest; each value is a single shell-quoted word.
"""

from __future__ import annotations

import re
import shlex
from collections.abc import Iterator
from dataclasses import dataclass, replace
from pathlib import Path

from .errors import ManifestError

SHEBANG = "#!/usr/bin/env -S python3 -m rootbundle"

_MAX_HEADER_LINES = 64
_KEY_RE = re.compile(r"^[a-z_][a-z0-9_]*$")
_REQUIRED_KEYS = (
    "description",
    "compression",
    "target_dir",
    "file_sizes",
    "sha256_sum",
    "skip_lines",
    "total_size",
    "decompress",
    "script_args",
)


@dataclass(frozen=True)
class Manifest:
    description: str
    compression: str
    target_dir: str
    file_sizes: tuple[int, ...]
    sha256_sum: str
    total_size: int
    decompress: str
    script_args: tuple[str, str, str]
    skip_lines: int = 0

    @property
    def verification_enabled(self) -> bool:
        compact = "".join(self.sha256_sum.split())
        return bool(compact.strip("0"))

    @property
    def digests(self) -> tuple[str, ...]:
        if not self.verification_enabled:
            return ()
        return tuple(d.lower() for d in self.sha256_sum.split())

    @property
    def payload_size(self) -> int:
        return sum(self.file_sizes)

    def segment_ranges(self, header_len: int) -> Iterator[tuple[int, int, int]]:
        """Yield ``(index, offset, size)`` for every segment, in extraction order."""

        offset = int(header_len)
        for index, size in enumerate(self.file_sizes):
            yield index, offset, int(size)
            offset += int(size)


def _assignment(key: str, value: str) -> str:
    if "\n" in value or "\r" in value:
        raise ManifestError(f"Manifest value for {key} must be a single line")
    return f"{key}={shlex.quote(value)}"


def render_header(manifest: Manifest) -> bytes:
    """Render the header region for ``manifest``.

    Build-side helper: the runtime only reads headers. Bundle builders prepend
    this to the concatenated segments.

    ``skip_lines`` is recomputed from the rendered text, so the returned bytes
    always satisfy the layout contract regardless of the input value.
    """

    body = [
        ("description", manifest.description),
        ("compression", manifest.compression),
        ("target_dir", manifest.target_dir),
        ("file_sizes", " ".join(str(int(s)) for s in manifest.file_sizes)),
        ("sha256_sum", manifest.sha256_sum),
        ("skip_lines", ""),
        ("total_size", str(int(manifest.total_size))),
        ("decompress", manifest.decompress),
        ("script_args", " ".join(manifest.script_args)),
    ]
    skip_lines = 2 + len(body)
    lines = [SHEBANG, "# rootbundle self-extracting archive"]
    for key, value in body:
        if key == "skip_lines":
            value = str(skip_lines)
        lines.append(_assignment(key, value))
    return ("\n".join(lines) + "\n").encode("utf-8")


def _parse_line(raw: bytes, lineno: int) -> tuple[str, str] | None:
    try:
        text = raw.decode("utf-8").rstrip("\n")
    except UnicodeDecodeError:
        raise ManifestError(f"Header line {lineno} is not valid UTF-8") from None

    stripped = text.strip()
    if not stripped or stripped.startswith("#"):
        return None

    key, sep, value_raw = stripped.partition("=")
    if not sep or not _KEY_RE.match(key):
        raise ManifestError(f"Malformed header line {lineno}: {stripped!r}")
    try:
        words = shlex.split(value_raw)
    except ValueError as e:
        raise ManifestError(f"Malformed header line {lineno}: {e}") from None
    if len(words) > 1:
        raise ManifestError(f"Header line {lineno} must assign a single word")
    return key, (words[0] if words else "")


def _parse_int(key: str, value: str) -> int:
    if not value.isdigit():
        raise ManifestError(f"Manifest {key} is not a non-negative integer: {value!r}")
    return int(value)


def read_manifest(path: Path) -> Manifest:
    values: dict[str, str] = {}
    skip_lines: int | None = None
    count = 0

    with path.open("rb") as f:
        while skip_lines is None or count < skip_lines:
            if count >= _MAX_HEADER_LINES:
                raise ManifestError(
                    f"Header exceeds {_MAX_HEADER_LINES} lines or lacks skip_lines"
                )
            line = f.readline()
            if not line.endswith(b"\n"):
                raise ManifestError("Archive header is truncated")
            count += 1
            parsed = _parse_line(line, count)
            if parsed is None:
                continue
            key, value = parsed
            values[key] = value
            if key == "skip_lines":
                skip_lines = _parse_int(key, value)
                if skip_lines < count:
                    raise ManifestError(
                        f"skip_lines={skip_lines} is smaller than its own line number {count}"
                    )

    missing = [k for k in _REQUIRED_KEYS if k not in values]
    if missing:
        raise ManifestError("Manifest is missing: " + ", ".join(missing))

    file_sizes = tuple(_parse_int("file_sizes", s) for s in values["file_sizes"].split())
    script_args = values["script_args"].split()
    if len(script_args) != 3:
        raise ManifestError(
            f"Manifest script_args needs 3 paths, got {len(script_args)}"
        )

    manifest = Manifest(
        description=values["description"],
        compression=values["compression"],
        target_dir=values["target_dir"],
        file_sizes=file_sizes,
        sha256_sum=values["sha256_sum"],
        skip_lines=int(skip_lines or 0),
        total_size=_parse_int("total_size", values["total_size"]),
        decompress=values["decompress"],
        script_args=(script_args[0], script_args[1], script_args[2]),
    )
    if manifest.verification_enabled and len(manifest.digests) != len(file_sizes):
        raise ManifestError(
            f"Manifest lists {len(manifest.digests)} checksum(s) for {len(file_sizes)} segment(s)"
        )
    return manifest


def header_length(path: Path, skip_lines: int) -> int:
    """Byte length of the first ``skip_lines`` lines of ``path``."""

    total = 0
    with path.open("rb") as f:
        for _ in range(int(skip_lines)):
            line = f.readline()
            if not line.endswith(b"\n"):
                raise ManifestError("Archive header is truncated")
            total += len(line)
    return total


def with_payload(
    manifest: Manifest, file_sizes: tuple[int, ...], digests: tuple[str, ...]
) -> Manifest:
    """Build-side helper: stamp segment sizes and digests onto ``manifest``."""
    sha = " ".join(digests) if digests else "0"
    return replace(manifest, file_sizes=tuple(file_sizes), sha256_sum=sha)
