from __future__ import annotations

import hashlib
from pathlib import Path

from .archive import Manifest, header_length
from .errors import IntegrityError
from .extraction import iter_range


def segment_digest(path: Path, offset: int, size: int, *, block_size: int) -> str:
    h = hashlib.sha256()
    for chunk in iter_range(path, offset, size, block_size=block_size):
        h.update(chunk)
    return h.hexdigest()


def verify_archive(path: Path, manifest: Manifest, *, block_size: int) -> None:
    """Check every segment against its recorded sha256, in manifest order.

    Stops at the first mismatch. Nothing is cached; each call re-reads the
    payload from disk.
    """

    if not manifest.verification_enabled:
        return

    digests = manifest.digests
    header_len = header_length(path, manifest.skip_lines)
    for index, offset, size in manifest.segment_ranges(header_len):
        actual = segment_digest(path, offset, size, block_size=block_size)
        if actual != digests[index]:
            raise IntegrityError(
                f"Checksum validation failed (segment {index})", segment=index
            )
