from __future__ import annotations

import gzip
import hashlib
import io
import shutil
import tarfile
from dataclasses import dataclass
from pathlib import Path

import pytest

from rootbundle.archive import Manifest, render_header, with_payload

SCRIPT_ARGS = ("/usr/libexec/rootbundle", "/etc/rootbundle", "/.config/rootbundle")

requires_gzip = pytest.mark.skipif(
    shutil.which("gzip") is None, reason="gzip is not installed"
)
requires_bash = pytest.mark.skipif(
    shutil.which("bash") is None, reason="bash is not installed"
)


@dataclass(frozen=True)
class Entry:
    name: str
    data: bytes | None = None
    mode: int = 0o644
    link: str | None = None


def tar_entries(entries: list[Entry]) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.GNU_FORMAT) as tf:
        for e in entries:
            info = tarfile.TarInfo(e.name)
            info.mtime = 1_700_000_000
            info.mode = e.mode
            if e.link is not None:
                info.type = tarfile.SYMTYPE
                info.linkname = e.link
                tf.addfile(info)
            elif e.data is None:
                info.type = tarfile.DIRTYPE
                tf.addfile(info)
            else:
                info.size = len(e.data)
                tf.addfile(info, io.BytesIO(e.data))
    return buf.getvalue()


def tar_directory(root: Path) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.GNU_FORMAT) as tf:
        for child in sorted(root.iterdir()):
            tf.add(child, arcname=child.name)
    return buf.getvalue()


def gzip_segment(tar_bytes: bytes) -> bytes:
    return gzip.compress(tar_bytes, mtime=0)


def base_manifest(**overrides: object) -> Manifest:
    fields: dict[str, object] = {
        "description": "test bundle",
        "compression": "gzip",
        "target_dir": "rootfs",
        "file_sizes": (),
        "sha256_sum": "0",
        "total_size": 0,
        "decompress": "gzip -d",
        "script_args": SCRIPT_ARGS,
    }
    fields.update(overrides)
    return Manifest(**fields)  # type: ignore[arg-type]


def write_archive(
    path: Path,
    segments: list[bytes],
    *,
    checksums: bool = True,
    **overrides: object,
) -> Manifest:
    digests = (
        tuple(hashlib.sha256(s).hexdigest() for s in segments) if checksums else ()
    )
    manifest = with_payload(
        base_manifest(**overrides), tuple(len(s) for s in segments), digests
    )
    _ = path.write_bytes(render_header(manifest) + b"".join(segments))
    path.chmod(0o755)
    return manifest


RUNTIME_SH = b"""\
runtime::start() {
    local -r rootfs="$1" conf="$2" mounts="$3" environ="$4"
    shift 4
    {
        printf 'rootfs=%s\\n' "${rootfs}"
        printf 'conf=%s\\n' "${conf}"
        printf 'mounts=%s\\n' "${mounts//$'\\n'/,}"
        printf 'environ=%s\\n' "${environ//$'\\n'/,}"
        printf 'args=%s\\n' "$*"
        printf 'libexec=%s\\n' "${ENROOT_LIBEXEC_PATH}"
        printf 'sysconf=%s\\n' "${ENROOT_SYSCONF_PATH}"
        printf 'config=%s\\n' "${ENROOT_CONFIG_PATH}"
        printf 'data=%s\\n' "${ENROOT_DATA_PATH}"
        printf 'runtime=%s\\n' "${ENROOT_RUNTIME_PATH}"
        printf 'shell=%s\\n' "${ENROOT_LOGIN_SHELL}"
        printf 'rw=%s\\n' "${ENROOT_ROOTFS_RW}"
        printf 'remap=%s\\n' "${ENROOT_REMAP_ROOT}"
        if [ -d "${ENROOT_RUNTIME_PATH}" ]; then printf 'rundir_exists=y\\n'; fi
    } > "${ROOTBUNDLE_TEST_REPORT}"
    if [ -n "${ROOTBUNDLE_TEST_EXIT-}" ]; then
        return "${ROOTBUNDLE_TEST_EXIT}"
    fi
    cat "${rootfs}/etc/motd"
}
"""


def runtime_entries() -> list[Entry]:
    return [
        Entry("etc", None, 0o755),
        Entry("etc/motd", b"hello from the bundle\n", 0o444),
        Entry("usr", None, 0o755),
        Entry("usr/libexec", None, 0o755),
        Entry("usr/libexec/rootbundle", None, 0o755),
        Entry("usr/libexec/rootbundle/runtime.sh", RUNTIME_SH, 0o644),
    ]


def read_report(path: Path) -> dict[str, str]:
    out: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        key, _, value = line.partition("=")
        out[key] = value
    return out
