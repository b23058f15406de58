"""Command line of a self-extracting archive.

    ARCHIVE [options] [--] [COMMAND] [ARG...]

Option scanning stops at ``--`` or at the first word that is not an option;
that word and everything after it are forwarded to the runtime untouched.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from .archive import Manifest
from .errors import UsageError


@dataclass(frozen=True)
class Options:
    info: bool = False
    help: bool = False
    keep: bool = False
    quiet: bool = False
    conf: str = ""
    mounts: tuple[str, ...] = ()
    environ: tuple[str, ...] = ()
    root: bool = False
    rw: bool = False
    command: tuple[str, ...] = field(default_factory=tuple)


_FLAGS = {
    "-k": "keep",
    "--keep": "keep",
    "-q": "quiet",
    "--quiet": "quiet",
    "-r": "root",
    "--root": "root",
    "-w": "rw",
    "--rw": "rw",
}
_VALUED = {
    "-c": "conf",
    "--conf": "conf",
    "-m": "mounts",
    "--mount": "mounts",
    "-e": "environ",
    "--env": "environ",
}


def parse_options(argv: Sequence[str]) -> Options:
    """Parse archive arguments.

    :raises UsageError: On an unknown option or an option missing its value.
    """

    flags: dict[str, bool] = {"keep": False, "quiet": False, "root": False, "rw": False}
    conf = ""
    mounts: list[str] = []
    environ: list[str] = []

    # Scanned by hand: argparse.REMAINDER keeps a leading "--" in the result on
    # some interpreter versions, and parse_known_args cannot stop at the first
    # positional while still rejecting unknown flags before it. argparse also
    # accepts abbreviations and bundled short flags, which the archive CLI does not.
    args = list(argv)
    i = 0
    while i < len(args):
        arg = args[i]
        if arg in ("-i", "--info"):
            return Options(info=True)
        if arg in ("-h", "--help"):
            return Options(help=True)
        if arg == "--":
            i += 1
            break
        if arg in _FLAGS:
            flags[_FLAGS[arg]] = True
            i += 1
            continue
        if arg in _VALUED:
            value = args[i + 1] if i + 1 < len(args) else ""
            if not value:
                raise UsageError(f"Option {arg} requires a value")
            dest = _VALUED[arg]
            if dest == "conf":
                conf = value
            elif dest == "mounts":
                mounts.append(value)
            else:
                environ.append(value)
            i += 2
            continue
        if arg.startswith("-") and len(arg) > 1:
            raise UsageError(f"Unknown option: {arg}")
        break

    return Options(
        keep=flags["keep"],
        quiet=flags["quiet"],
        conf=conf,
        mounts=tuple(mounts),
        environ=tuple(environ),
        root=flags["root"],
        rw=flags["rw"],
        command=tuple(args[i:]),
    )


_OPTIONS_HELP = """\

 Options:
   -i, --info           Display the information about this bundle
   -k, --keep           Keep the bundle extracted in the target directory
   -q, --quiet          Suppress the progress bar output

   -c, --conf CONFIG    Specify a configuration script to run before the container starts
   -e, --env KEY[=VAL]  Export an environment variable inside the container
   -m, --mount FSTAB    Perform a mount from the host inside the container (colon-separated)
   -r, --root           Ask to be remapped to root inside the container
   -w, --rw             Make the container root filesystem writable
"""


def format_usage(prog: str, description: str) -> str:
    out = f"Usage: {prog} [options] [--] [COMMAND] [ARG...]\n"
    if description != "none":
        out += f"\n{description}\n"
    return out + _OPTIONS_HELP


def format_info(manifest: Manifest, version: str) -> str:
    lines: list[str] = []
    if manifest.verification_enabled:
        lines.append(f"Checksum: {manifest.sha256_sum}")
    lines.extend(
        [
            f"Compression: {manifest.compression}",
            f"Description: {manifest.description}",
            f"Runtime version: {version}",
            f"Target directory: {manifest.target_dir}",
            f"Uncompressed size: {manifest.total_size} KB",
        ]
    )
    return "\n".join(lines) + "\n"
