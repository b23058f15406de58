"""Launcher for self-extracting archives.

Exit codes:
  0    Success, --info, or usage
  1    Fatal error (checksum, space, missing tool, existing destination, ...)
  128+N  Terminated by signal N
  *    Otherwise, the runtime's own exit status
"""

from __future__ import annotations

import sys
from collections.abc import Sequence
from pathlib import Path
from typing import IO

from . import __version__
from .archive import read_manifest
from .errors import BundleError, UsageError
from .extraction import extract_archive
from .handoff import RuntimeConfig, invoke
from .integrity import verify_archive
from .lifecycle import Interrupted, destination, signal_guard
from .options import format_info, format_usage, parse_options
from .settings import Settings


def run_archive(
    archive: Path,
    argv: Sequence[str],
    *,
    settings: Settings,
    out: IO[str] | None = None,
) -> int:
    stdout = sys.stdout if out is None else out
    manifest = read_manifest(archive)

    try:
        options = parse_options(argv)
    except UsageError:
        _ = stdout.write(format_usage(archive.name, manifest.description))
        return 0
    if options.help:
        _ = stdout.write(format_usage(archive.name, manifest.description))
        return 0
    if options.info:
        _ = stdout.write(format_info(manifest, __version__))
        return 0

    with signal_guard():
        verify_archive(archive, manifest, block_size=settings.block_size)
        with destination(
            manifest.target_dir, keep=options.keep, tmpdir=settings.tmpdir
        ) as dest:
            report = extract_archive(
                archive,
                manifest,
                dest.rootfs,
                quiet=options.quiet,
                settings=settings,
            )
            if report.skipped:
                print(
                    f"WARNING: Skipped {report.skipped} archive member(s) outside the target directory",
                    file=sys.stderr,
                )
            stdout.flush()
            config = RuntimeConfig.from_destination(dest, manifest, options)
            return invoke(config, options, shell=settings.shell)


def main(argv: Sequence[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    args = list(argv)

    if not args:
        print(
            "Usage: python -m rootbundle ARCHIVE [options] [--] [COMMAND] [ARG...]",
            file=sys.stderr,
        )
        return 1

    archive = Path(args[0])
    try:
        return run_archive(archive, args[1:], settings=Settings.from_env())
    except BundleError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return e.exit_code
    except Interrupted as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return e.exit_code
    except KeyboardInterrupt:
        return 130
    except OSError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
