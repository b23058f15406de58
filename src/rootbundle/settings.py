from __future__ import annotations

import os
import shlex
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

_DEFAULT_BLOCK_SIZE = 1024 * 1024
_MIN_BLOCK_SIZE = 512
_MAX_BLOCK_SIZE = 16 * 1024 * 1024


def _default_tmpdir() -> Path:
    return Path(tempfile.gettempdir())


@dataclass(frozen=True)
class Settings:
    tmpdir: Path = field(default_factory=_default_tmpdir)
    block_size: int = _DEFAULT_BLOCK_SIZE
    progress_argv: tuple[str, ...] = ("pv",)
    shell: str = "bash"

    @classmethod
    def from_env(cls) -> Settings:
        tmpdir_env = os.environ.get("ROOTBUNDLE_TMPDIR", "").strip()
        block_env = os.environ.get("ROOTBUNDLE_BLOCK_SIZE", "").strip()
        progress_env = os.environ.get("ROOTBUNDLE_PROGRESS")
        shell_env = os.environ.get("ROOTBUNDLE_SHELL", "").strip()

        tmpdir = Path(tmpdir_env).expanduser() if tmpdir_env else _default_tmpdir()

        block_size = _DEFAULT_BLOCK_SIZE
        if block_env.isdigit():
            block_size = max(_MIN_BLOCK_SIZE, min(_MAX_BLOCK_SIZE, int(block_env)))

        progress_argv: tuple[str, ...] = ("pv",)
        if progress_env is not None:
            try:
                progress_argv = tuple(shlex.split(progress_env))
            except ValueError:
                progress_argv = ("pv",)

        return cls(
            tmpdir=tmpdir,
            block_size=block_size,
            progress_argv=progress_argv,
            shell=shell_env or "bash",
        )
