from __future__ import annotations

import os
import shutil
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from .archive import Manifest
from .errors import ToolMissingError
from .lifecycle import Destination
from .options import Options

ENTRY_SCRIPT = "runtime.sh"
ENTRY_FUNCTION = "runtime::start"
LOGIN_SHELL = "/bin/sh"

_ENTRY_SNIPPET = (
    'set -e; source "${ENROOT_LIBEXEC_PATH}/' + ENTRY_SCRIPT + '"; '
    + ENTRY_FUNCTION
    + ' "$@"'
)


def _under(rootfs: Path, fragment: str) -> Path:
    return rootfs / fragment.lstrip("/")


@dataclass(frozen=True)
class RuntimeConfig:
    libexec_path: Path
    sysconf_path: Path
    config_path: Path
    data_path: Path
    runtime_path: Path
    login_shell: str = LOGIN_SHELL
    rootfs_rw: bool = False
    remap_root: bool = False

    @classmethod
    def from_destination(
        cls, dest: Destination, manifest: Manifest, options: Options
    ) -> RuntimeConfig:
        libexec, sysconf, usrconf = manifest.script_args
        return cls(
            libexec_path=_under(dest.rootfs, libexec),
            sysconf_path=_under(dest.rootfs, sysconf),
            config_path=_under(dest.rootfs, usrconf),
            data_path=dest.rootfs,
            runtime_path=dest.rundir,
            rootfs_rw=options.rw,
            remap_root=options.root,
        )

    @property
    def entry_script(self) -> Path:
        return self.libexec_path / ENTRY_SCRIPT

    def environ(self) -> dict[str, str]:
        return {
            "ENROOT_LIBEXEC_PATH": str(self.libexec_path),
            "ENROOT_SYSCONF_PATH": str(self.sysconf_path),
            "ENROOT_CONFIG_PATH": str(self.config_path),
            "ENROOT_DATA_PATH": str(self.data_path),
            "ENROOT_RUNTIME_PATH": str(self.runtime_path),
            "ENROOT_LOGIN_SHELL": self.login_shell,
            "ENROOT_ROOTFS_RW": "y" if self.rootfs_rw else "",
            "ENROOT_REMAP_ROOT": "y" if self.remap_root else "",
        }


def handoff_argv(config: RuntimeConfig, options: Options, *, shell: str) -> list[str]:
    resolved = shutil.which(shell)
    if resolved is None:
        raise ToolMissingError(shell)
    return [
        resolved,
        "-c",
        _ENTRY_SNIPPET,
        "rootbundle",
        str(config.data_path),
        options.conf,
        "\n".join(options.mounts),
        "\n".join(options.environ),
        *options.command,
    ]


def invoke(
    config: RuntimeConfig,
    options: Options,
    *,
    shell: str,
    base_env: Mapping[str, str] | None = None,
) -> int:
    """Run the runtime entry point and return its exit status as-is."""

    argv = handoff_argv(config, options, shell=shell)
    env = dict(os.environ if base_env is None else base_env)
    env.update(config.environ())
    res = subprocess.run(argv, env=env, check=False)
    if res.returncode < 0:
        return 128 - int(res.returncode)
    return int(res.returncode)
