from __future__ import annotations

import pytest

from conftest import base_manifest
from rootbundle.errors import UsageError
from rootbundle.options import Options, format_info, format_usage, parse_options


def test_no_arguments_gives_defaults() -> None:
    assert parse_options([]) == Options()


def test_all_flags_and_repeatable_values() -> None:
    opts = parse_options(
        [
            "-k",
            "--quiet",
            "-c",
            "setup.sh",
            "-m",
            "/data:/data",
            "--mount",
            "/scratch:/scratch",
            "-e",
            "A=1",
            "--env",
            "B",
            "-r",
            "--rw",
            "python3",
            "-V",
        ]
    )
    assert opts.keep is True
    assert opts.quiet is True
    assert opts.conf == "setup.sh"
    assert opts.mounts == ("/data:/data", "/scratch:/scratch")
    assert opts.environ == ("A=1", "B")
    assert opts.root is True
    assert opts.rw is True
    assert opts.command == ("python3", "-V")


def test_double_dash_forwards_everything_verbatim() -> None:
    opts = parse_options(["-q", "--", "-k", "--info", "--"])
    assert opts.quiet is True
    assert opts.keep is False
    assert opts.info is False
    assert opts.command == ("-k", "--info", "--")


def test_first_positional_stops_option_parsing() -> None:
    opts = parse_options(["bash", "-k", "-c", "echo hi"])
    assert opts.keep is False
    assert opts.conf == ""
    assert opts.command == ("bash", "-k", "-c", "echo hi")


def test_lone_dash_is_a_positional() -> None:
    assert parse_options(["-"]).command == ("-",)


def test_info_wins_immediately() -> None:
    assert parse_options(["-k", "--info", "--bogus"]) == Options(info=True)


def test_help_request() -> None:
    assert parse_options(["-h"]).help is True
    assert parse_options(["--help"]).help is True


@pytest.mark.parametrize(
    "argv",
    [
        ["--bogus"],
        ["-x"],
        ["-c"],
        ["-m", ""],
        ["--env"],
        ["-k", "-z", "cmd"],
    ],
)
def test_usage_errors(argv: list[str]) -> None:
    with pytest.raises(UsageError):
        _ = parse_options(argv)


def test_usage_shows_description_unless_none() -> None:
    text = format_usage("ubuntu.run", "Ubuntu rootfs")
    assert text.startswith("Usage: ubuntu.run [options] [--] [COMMAND] [ARG...]\n")
    assert "\nUbuntu rootfs\n" in text
    assert "-w, --rw" in text

    bare = format_usage("ubuntu.run", "none")
    assert "none" not in bare
    assert " Options:" in bare
    assert "\n   -i, --info" in bare


def test_info_omits_checksum_for_sentinel() -> None:
    text = format_info(
        base_manifest(sha256_sum="0", total_size=600, target_dir="ubuntu"), "1.2.3"
    )
    assert "Checksum" not in text
    assert text.splitlines() == [
        "Compression: gzip",
        "Description: test bundle",
        "Runtime version: 1.2.3",
        "Target directory: ubuntu",
        "Uncompressed size: 600 KB",
    ]


def test_info_lists_checksum_when_present() -> None:
    digest = "ab" * 32
    text = format_info(base_manifest(file_sizes=(3,), sha256_sum=digest), "1.2.3")
    assert text.splitlines()[0] == f"Checksum: {digest}"


@pytest.mark.parametrize("argv", [["-kq"], ["--kee"], ["--quiet=1"], ["-cconf.sh"]])
def test_bundled_abbreviated_and_attached_forms_are_rejected(argv: list[str]) -> None:
    with pytest.raises(UsageError):
        _ = parse_options(argv)
