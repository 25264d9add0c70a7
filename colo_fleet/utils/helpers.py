import argparse
import datetime
import pathlib as pl
import re

import colo_fleet.utils.types as ttypes

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._@-]*$")


def get_utc_timestamp() -> str:
    """Return current UTC time in ISO 8601 format, with seconds precision."""
    return datetime.datetime.now(tz=datetime.UTC).isoformat(timespec="seconds")


def check_name(value: str, *, what: str = "name") -> str:
    """Check that the value is safe to be passed to a remote shell and stored in a state file.

    >>> check_name("testnet-1")
    'testnet-1'
    """
    if not _NAME_RE.match(value or ""):
        msg = f"Invalid {what} '{value}': only letters, digits and '._@-' are allowed"
        raise ValueError(msg)
    return value


def check_file_arg(file_path: str) -> pl.Path | None:
    """Check that the file passed as argparse parameter is a valid existing file."""
    if not file_path:
        return None
    abs_path = pl.Path(file_path).expanduser().resolve()
    if not (abs_path.exists() and abs_path.is_file()):
        msg = f"check_file_arg: file '{file_path}' doesn't exist"
        raise argparse.ArgumentTypeError(msg)
    return abs_path


def check_dir_arg(dir_path: str) -> pl.Path | None:
    """Check that the dir passed as argparse parameter is a valid existing dir."""
    if not dir_path:
        return None
    abs_path = pl.Path(dir_path).expanduser().resolve()
    if not (abs_path.exists() and abs_path.is_dir()):
        msg = f"check_dir_arg: directory '{dir_path}' doesn't exist"
        raise argparse.ArgumentTypeError(msg)
    return abs_path


def read_text_lines(path: ttypes.FileType) -> list[str]:
    """Return non-empty lines of a text file, or an empty list when the file doesn't exist."""
    fpath = pl.Path(path).expanduser()
    if not fpath.exists():
        return []
    with open(fpath, encoding="utf-8") as in_fp:
        return [line.rstrip("\n") for line in in_fp if line.strip()]


def split_output_lines(output: str) -> list[str]:
    """Split command output into lines, on newlines only.

    Unlike `str.splitlines`, vertical tab and other line-boundary characters are kept, as they
    separate fields within a line.

    >>> split_output_lines("alice\\vrun-1\\nbob\\n")
    ['alice\\x0brun-1', 'bob']
    """
    lines = output.split("\n")
    if lines and not lines[-1]:
        lines.pop()
    return [line.removesuffix("\r") for line in lines]
