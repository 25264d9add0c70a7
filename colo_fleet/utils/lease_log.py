"""Journal of lease operations performed from this host.

Several operators (or CI jobs) can share one journal, so every write is serialized with a file
lock.
"""

import getpass
import logging
import os

import filelock

from colo_fleet.utils import configuration
from colo_fleet.utils import helpers

LOGGER = logging.getLogger(__name__)


def _local_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return str(os.getuid())


def log_event(msg: str) -> None:
    """Append a message to the lease journal, if the journal is enabled."""
    LOGGER.debug(msg)
    if not configuration.LEASE_LOG:
        return

    with (
        filelock.FileLock(f"{configuration.LEASE_LOG}.lock"),
        open(configuration.LEASE_LOG, "a", encoding="utf-8") as logfile,
    ):
        logfile.write(f"{helpers.get_utc_timestamp()} {_local_user()}@{os.getpid()}: {msg}\n")
