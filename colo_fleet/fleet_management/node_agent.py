"""Node-side lease operations implemented in Python.

`NodeAgent` performs the remote commands directly on a node home directory, with the same
locking, exit codes and output as the bash scripts rendered by the commands. It backs the "local"
transport, which is used for dry runs and for exercising the lease protocol without real nodes.
"""

import logging
import os
import pathlib as pl
import shutil

from colo_fleet.fleet_management import common
from colo_fleet.fleet_management import remote_commands
from colo_fleet.utils import locking
from colo_fleet.utils import types as ttypes

LOGGER = logging.getLogger(__name__)


class NodeAgent:
    """Lease state machine of a single node."""

    def __init__(self, home: ttypes.FileType, *, identity: str = "") -> None:
        self.home = pl.Path(home)
        self.identity = identity

    @property
    def state_file(self) -> pl.Path:
        return self.home / common.STATE_FILE

    @property
    def scratch_dir(self) -> pl.Path:
        return self.home / common.SCRATCH_DIR

    @property
    def ssh_dir(self) -> pl.Path:
        return self.home / common.SSH_DIR

    def _lock(self) -> locking.AdvisoryLock:
        return locking.AdvisoryLock(self.home / common.LOCK_FILE)

    def _read_record(self) -> remote_commands.LockRecord | None:
        try:
            content = self.state_file.read_text(encoding="utf-8")
        except OSError:
            # Missing or unreadable state means nobody holds the node
            return None
        return remote_commands.parse_state_file(content)

    def execute(self, command: remote_commands.RemoteCommand) -> ttypes.CommandOutput:
        """Execute the command and return exit code and output lines."""
        if isinstance(command, remote_commands.QueryCommand):
            return self.query()
        if isinstance(command, remote_commands.RequisitionCommand):
            return self.requisition(command)
        if isinstance(command, remote_commands.FreeCommand):
            return self.free(command)
        if isinstance(command, remote_commands.IdentityProbeCommand):
            return self.identity_probe()

        msg = f"Unsupported command: {command!r}"
        raise TypeError(msg)

    def query(self) -> ttypes.CommandOutput:
        record = None
        if self.state_file.is_file():
            with self._lock().shared():
                record = self._read_record()

        holder = record.holder_identity if record else ""
        instance_name = record.instance_name if record else ""
        return common.EXIT_OK, [f"{holder}{common.FIELD_SEP}{instance_name}"]

    def requisition(self, command: remote_commands.RequisitionCommand) -> ttypes.CommandOutput:
        try:
            with self._lock().exclusive():
                if self._read_record() is not None:
                    return common.EXIT_NOT_FREE, []

                self.state_file.write_text(
                    remote_commands.render_state_file(command.record), encoding="utf-8"
                )
                try:
                    self._bootstrap(command)
                except OSError:
                    LOGGER.exception(f"Bootstrap of '{self.home}' failed, rolling back the lease")
                    self.state_file.unlink(missing_ok=True)
                    if self.scratch_dir.is_dir():
                        (self.scratch_dir / common.STARTUP_COMPLETE_FILE).unlink(missing_ok=True)
                    return common.EXIT_FAILED, []
        except locking.LockUnavailable:
            return common.EXIT_LOCK_CONTENTION, []

        return common.EXIT_OK, []

    def _bootstrap(self, command: remote_commands.RequisitionCommand) -> None:
        sentinel = self.scratch_dir / common.STARTUP_COMPLETE_FILE
        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        self.ssh_dir.mkdir(parents=True, exist_ok=True)
        sentinel.unlink(missing_ok=True)

        creds = command.credentials
        if creds:
            files = (
                (common.PRIVATE_KEY_NAME, creds.private_key, 0o600),
                (common.PUBLIC_KEY_NAME, creds.public_key, 0o644),
                (common.AUTHORIZED_KEYS_NAME, "\n".join(creds.authorized_keys), 0o600),
            )
            for name, content, mode in files:
                scratch_file = self.scratch_dir / name
                scratch_file.write_text(f"{content}\n", encoding="utf-8")
                os.chmod(scratch_file, mode)
                shutil.copy2(scratch_file, self.ssh_dir / name)

        (self.home / common.MOTD_FILE).write_text(f"{command.motd}\n", encoding="utf-8")

        # The startup-complete marker MUST be created last
        sentinel.touch()

    def free(self, command: remote_commands.FreeCommand) -> ttypes.CommandOutput:
        try:
            with self._lock().exclusive():
                record = self._read_record()
                if record is None:
                    return common.EXIT_NOT_HELD, []
                if record.holder_identity != command.identity:
                    return common.EXIT_IDENTITY_MISMATCH, []
                # The caller must also be the holder as far as the node itself is concerned
                if self.identity and record.holder_identity != self.identity:
                    return common.EXIT_IDENTITY_MISMATCH, []

                self._clear_scratch()
                self.ssh_dir.mkdir(parents=True, exist_ok=True)
                (self.ssh_dir / common.AUTHORIZED_KEYS_NAME).write_text(
                    "\n".join(command.default_authorized_keys) + "\n", encoding="utf-8"
                )
                (self.home / common.MOTD_FILE).unlink(missing_ok=True)
                self.state_file.unlink()
        except locking.LockUnavailable:
            return common.EXIT_LOCK_CONTENTION, []

        return common.EXIT_OK, []

    def _clear_scratch(self) -> None:
        if not self.scratch_dir.exists():
            return
        for path in self.scratch_dir.iterdir():
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            else:
                path.unlink()

    def identity_probe(self) -> ttypes.CommandOutput:
        if not self.identity:
            return common.EXIT_FAILED, []
        return common.EXIT_OK, [self.identity]
