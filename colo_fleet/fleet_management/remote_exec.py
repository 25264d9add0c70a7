"""Execution of commands on colo nodes.

The `RemoteExecutor` is the only channel through which the rest of the package talks to nodes.
It runs a command on many nodes concurrently and returns only after every node has finished or
timed out. Failure on one node never affects the others; it's reported in that node's result.
"""

import concurrent.futures
import logging
import pathlib as pl
import subprocess
import typing as tp

from colo_fleet.fleet_management import common
from colo_fleet.fleet_management import node_agent
from colo_fleet.fleet_management import remote_commands
from colo_fleet.fleet_management.remote_commands import ExecResult
from colo_fleet.utils import configuration
from colo_fleet.utils import helpers
from colo_fleet.utils import types as ttypes

LOGGER = logging.getLogger(__name__)

SSH_OPTIONS = ("-o", "BatchMode=yes", "-o", "StrictHostKeyChecking=accept-new")


class Transport:
    """Generic way of executing a command on a node."""

    name: tp.ClassVar[str] = ""

    def execute(self, address: str, command: remote_commands.RemoteCommand) -> ExecResult:
        msg = f"Not implemented for transport '{self.name}'."
        raise NotImplementedError(msg)


class SSHTransport(Transport):
    """Run the command's script in bash on the node, over `ssh`."""

    name: tp.ClassVar[str] = "ssh"

    def __init__(
        self,
        *,
        user: str = configuration.SSH_USER,
        connect_timeout: int = configuration.CONNECT_TIMEOUT,
        command_timeout: int = configuration.COMMAND_TIMEOUT,
        ssh_options: tp.Sequence[str] = SSH_OPTIONS,
    ) -> None:
        self.user = user
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.ssh_options = tuple(ssh_options)

    def get_ssh_cmd(self, address: str) -> list[str]:
        return [
            "ssh",
            "-l",
            self.user,
            "-o",
            f"ConnectTimeout={self.connect_timeout}",
            *self.ssh_options,
            address,
            "bash",
            "-s",
        ]

    def execute(self, address: str, command: remote_commands.RemoteCommand) -> ExecResult:
        cmd = self.get_ssh_cmd(address)
        LOGGER.debug(f"Running `{command}` on '{address}'")

        try:
            with subprocess.Popen(
                cmd, stdin=subprocess.PIPE, stdout=subprocess.PIPE, stderr=subprocess.PIPE
            ) as p:
                try:
                    stdout, stderr = p.communicate(
                        input=command.render_script().encode(), timeout=self.command_timeout
                    )
                except subprocess.TimeoutExpired:
                    p.kill()
                    p.communicate()
                    LOGGER.warning(
                        f"`{command}` on '{address}' timed out after {self.command_timeout}s"
                    )
                    return ExecResult.connection_failure(address)
                retcode = p.returncode
        except OSError as exc:
            LOGGER.error(f"Failed to run `ssh` for '{address}': {exc}")  # noqa: TRY400
            return ExecResult.connection_failure(address)

        if stderr:
            LOGGER.debug(f"stderr of `{command}` on '{address}': {stderr.decode(errors='replace')}")

        if retcode == common.EXIT_CONNECTION_FAILURE:
            return ExecResult.connection_failure(address)

        return ExecResult(
            address=address,
            returncode=retcode,
            lines=tuple(helpers.split_output_lines(stdout.decode(errors="replace"))),
        )


class LocalTransport(Transport):
    """Execute commands with `NodeAgent` on local directories, one directory per node address.

    A node whose directory doesn't exist is unreachable.
    """

    name: tp.ClassVar[str] = "local"

    def __init__(
        self,
        root: ttypes.FileType,
        *,
        identity: str = configuration.LOCAL_USER,
        identities: dict[str, str] | None = None,
    ) -> None:
        self.root = pl.Path(root)
        self.identity = identity
        self.identities = identities or {}

    def node_home(self, address: str) -> pl.Path:
        return self.root / address

    def provision(self, addresses: tp.Iterable[str]) -> None:
        """Create home directories for the nodes."""
        for address in addresses:
            self.node_home(address).mkdir(parents=True, exist_ok=True)

    def execute(self, address: str, command: remote_commands.RemoteCommand) -> ExecResult:
        home = self.node_home(address)
        if not home.is_dir():
            return ExecResult.connection_failure(address)

        agent = node_agent.NodeAgent(home, identity=self.identities.get(address, self.identity))
        retcode, lines = agent.execute(command)
        return ExecResult(address=address, returncode=retcode, lines=tuple(lines))


def get_transport(name: str = "", *, local_root: ttypes.FileType = "") -> Transport:
    """Return the transport selected by `name`, or by configuration."""
    name = name or configuration.TRANSPORT
    if name == SSHTransport.name:
        return SSHTransport()
    if name == LocalTransport.name:
        root = local_root or configuration.LOCAL_ROOT
        if not root:
            msg = "The 'local' transport needs `COLO_LOCAL_ROOT` to be set."
            raise RuntimeError(msg)
        return LocalTransport(root, identity=configuration.LOCAL_USER)

    msg = f"Unknown transport: {name}"
    raise ValueError(msg)


class RemoteExecutor:
    """Fan-out of commands to nodes, with a join barrier."""

    def __init__(self, transport: Transport, *, max_workers: int = configuration.MAX_WORKERS):
        if max_workers < 1:
            msg = f"Invalid `max_workers` '{max_workers}': must be >= 1"
            raise ValueError(msg)
        self.transport = transport
        self.max_workers = max_workers

    def _execute(self, address: str, command: remote_commands.RemoteCommand) -> ExecResult:
        try:
            return self.transport.execute(address, command)
        except Exception:
            LOGGER.exception(f"`{command}` failed on '{address}'")
            return ExecResult(address=address, returncode=common.EXIT_FAILED)

    def run(
        self, addresses: tp.Iterable[str], command: remote_commands.RemoteCommand
    ) -> list[ExecResult]:
        """Run the command on all nodes concurrently and wait for all of them to finish.

        The order of results is arbitrary.
        """
        addresses = list(addresses)
        if not addresses:
            return []

        num_threads = min(self.max_workers, len(addresses))
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=num_threads, thread_name_prefix="colo_exec"
        ) as executor:
            futures = [executor.submit(self._execute, a, command) for a in addresses]
            results = [f.result() for f in concurrent.futures.as_completed(futures)]

        return results

    def run_one(self, address: str, command: remote_commands.RemoteCommand) -> ExecResult:
        """Run the command on a single node."""
        return self._execute(address, command)
