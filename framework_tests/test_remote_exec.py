import pathlib as pl
import shutil
import threading
import time

import pytest

from colo_fleet.fleet_management import common
from colo_fleet.fleet_management import remote_commands
from colo_fleet.fleet_management import remote_exec
from colo_fleet.fleet_management.remote_commands import ExecResult
from colo_fleet.fleet_management.remote_commands import LeaseOutcome


class MissingSSHTransport(remote_exec.SSHTransport):
    def get_ssh_cmd(self, address: str) -> list[str]:
        return ["/nonexistent/ssh", address]


class FlakyTransport(remote_exec.Transport):
    """Transport that raises for addresses starting with "broken"."""

    name = "flaky"

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def execute(
        self, address: str, command: remote_commands.RemoteCommand
    ) -> remote_commands.ExecResult:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(self.delay)
            if address.startswith("broken"):
                msg = f"Cannot talk to {address}"
                raise RuntimeError(msg)
            return ExecResult(address=address, returncode=0, lines=(address,))
        finally:
            with self._lock:
                self.active -= 1


class TestSSHTransport:
    @pytest.fixture
    def ssh_transport(self) -> remote_exec.SSHTransport:
        return remote_exec.SSHTransport(user="colo", connect_timeout=1, command_timeout=5)

    def test_ssh_cmd(self, ssh_transport: remote_exec.SSHTransport):
        cmd = ssh_transport.get_ssh_cmd("10.0.0.1")

        assert cmd[:3] == ["ssh", "-l", "colo"]
        assert "ConnectTimeout=1" in cmd
        assert "BatchMode=yes" in cmd
        assert cmd[-3:] == ["10.0.0.1", "bash", "-s"]

    def test_success(self, ssh_transport: remote_exec.SSHTransport):
        result = ssh_transport.execute("node-a", remote_commands.QueryCommand())

        assert result.address == "node-a"
        assert result.ok
        assert result.lines[0] == "host=node-a"
        # The script is passed on stdin, not on the command line
        assert result.lines[1] == "command=bash -s"
        assert int(result.lines[2].split("=")[1]) > 1

    def test_unreachable(self, ssh_transport: remote_exec.SSHTransport):
        result = ssh_transport.execute("unreachable-1", remote_commands.QueryCommand())

        assert result == ExecResult.connection_failure("unreachable-1")
        assert result.connection_failed
        assert result.lines == ()

    def test_command_failed(self, ssh_transport: remote_exec.SSHTransport):
        result = ssh_transport.execute("fail-1", remote_commands.QueryCommand())

        assert result.returncode == 3
        # stderr is not part of the output lines
        assert result.lines == ("partial output",)
        assert not result.connection_failed

    def test_field_separator_in_output(self, ssh_transport: remote_exec.SSHTransport):
        """Vertical tab separates fields within a line, it doesn't end the line."""
        query = remote_commands.QueryCommand()
        result = ssh_transport.execute("held-1", query)

        assert result.lines == (f"alice{common.FIELD_SEP}testnet-1",)
        assert query.parse(result) == remote_commands.NodeStatus.held("alice", "testnet-1")

    @pytest.mark.skipif(not shutil.which("flock"), reason="needs `flock`")
    def test_lease_cycle(
        self,
        ssh_transport: remote_exec.SSHTransport,
        tmp_path: pl.Path,
        monkeypatch: pytest.MonkeyPatch,
    ):
        monkeypatch.setenv("COLO_MOCK_HOME", str(tmp_path))
        monkeypatch.delenv(common.IDENTITY_ENV, raising=False)
        query = remote_commands.QueryCommand()
        acquire = remote_commands.RequisitionCommand(identity="alice", instance_name="testnet-1")
        release = remote_commands.FreeCommand(identity="alice")

        assert query.parse(ssh_transport.execute("exec-1", query)) == (
            remote_commands.NodeStatus.free()
        )
        assert acquire.parse(ssh_transport.execute("exec-1", acquire)) == LeaseOutcome.SUCCESS
        assert query.parse(ssh_transport.execute("exec-1", query)) == (
            remote_commands.NodeStatus.held("alice", "testnet-1")
        )
        assert release.parse(ssh_transport.execute("exec-1", release)) == LeaseOutcome.SUCCESS
        assert not (tmp_path / "exec-1" / common.STATE_FILE).exists()

    def test_timeout(self):
        ssh_transport = remote_exec.SSHTransport(connect_timeout=1, command_timeout=1)

        start = time.monotonic()
        result = ssh_transport.execute("slow-1", remote_commands.QueryCommand())

        assert result.connection_failed
        assert time.monotonic() - start < 10

    def test_missing_ssh(self):
        result = MissingSSHTransport().execute("node-a", remote_commands.QueryCommand())
        assert result == ExecResult.connection_failure("node-a")


class TestRemoteExecutor:
    def test_fan_out_ssh(self):
        executor = remote_exec.RemoteExecutor(
            remote_exec.SSHTransport(connect_timeout=1, command_timeout=5), max_workers=3
        )
        addresses = ["node-a", "unreachable-1", "fail-1", "node-b"]

        results = executor.run(addresses, remote_commands.QueryCommand())

        assert sorted(r.address for r in results) == sorted(addresses)
        by_address = {r.address: r for r in results}
        assert by_address["node-a"].ok
        assert by_address["node-b"].ok
        assert by_address["unreachable-1"].connection_failed
        assert by_address["fail-1"].returncode == 3

    def test_failure_contained(self):
        executor = remote_exec.RemoteExecutor(FlakyTransport(), max_workers=2)
        addresses = ["node-a", "broken-1", "node-b"]

        results = executor.run(addresses, remote_commands.QueryCommand())

        by_address = {r.address: r for r in results}
        assert len(by_address) == 3
        assert by_address["broken-1"].returncode == common.EXIT_FAILED
        assert by_address["node-a"].lines == ("node-a",)
        assert by_address["node-b"].lines == ("node-b",)

    def test_max_workers(self):
        transport = FlakyTransport(delay=0.05)
        executor = remote_exec.RemoteExecutor(transport, max_workers=2)

        results = executor.run([f"node-{i}" for i in range(6)], remote_commands.QueryCommand())

        assert len(results) == 6
        assert 1 <= transport.max_active <= 2

    def test_no_addresses(self):
        executor = remote_exec.RemoteExecutor(FlakyTransport(), max_workers=2)
        assert executor.run([], remote_commands.QueryCommand()) == []

    @pytest.mark.parametrize("max_workers", (0, -1))
    def test_invalid_max_workers(self, max_workers: int):
        with pytest.raises(ValueError, match="max_workers"):
            remote_exec.RemoteExecutor(FlakyTransport(), max_workers=max_workers)

    def test_run_one(self):
        executor = remote_exec.RemoteExecutor(FlakyTransport(), max_workers=2)

        assert executor.run_one("node-a", remote_commands.QueryCommand()).ok
        assert executor.run_one("broken-1", remote_commands.QueryCommand()).returncode == 1


class TestLocalTransport:
    def test_missing_node_is_down(self, tmp_path: pl.Path):
        transport = remote_exec.LocalTransport(tmp_path, identity="alice")
        transport.provision(["10.0.0.1"])

        assert transport.execute("10.0.0.1", remote_commands.QueryCommand()).ok
        assert transport.execute("10.0.0.9", remote_commands.QueryCommand()).connection_failed

    def test_identities(self, tmp_path: pl.Path):
        transport = remote_exec.LocalTransport(
            tmp_path, identity="alice", identities={"10.0.0.2": "bob"}
        )
        transport.provision(["10.0.0.1", "10.0.0.2"])
        probe = remote_commands.IdentityProbeCommand()

        assert transport.execute("10.0.0.1", probe).lines == ("alice",)
        assert transport.execute("10.0.0.2", probe).lines == ("bob",)


class TestGetTransport:
    def test_ssh(self):
        assert isinstance(remote_exec.get_transport("ssh"), remote_exec.SSHTransport)

    def test_local(self, tmp_path: pl.Path):
        transport = remote_exec.get_transport("local", local_root=tmp_path)
        assert isinstance(transport, remote_exec.LocalTransport)
        assert transport.root == tmp_path

    def test_local_without_root(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(remote_exec.configuration, "LOCAL_ROOT", "")
        with pytest.raises(RuntimeError, match="COLO_LOCAL_ROOT"):
            remote_exec.get_transport("local")

    def test_unknown(self):
        with pytest.raises(ValueError, match="Unknown transport"):
            remote_exec.get_transport("telnet")
