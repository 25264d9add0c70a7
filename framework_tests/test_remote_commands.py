import pytest
import pytest_subtests

from colo_fleet.fleet_management import common
from colo_fleet.fleet_management import remote_commands
from colo_fleet.fleet_management.remote_commands import ExecResult
from colo_fleet.fleet_management.remote_commands import LeaseOutcome
from colo_fleet.fleet_management.remote_commands import NodeState
from colo_fleet.fleet_management.remote_commands import NodeStatus


class TestStateFile:
    def test_render_parse(self):
        record = remote_commands.LockRecord(
            holder_identity="alice", instance_name="testnet-1", leased_at="2026-10-17T10:00:00+00:00"
        )
        content = remote_commands.render_state_file(record)

        assert "export HOLDER_IDENTITY=alice\n" in content
        assert "export INSTANCE_NAME=testnet-1\n" in content
        assert remote_commands.parse_state_file(content) == record

    def test_parse_empty_holder(self):
        assert remote_commands.parse_state_file("export HOLDER_IDENTITY=\n") is None
        assert remote_commands.parse_state_file("") is None

    def test_parse_ignores_other_lines(self):
        content = (
            "# lease\n"
            "export HOLDER_IDENTITY='bob'\n"
            "echo hello\n"
            "export INSTANCE_NAME=perf-7 EXTRA=1\n"
        )
        record = remote_commands.parse_state_file(content)
        assert record == remote_commands.LockRecord(holder_identity="bob", instance_name="perf-7")


def test_query_parse(subtests: pytest_subtests.SubTests):
    command = remote_commands.QueryCommand()
    sep = common.FIELD_SEP
    cases = (
        (ExecResult("10.0.0.1", 0, (f"{sep}",)), NodeStatus.free()),
        (ExecResult("10.0.0.1", 0, ()), NodeStatus.free()),
        (ExecResult("10.0.0.1", 0, (f"alice{sep}testnet-1",)), NodeStatus.held("alice", "testnet-1")),
        (ExecResult("10.0.0.1", 255, ()), NodeStatus.down()),
        (ExecResult("10.0.0.1", 10, ()), NodeStatus.down()),
    )
    for result, expected in cases:
        with subtests.test(msg="query result", result=result):
            status = command.parse(result)
            assert status == expected
            assert status.state in set(NodeState)


@pytest.mark.parametrize(
    ("returncode", "outcome"),
    (
        (0, LeaseOutcome.SUCCESS),
        (common.EXIT_LOCK_CONTENTION, LeaseOutcome.LOCK_CONTENTION),
        (common.EXIT_IDENTITY_MISMATCH, LeaseOutcome.IDENTITY_MISMATCH),
        (common.EXIT_NOT_FREE, LeaseOutcome.NOT_FREE),
        (common.EXIT_NOT_HELD, LeaseOutcome.NOT_HELD),
        (255, LeaseOutcome.CONNECTION_FAILURE),
        (1, LeaseOutcome.FAILED),
        (127, LeaseOutcome.FAILED),
    ),
)
def test_lease_outcome(returncode: int, outcome: LeaseOutcome):
    command = remote_commands.FreeCommand(identity="alice")
    assert command.parse(ExecResult("10.0.0.1", returncode)) == outcome


@pytest.mark.parametrize("name", ("", "alice; rm -rf /", "-x", "a b", "$(id)"))
def test_invalid_names(name: str):
    with pytest.raises(ValueError, match="Invalid identity"):
        remote_commands.FreeCommand(identity=name)
    with pytest.raises(ValueError, match="Invalid instance name"):
        remote_commands.RequisitionCommand(identity="alice", instance_name=name)


class TestScripts:
    def test_query_script(self):
        script = remote_commands.QueryCommand().render_script()

        # Readers wait for the writer, only the transport command timeout bounds the wait
        assert "flock -s 9" in script
        assert "flock -s -w" not in script
        assert "flock -x" not in script
        assert common.STATE_FILE in script
        assert common.LOCK_FILE in script
        assert "rm " not in script

    def test_requisition_script(self, credentials: remote_commands.LeaseCredentials):
        command = remote_commands.RequisitionCommand(
            identity="alice",
            instance_name="testnet-1",
            credentials=credentials,
            motd="Leased for testnet-1",
            leased_at="2026-10-17T10:00:00+00:00",
        )
        script = command.render_script()

        assert "flock -x -n 9 || exit 10" in script
        assert f'[ -z "$HOLDER_IDENTITY" ] || exit {common.EXIT_NOT_FREE}' in script
        assert "export HOLDER_IDENTITY=alice" in script
        assert "export INSTANCE_NAME=testnet-1" in script
        assert credentials.private_key in script
        assert credentials.public_key in script
        assert credentials.default_authorized_keys[0] in script
        assert "Leased for testnet-1" in script

        # The startup-complete marker is created as the last step of the bootstrap
        bootstrap = script[script.index("bootstrap() {") : script.index("\n}\n")]
        sentinel = f'touch "$SCRATCH_DIR/{common.STARTUP_COMPLETE_FILE}" || return 1'
        assert bootstrap.rstrip().endswith(sentinel)
        # The lock is released only after the bootstrap
        assert script.index("if ! bootstrap; then") < script.index("exec 9>&-")
        # The lease is written before the bootstrap runs
        assert script.index("__COLO_EOS__") < script.index("if ! bootstrap; then")

    def test_requisition_script_no_credentials(self):
        command = remote_commands.RequisitionCommand(identity="alice", instance_name="testnet-1")
        script = command.render_script()

        assert common.PRIVATE_KEY_NAME not in script
        assert common.STARTUP_COMPLETE_FILE in script

    def test_free_script(self, credentials: remote_commands.LeaseCredentials):
        command = remote_commands.FreeCommand(
            identity="alice", default_authorized_keys=credentials.default_authorized_keys
        )
        script = command.render_script()

        assert "flock -x -n 9 || exit 10" in script
        assert f'[ "$HOLDER_IDENTITY" = alice ] || exit {common.EXIT_IDENTITY_MISMATCH}' in script
        # The node's own identity is checked against the holder as well
        assert f'"${common.IDENTITY_ENV}" != "$HOLDER_IDENTITY"' in script
        assert credentials.default_authorized_keys[0] in script
        assert credentials.public_key not in script
        # Identity is checked before anything is removed
        assert script.index(f"exit {common.EXIT_IDENTITY_MISMATCH}") < script.index("rm -rf")
        assert script.rindex(f"exit {common.EXIT_IDENTITY_MISMATCH}") < script.index("rm -rf")
        assert script.index('rm -f "$STATE_FILE"') > script.index("__COLO_EOAK__")

    def test_identity_probe(self):
        command = remote_commands.IdentityProbeCommand()

        assert common.IDENTITY_ENV in command.render_script()
        assert command.parse(ExecResult("10.0.0.1", 0, ("alice",))) == "alice"
        assert command.parse(ExecResult("10.0.0.1", 1, ())) is None
        assert command.parse(ExecResult("10.0.0.1", 255, ())) is None
        assert command.parse(ExecResult("10.0.0.1", 0, ("",))) is None
