"""Commands executed on colo nodes.

Every interaction with a node is one of a closed set of commands:

* `QueryCommand` - read the lease state under a shared lock
* `RequisitionCommand` - lease a free node and bootstrap it for the new holder
* `FreeCommand` - release a node held by the caller
* `IdentityProbeCommand` - report the identity the node trusts the caller as

A command knows how to render itself as a bash script for the remote shell, and how to interpret
the exit code and output lines of that script. The node-side Python implementation in `node_agent`
produces the same exit codes and output, so the interpretation is shared by all transports.

The lease state lives in a shell-sourceable state file guarded by an advisory lock (`flock`) on a
separate lock file. Leasing takes the exclusive lock without waiting, so of several concurrent
requisitions of a free node at most one can succeed.
"""

import dataclasses
import enum
import pathlib as pl
import shlex
import typing as tp

from colo_fleet.fleet_management import common
from colo_fleet.utils import helpers
from colo_fleet.utils import types as ttypes


@dataclasses.dataclass(frozen=True, order=True)
class ExecResult:
    """Exit code and output lines of a command executed on a single node."""

    address: str
    returncode: int
    lines: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.returncode == common.EXIT_OK

    @property
    def connection_failed(self) -> bool:
        return self.returncode == common.EXIT_CONNECTION_FAILURE

    @classmethod
    def connection_failure(cls, address: str) -> "ExecResult":
        return cls(address=address, returncode=common.EXIT_CONNECTION_FAILURE)


class NodeState(enum.StrEnum):
    FREE = "FREE"
    HELD = "HELD"
    DOWN = "DOWN"


@dataclasses.dataclass(frozen=True, order=True)
class NodeStatus:
    state: NodeState
    holder: str = ""
    instance_name: str = ""

    @classmethod
    def free(cls) -> "NodeStatus":
        return cls(state=NodeState.FREE)

    @classmethod
    def held(cls, holder: str, instance_name: str) -> "NodeStatus":
        return cls(state=NodeState.HELD, holder=holder, instance_name=instance_name)

    @classmethod
    def down(cls) -> "NodeStatus":
        return cls(state=NodeState.DOWN)


class LeaseOutcome(enum.StrEnum):
    SUCCESS = "success"
    LOCK_CONTENTION = "lock contention"
    IDENTITY_MISMATCH = "identity mismatch"
    NOT_FREE = "not free"
    NOT_HELD = "not held"
    CONNECTION_FAILURE = "connection failure"
    FAILED = "failed"

    @classmethod
    def from_returncode(cls, returncode: int) -> "LeaseOutcome":
        return _OUTCOMES.get(returncode, cls.FAILED)


_OUTCOMES = {
    common.EXIT_OK: LeaseOutcome.SUCCESS,
    common.EXIT_LOCK_CONTENTION: LeaseOutcome.LOCK_CONTENTION,
    common.EXIT_IDENTITY_MISMATCH: LeaseOutcome.IDENTITY_MISMATCH,
    common.EXIT_NOT_FREE: LeaseOutcome.NOT_FREE,
    common.EXIT_NOT_HELD: LeaseOutcome.NOT_HELD,
    common.EXIT_CONNECTION_FAILURE: LeaseOutcome.CONNECTION_FAILURE,
}


@dataclasses.dataclass(frozen=True, order=True)
class LockRecord:
    """Parsed content of the lease state file."""

    holder_identity: str
    instance_name: str = ""
    leased_at: str = ""


@dataclasses.dataclass(frozen=True, order=True)
class LeaseCredentials:
    """Keypair installed on a node for the lease holder, and keys that are always allowed."""

    private_key: str
    public_key: str
    default_authorized_keys: tuple[str, ...] = ()

    @property
    def authorized_keys(self) -> tuple[str, ...]:
        return (*self.default_authorized_keys, self.public_key)

    @classmethod
    def from_files(
        cls, private_key_file: ttypes.FileType, authorized_keys_file: ttypes.FileType = ""
    ) -> "LeaseCredentials":
        private_key_path = pl.Path(private_key_file).expanduser()
        public_key_path = private_key_path.with_name(f"{private_key_path.name}.pub")
        return cls(
            private_key=private_key_path.read_text(encoding="utf-8").strip(),
            public_key=public_key_path.read_text(encoding="utf-8").strip(),
            default_authorized_keys=tuple(
                helpers.read_text_lines(authorized_keys_file) if authorized_keys_file else ()
            ),
        )


def render_state_file(record: LockRecord) -> str:
    """Render content of the lease state file."""
    lines = [
        f"export {common.HOLDER_KEY}={shlex.quote(record.holder_identity)}",
        f"export {common.INSTANCE_KEY}={shlex.quote(record.instance_name)}",
        f"export {common.LEASED_AT_KEY}={shlex.quote(record.leased_at)}",
        # Show the lease description on interactive logins
        f'[ -n "${{SSH_TTY:-}}" ] && [ -f "$HOME/{common.MOTD_FILE}" ] '
        f'&& cat "$HOME/{common.MOTD_FILE}" 1>&2 || true',
    ]
    return "\n".join(lines) + "\n"


def parse_state_file(content: str) -> LockRecord | None:
    """Parse content of the lease state file.

    Return `None` when there's no holder, i.e. when the node is free.
    """
    values: dict[str, str] = {}
    for line in content.splitlines():
        line = line.strip()
        if not line.startswith("export "):
            continue
        try:
            tokens = shlex.split(line[len("export ") :])
        except ValueError:
            continue
        for token in tokens:
            key, sep, value = token.partition("=")
            if sep:
                values[key] = value

    holder = values.get(common.HOLDER_KEY, "")
    if not holder:
        return None
    return LockRecord(
        holder_identity=holder,
        instance_name=values.get(common.INSTANCE_KEY, ""),
        leased_at=values.get(common.LEASED_AT_KEY, ""),
    )


def _heredoc(dest: str, content: str, *, delimiter: str, mode: str = "") -> list[str]:
    """Return script lines writing `content` to `dest`, failing the enclosing function on error."""
    lines = [f"cat > {dest} <<'{delimiter}' || return 1", content.rstrip("\n"), delimiter]
    if mode:
        lines.append(f"chmod {mode} {dest} || return 1")
    return lines


_PRELUDE = f"""\
set -u
cd "$HOME" || exit {common.EXIT_FAILED}
STATE_FILE="$HOME/{common.STATE_FILE}"
LOCK_FILE="$HOME/{common.LOCK_FILE}"
SCRATCH_DIR="$HOME/{common.SCRATCH_DIR}"
"""

_LOAD_STATE = f"""\
{common.HOLDER_KEY}=""
{common.INSTANCE_KEY}=""
if [ -f "$STATE_FILE" ]; then
  . "$STATE_FILE"
fi
"""


class RemoteCommand:
    """Base class for commands executed on a node."""

    name: tp.ClassVar[str] = ""

    def render_script(self) -> str:
        """Render the command as a bash script."""
        raise NotImplementedError

    def __str__(self) -> str:
        return self.name


@dataclasses.dataclass(frozen=True)
class QueryCommand(RemoteCommand):
    """Read the lease state. Never modifies it.

    The shared lock is awaited without a limit of its own; a node whose writer never finishes is
    reported down through the command timeout of the transport.
    """

    name: tp.ClassVar[str] = "query"

    def render_script(self) -> str:
        lines = [
            _PRELUDE.rstrip("\n"),
            # A missing state file is the usual case, don't report it
            "exec 2>/dev/null",
            f'{common.HOLDER_KEY}=""',
            f'{common.INSTANCE_KEY}=""',
            'if [ -f "$STATE_FILE" ]; then',
            f'  exec 9<>"$LOCK_FILE" && flock -s 9 || exit {common.EXIT_FAILED}',
            '  [ -f "$STATE_FILE" ] && . "$STATE_FILE"',
            "  exec 9>&-",
            "fi",
            f"printf '%s{common.FIELD_SEP}%s\\n' "
            f'"${common.HOLDER_KEY}" "${common.INSTANCE_KEY}"',
        ]
        return "\n".join(lines) + "\n"

    def parse(self, result: ExecResult) -> NodeStatus:
        """Normalize query result to node status.

        Any failure to complete the query means the node is not usable, i.e. it is down.
        """
        if not result.ok:
            return NodeStatus.down()

        line = result.lines[0] if result.lines else ""
        holder, __, instance_name = line.partition(common.FIELD_SEP)
        if holder:
            return NodeStatus.held(holder=holder, instance_name=instance_name)
        return NodeStatus.free()


@dataclasses.dataclass(frozen=True)
class RequisitionCommand(RemoteCommand):
    """Lease a free node and bootstrap it for the new holder.

    The state file is written and the bootstrap done while the exclusive lock is held. The lock is
    released only after the startup-complete marker was created, so a reader never sees a partially
    bootstrapped lease as complete. If the bootstrap fails, the lease is rolled back.
    """

    name: tp.ClassVar[str] = "requisition"
    identity: str
    instance_name: str
    credentials: LeaseCredentials | None = None
    motd: str = ""
    leased_at: str = dataclasses.field(default_factory=helpers.get_utc_timestamp)

    def __post_init__(self) -> None:
        helpers.check_name(self.identity, what="identity")
        helpers.check_name(self.instance_name, what="instance name")

    @property
    def record(self) -> LockRecord:
        return LockRecord(
            holder_identity=self.identity,
            instance_name=self.instance_name,
            leased_at=self.leased_at,
        )

    def _bootstrap_lines(self) -> list[str]:
        scratch = '"$SCRATCH_DIR"'
        sentinel = f'"$SCRATCH_DIR/{common.STARTUP_COMPLETE_FILE}"'
        ssh_dir = f'"$HOME/{common.SSH_DIR}"'
        lines = [
            "bootstrap() {",
            f"mkdir -p {scratch} {ssh_dir} || return 1",
            f"rm -f {sentinel} || return 1",
        ]
        if self.credentials:
            priv = f'"$SCRATCH_DIR/{common.PRIVATE_KEY_NAME}"'
            pub = f'"$SCRATCH_DIR/{common.PUBLIC_KEY_NAME}"'
            auth = f'"$SCRATCH_DIR/{common.AUTHORIZED_KEYS_NAME}"'
            lines.extend(
                [
                    *_heredoc(
                        priv, self.credentials.private_key, delimiter="__COLO_EOK__", mode="0600"
                    ),
                    *_heredoc(pub, self.credentials.public_key, delimiter="__COLO_EOK__"),
                    *_heredoc(
                        auth,
                        "\n".join(self.credentials.authorized_keys),
                        delimiter="__COLO_EOAK__",
                        mode="0600",
                    ),
                    f'cp -p {priv} "$HOME/{common.SSH_DIR}/{common.PRIVATE_KEY_NAME}" || return 1',
                    f'cp -p {pub} "$HOME/{common.SSH_DIR}/{common.PUBLIC_KEY_NAME}" || return 1',
                    f'cp -p {auth} "$HOME/{common.SSH_DIR}/{common.AUTHORIZED_KEYS_NAME}" '
                    "|| return 1",
                ]
            )
        lines.extend(
            [
                *_heredoc(f'"$HOME/{common.MOTD_FILE}"', self.motd, delimiter="__COLO_EOM__"),
                # The startup-complete marker MUST be created last
                f"touch {sentinel} || return 1",
                "}",
            ]
        )
        return lines

    def render_script(self) -> str:
        state_content = render_state_file(self.record)
        lines = [
            _PRELUDE.rstrip("\n"),
            f'exec 9<>"$LOCK_FILE" || exit {common.EXIT_FAILED}',
            f"flock -x -n 9 || exit {common.EXIT_LOCK_CONTENTION}",
            _LOAD_STATE.rstrip("\n"),
            f'[ -z "${common.HOLDER_KEY}" ] || exit {common.EXIT_NOT_FREE}',
            *self._bootstrap_lines(),
            "{",
            f"cat > \"$STATE_FILE\" <<'__COLO_EOS__'",
            state_content.rstrip("\n"),
            "__COLO_EOS__",
            f"}} || {{ rm -f \"$STATE_FILE\"; exit {common.EXIT_FAILED}; }}",
            "if ! bootstrap; then",
            f'  rm -f "$STATE_FILE" "$SCRATCH_DIR/{common.STARTUP_COMPLETE_FILE}"',
            f"  exit {common.EXIT_FAILED}",
            "fi",
            "exec 9>&-",
            f"exit {common.EXIT_OK}",
        ]
        return "\n".join(lines) + "\n"

    def parse(self, result: ExecResult) -> LeaseOutcome:
        return LeaseOutcome.from_returncode(result.returncode)


@dataclasses.dataclass(frozen=True)
class FreeCommand(RemoteCommand):
    """Release a node, if it is held by the given identity.

    The holder is verified under the exclusive lock before anything is modified.
    """

    name: tp.ClassVar[str] = "free"
    identity: str
    default_authorized_keys: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        helpers.check_name(self.identity, what="identity")

    def render_script(self) -> str:
        lines = [
            _PRELUDE.rstrip("\n"),
            f'exec 9<>"$LOCK_FILE" || exit {common.EXIT_FAILED}',
            f"flock -x -n 9 || exit {common.EXIT_LOCK_CONTENTION}",
            _LOAD_STATE.rstrip("\n"),
            f'[ -n "${common.HOLDER_KEY}" ] || exit {common.EXIT_NOT_HELD}',
            f'[ "${common.HOLDER_KEY}" = {shlex.quote(self.identity)} ] '
            f"|| exit {common.EXIT_IDENTITY_MISMATCH}",
            f'if [ -n "${{{common.IDENTITY_ENV}:-}}" ] '
            f'&& [ "${common.IDENTITY_ENV}" != "${common.HOLDER_KEY}" ]; then',
            f"  exit {common.EXIT_IDENTITY_MISMATCH}",
            "fi",
            'rm -rf "$SCRATCH_DIR"/* "$SCRATCH_DIR"/.[!.]*',
            f'mkdir -p "$HOME/{common.SSH_DIR}"',
            f'cat > "$HOME/{common.SSH_DIR}/{common.AUTHORIZED_KEYS_NAME}" '
            f"<<'__COLO_EOAK__' || exit {common.EXIT_FAILED}",
            "\n".join(self.default_authorized_keys),
            "__COLO_EOAK__",
            f'rm -f "$HOME/{common.MOTD_FILE}"',
            f'rm -f "$STATE_FILE" || exit {common.EXIT_FAILED}',
            "exec 9>&-",
            f"exit {common.EXIT_OK}",
        ]
        return "\n".join(lines) + "\n"

    def parse(self, result: ExecResult) -> LeaseOutcome:
        return LeaseOutcome.from_returncode(result.returncode)


@dataclasses.dataclass(frozen=True)
class IdentityProbeCommand(RemoteCommand):
    """Report the identity configured for the caller on the node."""

    name: tp.ClassVar[str] = "identity-probe"

    def render_script(self) -> str:
        env = common.IDENTITY_ENV
        return f'[ -n "${{{env}:-}}" ] && printf \'%s\\n\' "${env}"\n'

    def parse(self, result: ExecResult) -> str | None:
        if not result.ok or not result.lines:
            return None
        return result.lines[0].strip() or None
