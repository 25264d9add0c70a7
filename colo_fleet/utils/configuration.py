"""Fleet and transport configuration."""

import os
import pathlib as pl

LAUNCH_PATH = pl.Path.cwd()

# Inventory of colo nodes, one pipe-delimited record per line
INVENTORY_FILE = pl.Path(os.environ.get("COLO_INVENTORY_FILE") or "colo_nodes").expanduser()
if not INVENTORY_FILE.is_absolute():
    # The path is relative to LAUNCH_PATH (current path can differ)
    INVENTORY_FILE = LAUNCH_PATH / INVENTORY_FILE

# Remote user that owns the lease state on every node
SSH_USER = os.environ.get("COLO_SSH_USER") or "colo"

# Keypair installed on a node when it is requisitioned
SSH_KEY = pl.Path(os.environ.get("COLO_SSH_KEY") or "~/.ssh/id_ecdsa").expanduser()

# Datacenter keys that are always allowed on a node, restored when the node is freed
AUTHORIZED_KEYS_FILE: str | pl.Path = os.environ.get("COLO_AUTHORIZED_KEYS_FILE") or ""
if AUTHORIZED_KEYS_FILE:
    AUTHORIZED_KEYS_FILE = pl.Path(AUTHORIZED_KEYS_FILE).expanduser().resolve()

# Seconds allowed for establishing a connection to a node
CONNECT_TIMEOUT = int(os.environ.get("COLO_CONNECT_TIMEOUT") or 10)
# Seconds allowed for a whole remote command, including the connection
COMMAND_TIMEOUT = int(os.environ.get("COLO_COMMAND_TIMEOUT") or 300)

if CONNECT_TIMEOUT < 1 or COMMAND_TIMEOUT < CONNECT_TIMEOUT:
    msg = (
        f"Invalid timeouts: COLO_CONNECT_TIMEOUT={CONNECT_TIMEOUT}, "
        f"COLO_COMMAND_TIMEOUT={COMMAND_TIMEOUT}"
    )
    raise RuntimeError(msg)

# Upper limit of concurrent connections during fan-out
MAX_WORKERS = int(os.environ.get("COLO_MAX_WORKERS") or 32)
if MAX_WORKERS < 1:
    msg = f"Invalid COLO_MAX_WORKERS '{MAX_WORKERS}': must be >= 1"
    raise RuntimeError(msg)

TRANSPORT = os.environ.get("COLO_TRANSPORT") or "ssh"
if TRANSPORT not in ("ssh", "local"):
    msg = f"Invalid COLO_TRANSPORT: {TRANSPORT}"
    raise RuntimeError(msg)

# Directory with one subdirectory per node address, used by the "local" transport
LOCAL_ROOT: str | pl.Path = os.environ.get("COLO_LOCAL_ROOT") or ""
if LOCAL_ROOT:
    LOCAL_ROOT = pl.Path(LOCAL_ROOT).expanduser().resolve()

# Identity the nodes report when using the "local" transport
LOCAL_USER = os.environ.get("COLO_USER") or ""

# Append-only journal of lease operations
LEASE_LOG: str | pl.Path = os.environ.get("COLO_LEASE_LOG") or ""
if LEASE_LOG:
    LEASE_LOG = pl.Path(LEASE_LOG).expanduser().resolve()
