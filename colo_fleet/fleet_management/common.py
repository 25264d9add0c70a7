"""Layout of the lease state on a node and the exit codes of the lease operations.

All paths are relative to the home directory of the remote user.
"""

STATE_FILE = ".colo-lease"
# The lock file is never removed, so the state file can be deleted while the lock is held
LOCK_FILE = ".colo-lease.lock"
MOTD_FILE = ".colo-motd"
SCRATCH_DIR = "colo-scratch"
# Must be created as the very last step of node bootstrap
STARTUP_COMPLETE_FILE = ".instance-startup-complete"
SSH_DIR = ".ssh"
PRIVATE_KEY_NAME = "id_ecdsa"
PUBLIC_KEY_NAME = "id_ecdsa.pub"
AUTHORIZED_KEYS_NAME = "authorized_keys"

# Node-side environment variable with the identity trusted by the connection layer
IDENTITY_ENV = "COLO_USER"

# Keys in the state file
HOLDER_KEY = "HOLDER_IDENTITY"
INSTANCE_KEY = "INSTANCE_NAME"
LEASED_AT_KEY = "LEASED_AT"

# Separator of fields in a single line of command output
FIELD_SEP = "\v"

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_LOCK_CONTENTION = 10
EXIT_IDENTITY_MISMATCH = 11
EXIT_NOT_FREE = 12
EXIT_NOT_HELD = 13
# Returned by `ssh` itself when the connection fails
EXIT_CONNECTION_FAILURE = 255
