"""Error taxonomy for the replication lifecycle controller."""


class ReplctlError(Exception):
    """Base class for all controller errors."""


class ConfigError(ReplctlError):
    """Configuration file is missing, unparsable, or has invalid values."""


class ProbeTimeout(ReplctlError):
    """A status probe did not complete within its timeout."""

    def __init__(self, node_id: str, timeout: float):
        super().__init__(f"Probe of node '{node_id}' timed out after {timeout:.1f}s")
        self.node_id = node_id
        self.timeout = timeout


class SlotConflict(ReplctlError):
    """A replication slot exists but cannot be used for this replica."""

    def __init__(self, slot_name: str, reason: str):
        super().__init__(f"Replication slot '{slot_name}' conflict: {reason}")
        self.slot_name = slot_name
        self.reason = reason


class RebuildStepFailure(ReplctlError):
    """A step of the rebuild sequence failed."""

    def __init__(self, step: str, detail: str):
        super().__init__(f"Rebuild step '{step}' failed: {detail}")
        self.step = step
        self.detail = detail


class RoleViolationDetected(ReplctlError):
    """A registered replica reports that it is not in recovery."""

    def __init__(self, replica_id: str):
        super().__init__(
            f"Replica '{replica_id}' is not in recovery and may be accepting writes. "
            f"Manual investigation and reset required."
        )
        self.replica_id = replica_id


class StateStoreError(ReplctlError):
    """The persisted controller state cannot be read or written."""


class RequestRejected(ReplctlError):
    """An operator request is not valid for the replica's current state."""
