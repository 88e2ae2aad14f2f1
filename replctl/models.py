"""
Data model for the replication lifecycle controller.

Nodes and health snapshots are immutable value objects. A RebuildJob is
mutable only until it reaches a terminal outcome. ReplicaRecord is the
persisted view of one supervised replica.
"""
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

DEFAULT_PG_PORT = 5432

# slot_error markers
WAL_SEGMENT_REMOVED = "wal_segment_removed"
SLOT_WAL_LOST = "slot_wal_lost"

# connection_error markers
CONNECTION_TIMEOUT = "timeout"


class Role(str, Enum):
    PRIMARY = "primary"
    REPLICA = "replica"


class ReplicaState(str, Enum):
    UNINITIALIZED = "UNINITIALIZED"
    STREAMING = "STREAMING"
    LAGGING = "LAGGING"
    DISCONNECTED = "DISCONNECTED"
    WAL_LOST = "WAL_LOST"
    REBUILDING = "REBUILDING"
    ROLE_VIOLATION = "ROLE_VIOLATION"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        """FAILED and ROLE_VIOLATION only leave through an operator reset."""
        return self in (ReplicaState.FAILED, ReplicaState.ROLE_VIOLATION)


class FailureMode(str, Enum):
    HEALTHY = "HEALTHY"
    NOT_CONNECTED = "NOT_CONNECTED"
    LAGGING = "LAGGING"
    WAL_LOST = "WAL_LOST"
    ROLE_VIOLATION = "ROLE_VIOLATION"
    REPLAY_STALLED = "REPLAY_STALLED"
    # Not healthy, but no failure proven yet (e.g. fewer than N missed probes).
    INCONCLUSIVE = "INCONCLUSIVE"


class JobOutcome(str, Enum):
    SUCCESS = "success"
    ABORTED = "aborted"
    ERROR = "error"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_lsn(text: str | None) -> int | None:
    """
    Converts a PostgreSQL LSN in its textual 'XXXXXXXX/YYYYYYYY' form to an integer.

    Args:
        text (str | None): LSN as returned by the server, e.g. '16/B374D848'.

    Returns:
        int | None: The 64-bit position, or None if text is empty.

    Raises:
        ValueError: If the text is not a valid LSN.
    """
    if not text:
        return None
    high, sep, low = str(text).partition("/")
    if not sep:
        raise ValueError(f"Invalid LSN: {text!r}")
    return (int(high, 16) << 32) | int(low, 16)


def format_lsn(value: int | None) -> str:
    if value is None:
        return ""
    return f"{value >> 32:X}/{value & 0xFFFFFFFF:X}"


def parse_endpoint(endpoint: str) -> tuple[str, int]:
    """Splits 'host[:port]' into (host, port); bracketed IPv6 hosts are accepted."""
    endpoint = endpoint.strip()
    if not endpoint:
        raise ValueError("Endpoint must not be empty")
    match = re.match(r"^\[(?P<host6>[^\]]+)\](?::(?P<port6>\d+))?$", endpoint)
    if match:
        host, port = match.group("host6"), match.group("port6")
    elif endpoint.count(":") == 1:
        host, port = endpoint.split(":")
    else:
        host, port = endpoint, None
    if not host:
        raise ValueError(f"Endpoint '{endpoint}' has no host")
    if port is None or port == "":
        return host, DEFAULT_PG_PORT
    if not port.isdigit() or not 0 < int(port) < 65536:
        raise ValueError(f"Endpoint '{endpoint}' has an invalid port")
    return host, int(port)


def default_slot_name(replica_id: str) -> str:
    """Slot names may only contain lower case letters, numbers and underscores."""
    base = re.sub(r"[^a-z0-9_]", "_", replica_id.lower())
    return f"{base}_slot"


@dataclass(frozen=True)
class Node:
    node_id: str
    role: Role
    host: str
    port: int = DEFAULT_PG_PORT
    datadir: str | None = None
    log_file: str | None = None
    service_name: str | None = None
    slot_name: str | None = None

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class SlotHandle:
    """A physical replication slot as seen on the primary."""
    name: str
    slot_type: str
    active: bool
    restart_lsn: int | None
    wal_status: str | None
    system_identifier: str | None

    @property
    def lost(self) -> bool:
        return self.wal_status == "lost"

    @property
    def lineage(self) -> "SlotLineage":
        return SlotLineage(self.system_identifier, self.restart_lsn)


@dataclass(frozen=True)
class SlotLineage:
    system_identifier: str | None
    restart_lsn: int | None


@dataclass(frozen=True)
class HealthSnapshot:
    node_id: str
    role: Role
    taken_at: datetime
    in_recovery: bool | None = None
    replication_rows: int = 0
    standby_names: tuple[str, ...] = ()
    active_slots: tuple[str, ...] = ()
    lost_slots: tuple[str, ...] = ()
    wal_lsn: int | None = None
    lag: timedelta | None = None
    last_replay_at: datetime | None = None
    slot_name: str | None = None
    slot_error: str | None = None
    connection_error: str | None = None

    @property
    def reachable(self) -> bool:
        return self.connection_error is None

    @classmethod
    def unreachable(cls, node: Node, error: str, slot_error: str | None = None) -> "HealthSnapshot":
        return cls(node_id=node.node_id, role=node.role, taken_at=utcnow(),
                   slot_error=slot_error, connection_error=error)


@dataclass
class RebuildJob:
    replica_id: str
    generation: int
    trigger: FailureMode | None
    requested_by: str = "controller"
    started_at: datetime = field(default_factory=utcnow)
    step: str | None = None
    finished_at: datetime | None = None
    outcome: JobOutcome | None = None
    error: str | None = None
    slot: SlotHandle | None = None

    @property
    def job_id(self) -> str:
        return f"{self.replica_id}-g{self.generation}"

    @property
    def terminal(self) -> bool:
        return self.outcome is not None

    def finish(self, outcome: JobOutcome, error: str | None = None) -> None:
        if self.terminal:
            raise RuntimeError(f"Rebuild job {self.job_id} already finished ({self.outcome.value})")
        self.outcome = outcome
        self.error = error
        self.finished_at = utcnow()


@dataclass
class ReplicaRecord:
    replica_id: str
    host: str
    port: int = DEFAULT_PG_PORT
    datadir: str | None = None
    log_file: str | None = None
    service_name: str | None = None
    slot_name: str | None = None
    state: ReplicaState = ReplicaState.UNINITIALIZED
    generation: int = 0
    last_failure_mode: FailureMode | None = None
    last_error: str | None = None
    slot_lineage: SlotLineage | None = None
    last_snapshot: HealthSnapshot | None = None
    last_job: RebuildJob | None = None
    pending_request: str | None = None
    drop_slot_on_reset: bool = False
    registered_at: datetime = field(default_factory=utcnow)
    updated_at: datetime | None = None

    def __post_init__(self):
        if not self.slot_name:
            self.slot_name = default_slot_name(self.replica_id)

    @property
    def node(self) -> Node:
        return Node(node_id=self.replica_id, role=Role.REPLICA, host=self.host, port=self.port,
                    datadir=self.datadir, log_file=self.log_file,
                    service_name=self.service_name, slot_name=self.slot_name)

    @property
    def active_job(self) -> RebuildJob | None:
        if self.last_job is not None and not self.last_job.terminal:
            return self.last_job
        return None
