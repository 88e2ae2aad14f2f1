"""
Failure classification for a supervised replica.

classify() is a pure function of the current primary/replica snapshots and a
bounded window of earlier (primary, replica) pairs. Checks run in order of
severity so that a role violation or WAL loss is never masked by a milder
connectivity or lag diagnosis.
"""
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import timedelta

from replctl.models import WAL_SEGMENT_REMOVED, FailureMode, HealthSnapshot

SnapshotPair = tuple[HealthSnapshot, HealthSnapshot]


@dataclass(frozen=True)
class ClassifierPolicy:
    """Tunable thresholds; acceptable lag is deployment specific."""
    lag_threshold: timedelta = timedelta(seconds=30)
    disconnect_probes: int = 5
    recovery_probes: int = 3
    stall_probes: int = 3
    history_window: int = 10

    def __post_init__(self):
        for name in ("disconnect_probes", "recovery_probes", "stall_probes", "history_window"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1")
        if self.history_window < max(self.disconnect_probes, self.stall_probes):
            raise ValueError("history_window must cover disconnect_probes and stall_probes")
        if self.lag_threshold < timedelta(0):
            raise ValueError("lag_threshold must not be negative")


def is_connected(primary: HealthSnapshot, replica: HealthSnapshot) -> bool:
    """True if the primary currently sees the replica streaming."""
    if not primary.reachable or not replica.reachable:
        return False
    if replica.slot_name and replica.slot_name in primary.active_slots:
        return True
    return replica.node_id in primary.standby_names


def _slot_lost(primary: HealthSnapshot, slot_name: str | None) -> bool:
    return bool(slot_name) and slot_name in primary.lost_slots


def _wal_lost(window: Sequence[SnapshotPair], slot_name: str | None) -> bool:
    primary, replica = window[-1]
    if replica.slot_error == WAL_SEGMENT_REMOVED:
        return True
    slot_name = replica.slot_name or slot_name
    if _slot_lost(primary, slot_name):
        return True
    if len(window) < 2:
        return False
    prev_primary, prev_replica = window[-2]
    # Streaming as a standby, then gone right after the primary lost this replica's slot.
    was_standby = prev_replica.in_recovery is True and is_connected(prev_primary, prev_replica)
    return was_standby and not is_connected(primary, replica) and _slot_lost(prev_primary, slot_name)


def _disconnected_run(window: Sequence[SnapshotPair]) -> int:
    """Consecutive samples, newest first, in which the replica was provably not connected."""
    run = 0
    for primary, replica in reversed(window):
        if not primary.reachable or is_connected(primary, replica):
            break
        run += 1
    return run


def _replay_stalled(window: Sequence[SnapshotPair], policy: ClassifierPolicy) -> bool:
    recent = window[-policy.stall_probes:]
    if len(recent) < max(policy.stall_probes, 2):
        return False
    if not all(is_connected(p, r) for p, r in recent):
        return False
    replays = {r.last_replay_at for _, r in recent}
    if len(replays) != 1 or None in replays:
        return False
    first_lsn, last_lsn = recent[0][0].wal_lsn, recent[-1][0].wal_lsn
    return first_lsn is not None and last_lsn is not None and last_lsn > first_lsn


def _lag_shrinking(window: Sequence[SnapshotPair]) -> bool:
    current = window[-1][1].lag
    earlier = [r.lag for p, r in window[:-1] if r.lag is not None and is_connected(p, r)]
    return bool(earlier) and current < earlier[-1]


def classify(primary: HealthSnapshot, replica: HealthSnapshot,
             history: Sequence[SnapshotPair] = (),
             policy: ClassifierPolicy = ClassifierPolicy(), slot_name: str | None = None) -> FailureMode:
    """
    Classifies the replica's replication health.

    Args:
        primary (HealthSnapshot): Latest snapshot of the primary.
        replica (HealthSnapshot): Latest snapshot of the replica.
        history (Sequence[SnapshotPair]): Earlier (primary, replica) pairs, oldest first.
        policy (ClassifierPolicy): Thresholds and window sizes.
        slot_name (str | None): Slot registered for the replica; used when the replica
                                itself is unreachable and cannot report it.

    Returns:
        FailureMode: HEALTHY only when every positive condition holds at once;
                     INCONCLUSIVE when something is off but no failure is proven.
    """
    keep = policy.history_window - 1
    window = (list(history)[-keep:] if keep else []) + [(primary, replica)]

    if replica.in_recovery is False:
        return FailureMode.ROLE_VIOLATION
    if _wal_lost(window, slot_name):
        return FailureMode.WAL_LOST

    if not primary.reachable:
        return FailureMode.INCONCLUSIVE
    if not is_connected(primary, replica):
        if _disconnected_run(window) >= policy.disconnect_probes:
            return FailureMode.NOT_CONNECTED
        return FailureMode.INCONCLUSIVE

    if _replay_stalled(window, policy):
        return FailureMode.REPLAY_STALLED
    if replica.lag is None:
        return FailureMode.INCONCLUSIVE
    if replica.lag > policy.lag_threshold:
        return FailureMode.INCONCLUSIVE if _lag_shrinking(window) else FailureMode.LAGGING
    if replica.in_recovery is True:
        return FailureMode.HEALTHY
    return FailureMode.INCONCLUSIVE
