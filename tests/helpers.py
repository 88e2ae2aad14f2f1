"""Snapshot builders and fake collaborators shared by the tests."""
from datetime import datetime, timedelta, timezone

from replctl.models import JobOutcome, HealthSnapshot, Role, SlotHandle
from replctl.state_store import StateStore

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def primary_snapshot(standbys=("r1",), active_slots=("r1_slot",), lost_slots=(), wal_lsn=0x3000000,
                     slot_error=None, connection_error=None):
    if connection_error:
        return HealthSnapshot(node_id="primary", role=Role.PRIMARY, taken_at=T0, connection_error=connection_error)
    return HealthSnapshot(node_id="primary", role=Role.PRIMARY, taken_at=T0, in_recovery=False,
                          replication_rows=len(standbys), standby_names=tuple(standbys),
                          active_slots=tuple(active_slots), lost_slots=tuple(lost_slots),
                          wal_lsn=wal_lsn, slot_error=slot_error)


def disconnected_primary(**kwargs):
    return primary_snapshot(standbys=(), active_slots=(), **kwargs)


def replica_snapshot(node_id="r1", in_recovery=True, lag=0.0, last_replay_at=T0, slot_name="r1_slot",
                     slot_error=None, connection_error=None, wal_lsn=0x2000000):
    if connection_error:
        return HealthSnapshot(node_id=node_id, role=Role.REPLICA, taken_at=T0,
                              slot_error=slot_error, connection_error=connection_error)
    return HealthSnapshot(node_id=node_id, role=Role.REPLICA, taken_at=T0, in_recovery=in_recovery,
                          lag=None if lag is None else timedelta(seconds=lag), last_replay_at=last_replay_at,
                          slot_name=slot_name, slot_error=slot_error, wal_lsn=wal_lsn)


def idle_slot(name="r1_slot", active=False, restart_lsn=0x1000000, system_identifier="7300000000000000001"):
    return SlotHandle(name=name, slot_type="physical", active=active, restart_lsn=restart_lsn,
                      wal_status="reserved", system_identifier=system_identifier)


class RecordingStore(StateStore):
    """StateStore that remembers every state it persisted."""

    def __init__(self, path):
        super().__init__(path)
        self.saved_states = []

    def save(self, record):
        self.saved_states.append(record.state)
        return super().save(record)


class FakeProbe:
    """
    Replays queued replica snapshots, then reports the replica healthy.

    A queued callable is awaited instead, so a test can hold a probe in flight.
    """

    def __init__(self, replica_snapshots=(), primary=None):
        self.replica_snapshots = list(replica_snapshots)
        self.primary = primary or primary_snapshot()
        self.replica_calls = 0
        self.forgotten = []

    async def probe_primary(self):
        return self.primary

    async def probe_replica(self, node):
        self.replica_calls += 1
        if self.replica_snapshots:
            snapshot = self.replica_snapshots.pop(0)
            return await snapshot() if callable(snapshot) else snapshot
        return replica_snapshot(node_id=node.node_id, slot_name=node.slot_name)

    def forget(self, node_id):
        self.forgotten.append(node_id)


class FakeSlots:
    def __init__(self, drop_error=None):
        self.dropped = []
        self.drop_error = drop_error

    def drop_slot(self, name):
        if self.drop_error:
            raise self.drop_error
        self.dropped.append(name)
        return True


class FakeOrchestrator:
    """Finishes every job with a fixed outcome; `on_call` runs while the job is in flight."""

    def __init__(self, outcome=JobOutcome.SUCCESS, error=None, slot=None, on_call=None):
        self.outcome = outcome
        self.error = error
        self.slot = slot or idle_slot()
        self.on_call = on_call
        self.jobs = []

    async def rebuild(self, replica, slot_name, job, lineage=None, progress=None):
        self.jobs.append((replica.node_id, slot_name, job, lineage))
        if progress is not None:
            job.step = "stop"
            await progress(job)
        if self.on_call is not None:
            self.on_call(job)
        job.slot = self.slot
        job.finish(self.outcome, self.error)
        return job
