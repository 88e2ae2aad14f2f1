"""
Tests for the rebuild sequence: step order, failure handling and cancellation.
"""
import asyncio
import os
import stat
import threading

import pytest

from helpers import idle_slot, replica_snapshot
from replctl.errors import RebuildStepFailure, SlotConflict
from replctl.models import CONNECTION_TIMEOUT, FailureMode, JobOutcome, Node, RebuildJob, Role
from replctl.rebuild_orchestrator import RebuildOrchestrator, wipe_data_dir


class Recorder:
    """Collaborators that append their calls to one shared list."""

    def __init__(self, datadir):
        self.datadir = datadir
        self.calls = []
        self.stop_ok = True
        self.start_ok = True
        self.backup_ok = True
        self.slot = idle_slot()
        self.slot_after_wait = idle_slot()
        self.ensure_error = None
        self.snapshots = [replica_snapshot()]
        self.backup_saw_empty_dir = None
        self.gate = None

    def stop(self, node):
        self.calls.append("stop")
        if self.gate == "stop":
            self._wait()
        return self.stop_ok

    def start(self, node):
        self.calls.append("start")
        return self.start_ok

    def ensure_slot(self, name, lineage=None):
        self.calls.append("ensure_slot")
        if self.ensure_error:
            raise self.ensure_error
        return self.slot

    def get_slot(self, name):
        self.calls.append("get_slot")
        return self.slot_after_wait

    def take_base_backup(self, primary_endpoint, slot_name, target_dir, application_name):
        self.calls.append("base_backup")
        self.backup_saw_empty_dir = os.listdir(target_dir) == []
        if self.gate == "base_backup":
            self._wait()
        return self.backup_ok

    async def probe_replica(self, node):
        self.calls.append("probe")
        return self.snapshots.pop(0) if len(self.snapshots) > 1 else self.snapshots[0]

    def gated(self, step):
        self.gate = step
        self.entered = threading.Event()
        self.release = threading.Event()

    def _wait(self):
        self.entered.set()
        self.release.wait(timeout=5)


@pytest.fixture
def datadir(tmp_path):
    path = tmp_path / "r1"
    path.mkdir()
    (path / "PG_VERSION").write_text("16\n")
    (path / "base").mkdir()
    return str(path)


@pytest.fixture
def recorder(datadir):
    return Recorder(datadir)


def make_orchestrator(recorder, **kwargs):
    kwargs.setdefault("standby_poll_interval", 0)
    kwargs.setdefault("slot_poll_interval", 0)
    return RebuildOrchestrator(recorder, recorder, recorder, recorder, "10.0.0.1:5432", **kwargs)


def replica(datadir):
    return Node(node_id="r1", role=Role.REPLICA, host="10.0.0.2", datadir=datadir, slot_name="r1_slot")


def new_job():
    return RebuildJob(replica_id="r1", generation=1, trigger=FailureMode.WAL_LOST)


async def wait_for_thread(event):
    while not event.is_set():
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_steps_run_in_order_with_slot_before_backup(recorder, datadir):
    steps = []
    job = await make_orchestrator(recorder).rebuild(replica(datadir), "r1_slot", new_job(),
                                                    progress=lambda j: steps.append(j.step))

    assert job.outcome is JobOutcome.SUCCESS
    assert recorder.calls == ["stop", "ensure_slot", "base_backup", "start", "probe"]
    assert steps == ["stop", "wipe", "ensure_slot", "base_backup", "start", "await_standby"]
    assert recorder.backup_saw_empty_dir is True
    assert job.slot == idle_slot()


@pytest.mark.asyncio
async def test_slot_conflict_fails_before_backup(recorder, datadir):
    recorder.ensure_error = SlotConflict("r1_slot", "primary system identifier 1 does not match recorded 2")

    job = await make_orchestrator(recorder).rebuild(replica(datadir), "r1_slot", new_job())

    assert job.outcome is JobOutcome.ERROR
    assert "base_backup" not in recorder.calls
    assert "does not match" in job.error
    assert job.step == "ensure_slot"


@pytest.mark.asyncio
async def test_waits_for_lingering_walsender_to_release_slot(recorder, datadir):
    recorder.slot = idle_slot(active=True)

    job = await make_orchestrator(recorder).rebuild(replica(datadir), "r1_slot", new_job())

    assert job.outcome is JobOutcome.SUCCESS
    assert recorder.calls[:4] == ["stop", "ensure_slot", "get_slot", "base_backup"]


@pytest.mark.asyncio
async def test_slot_that_stays_active_is_a_conflict(recorder, datadir):
    recorder.slot = recorder.slot_after_wait = idle_slot(active=True)

    job = await make_orchestrator(recorder, slot_release_timeout=0).rebuild(replica(datadir), "r1_slot", new_job())

    assert job.outcome is JobOutcome.ERROR
    assert "still active" in job.error
    assert "base_backup" not in recorder.calls


@pytest.mark.asyncio
async def test_failed_stop_leaves_data_untouched(recorder, datadir):
    recorder.stop_ok = False

    job = await make_orchestrator(recorder).rebuild(replica(datadir), "r1_slot", new_job())

    assert job.outcome is JobOutcome.ERROR
    assert job.step == "stop"
    assert os.path.exists(os.path.join(datadir, "PG_VERSION"))
    assert recorder.calls == ["stop"]


@pytest.mark.asyncio
@pytest.mark.parametrize("path", [None, "relative/r1"])
async def test_unusable_data_directory_does_not_stop_replica(recorder, path):
    job = await make_orchestrator(recorder).rebuild(replica(path), "r1_slot", new_job())

    assert job.outcome is JobOutcome.ERROR
    assert job.step == "stop"
    assert "absolute path" in job.error
    assert recorder.calls == []


@pytest.mark.asyncio
async def test_async_progress_callback_is_awaited(recorder, datadir):
    steps = []

    async def progress(job):
        await asyncio.sleep(0)
        steps.append(job.step)

    job = await make_orchestrator(recorder).rebuild(replica(datadir), "r1_slot", new_job(), progress=progress)

    assert job.outcome is JobOutcome.SUCCESS
    assert steps == ["stop", "wipe", "ensure_slot", "base_backup", "start", "await_standby"]


@pytest.mark.asyncio
async def test_failed_base_backup_does_not_start_replica(recorder, datadir):
    recorder.backup_ok = False

    job = await make_orchestrator(recorder).rebuild(replica(datadir), "r1_slot", new_job())

    assert job.outcome is JobOutcome.ERROR
    assert job.step == "base_backup"
    assert "start" not in recorder.calls


@pytest.mark.asyncio
async def test_replica_that_comes_up_as_primary_fails_at_once(recorder, datadir):
    recorder.snapshots = [replica_snapshot(in_recovery=False)]

    job = await make_orchestrator(recorder).rebuild(replica(datadir), "r1_slot", new_job())

    assert job.outcome is JobOutcome.ERROR
    assert "came up as a primary" in job.error
    assert recorder.calls.count("probe") == 1


@pytest.mark.asyncio
async def test_polls_until_replica_is_in_recovery(recorder, datadir):
    recorder.snapshots = [replica_snapshot(connection_error="refused: starting up")] * 2 + [replica_snapshot()]

    job = await make_orchestrator(recorder).rebuild(replica(datadir), "r1_slot", new_job())

    assert job.outcome is JobOutcome.SUCCESS
    assert recorder.calls.count("probe") == 3


@pytest.mark.asyncio
async def test_standby_timeout(recorder, datadir):
    recorder.snapshots = [replica_snapshot(connection_error=CONNECTION_TIMEOUT)]

    job = await make_orchestrator(recorder, standby_timeout=0).rebuild(replica(datadir), "r1_slot", new_job())

    assert job.outcome is JobOutcome.ERROR
    assert job.step == "await_standby"


@pytest.mark.asyncio
async def test_cancel_before_wipe_aborts_and_keeps_data(recorder, datadir):
    recorder.gated("stop")
    job = new_job()
    task = asyncio.create_task(make_orchestrator(recorder).rebuild(replica(datadir), "r1_slot", job))
    await wait_for_thread(recorder.entered)

    task.cancel()
    recorder.release.set()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert job.outcome is JobOutcome.ABORTED
    assert os.path.exists(os.path.join(datadir, "PG_VERSION"))
    assert "base_backup" not in recorder.calls


@pytest.mark.asyncio
async def test_cancel_after_wipe_runs_to_completion(recorder, datadir):
    recorder.gated("base_backup")
    job = new_job()
    task = asyncio.create_task(make_orchestrator(recorder).rebuild(replica(datadir), "r1_slot", job))
    await wait_for_thread(recorder.entered)

    task.cancel()
    await asyncio.sleep(0.05)
    assert not job.terminal
    recorder.release.set()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert job.outcome is JobOutcome.SUCCESS
    assert recorder.calls == ["stop", "ensure_slot", "base_backup", "start", "probe"]


def test_wipe_recreates_empty_private_directory(datadir):
    wipe_data_dir(datadir)

    assert os.listdir(datadir) == []
    assert stat.S_IMODE(os.stat(datadir).st_mode) == 0o700


def test_wipe_creates_missing_directory(tmp_path):
    target = str(tmp_path / "new" / "r1")
    wipe_data_dir(target)
    assert os.path.isdir(target)


@pytest.mark.parametrize("path", [None, "", "relative/r1", "/"])
def test_wipe_refuses_unsafe_paths(path):
    with pytest.raises(RebuildStepFailure) as excinfo:
        wipe_data_dir(path)
    assert excinfo.value.step == "wipe"
