"""
Destructive rebuild of a replica from a fresh base backup.

The sequence is strictly ordered:

    1. stop           stop the replica service
    2. wipe           delete the entire data directory
    3. ensure_slot    confirm the slot exists and is idle
    4. base_backup    pg_basebackup -R through the slot
    5. start          start the replica service
    6. await_standby  wait until the replica reports it is in recovery

A job may be abandoned only before the wipe. From the wipe onwards it runs to
completion, and a failure leaves the job in error so the replica is marked
FAILED rather than half initialized. Jobs are never retried here.
"""
import asyncio
import inspect
import logging
import os
import shutil
import time

import psycopg2

from replctl.errors import RebuildStepFailure, SlotConflict
from replctl.models import JobOutcome, Node, RebuildJob, SlotHandle, SlotLineage

logger = logging.getLogger(__name__)


def unsafe_data_dir(datadir: str | None) -> str | None:
    """Returns why `datadir` must not be wiped, or None if it may be."""
    if not datadir or not os.path.isabs(datadir):
        return f"data directory '{datadir}' must be an absolute path"
    path = os.path.realpath(datadir)
    if os.path.dirname(path) == path:
        return f"refusing to delete filesystem root '{path}'"
    return None


def wipe_data_dir(datadir: str | None) -> None:
    """
    Deletes the whole data directory and recreates it empty with 0700 permissions.

    Old files are never reused: a partial wipe is how a rebuilt replica ends up inconsistent.

    Raises:
        RebuildStepFailure: If the path is unsafe or cannot be removed.
    """
    problem = unsafe_data_dir(datadir)
    if problem:
        raise RebuildStepFailure("wipe", problem)
    path = os.path.realpath(datadir)
    try:
        if os.path.lexists(path):
            logger.warning(f"Removing replica data directory '{path}'...")
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
            else:
                os.remove(path)
        os.makedirs(path, mode=0o700)
        os.chmod(path, 0o700)
    except OSError as e:
        raise RebuildStepFailure("wipe", f"cannot recreate '{path}': {e}") from e
    logger.info(f"Recreated empty replica data directory '{path}' (0700).")


class RebuildOrchestrator:
    """
    Runs the rebuild sequence for one replica at a time.

    Collaborators are synchronous (psycopg2 and subprocess based) and are driven
    from worker threads; the replica probe is the async StateProbe.
    """

    def __init__(self, probe, slots, base_backup, service, primary_endpoint: str,
                 standby_timeout: float = 300.0, standby_poll_interval: float = 2.0,
                 slot_release_timeout: float = 60.0, slot_poll_interval: float = 1.0):
        self.probe = probe
        self.slots = slots
        self.base_backup = base_backup
        self.service = service
        self.primary_endpoint = primary_endpoint
        self.standby_timeout = standby_timeout
        self.standby_poll_interval = standby_poll_interval
        self.slot_release_timeout = slot_release_timeout
        self.slot_poll_interval = slot_poll_interval

    async def rebuild(self, replica: Node, slot_name: str, job: RebuildJob,
                      lineage: SlotLineage | None = None, progress=None) -> RebuildJob:
        """
        Rebuilds `replica` and returns `job` with its outcome set.

        Args:
            replica (Node): The replica to rebuild.
            slot_name (str): Physical slot the new replica will stream through.
            job (RebuildJob): The job to run; it is updated in place.
            lineage (SlotLineage | None): Slot lineage recorded for this replica.
            progress (callable | None): Called with the job whenever it enters a new step;
                                        an awaitable result is awaited before the step runs.

        Raises:
            asyncio.CancelledError: After marking the job aborted (before the wipe) or after
                                    letting the destructive part finish (from the wipe onwards).
        """
        logger.warning(f"Rebuild job {job.job_id}: rebuilding replica '{replica.node_id}' "
                       f"(trigger: {job.trigger.value if job.trigger else 'operator'}).")
        try:
            await self._step(job, "stop", progress)
            problem = unsafe_data_dir(replica.datadir)
            if problem:
                raise RebuildStepFailure("stop", f"{problem}; replica '{replica.node_id}' left running")
            await self._stop(replica)
        except asyncio.CancelledError:
            job.finish(JobOutcome.ABORTED, "cancelled before data deletion")
            logger.warning(f"Rebuild job {job.job_id} aborted before data deletion.")
            raise
        except RebuildStepFailure as e:
            return self._failed(job, e)

        destructive = asyncio.ensure_future(self._rebuild_store(replica, slot_name, job, lineage, progress))
        try:
            await asyncio.shield(destructive)
        except asyncio.CancelledError:
            if not destructive.done():
                logger.warning(f"Rebuild job {job.job_id} is past data deletion and cannot be cancelled; "
                               f"waiting for it to finish.")
                await destructive
            raise
        return job

    async def _rebuild_store(self, replica: Node, slot_name: str, job: RebuildJob,
                             lineage: SlotLineage | None, progress) -> RebuildJob:
        try:
            await self._step(job, "wipe", progress)
            await asyncio.to_thread(wipe_data_dir, replica.datadir)

            await self._step(job, "ensure_slot", progress)
            job.slot = await self._ensure_idle_slot(slot_name, lineage)

            await self._step(job, "base_backup", progress)
            ok = await asyncio.to_thread(self.base_backup.take_base_backup, self.primary_endpoint,
                                         slot_name, replica.datadir, replica.node_id)
            if not ok:
                raise RebuildStepFailure("base_backup", f"base backup into '{replica.datadir}' failed")

            await self._step(job, "start", progress)
            if not await asyncio.to_thread(self.service.start, replica):
                raise RebuildStepFailure("start", f"replica '{replica.node_id}' did not start")

            await self._step(job, "await_standby", progress)
            await self._await_standby(replica)
        except (RebuildStepFailure, SlotConflict) as e:
            return self._failed(job, e)
        except Exception as e:
            logger.exception(f"Rebuild job {job.job_id}: unexpected error in step '{job.step}'")
            return self._failed(job, RebuildStepFailure(job.step or "unknown", repr(e)))

        job.finish(JobOutcome.SUCCESS)
        logger.info(f"Rebuild job {job.job_id}: replica '{replica.node_id}' is back in standby mode.")
        return job

    @staticmethod
    async def _step(job: RebuildJob, name: str, progress) -> None:
        job.step = name
        logger.info(f"Rebuild job {job.job_id}: step '{name}'")
        if progress is not None:
            result = progress(job)
            if inspect.isawaitable(result):
                await result

    @staticmethod
    def _failed(job: RebuildJob, error: Exception) -> RebuildJob:
        job.finish(JobOutcome.ERROR, str(error))
        logger.error(f"Rebuild job {job.job_id} failed in step '{job.step}': {error}")
        return job

    async def _stop(self, replica: Node) -> None:
        if not await asyncio.to_thread(self.service.stop, replica):
            raise RebuildStepFailure("stop", f"replica '{replica.node_id}' could not be stopped")

    async def _ensure_idle_slot(self, slot_name: str, lineage: SlotLineage | None) -> SlotHandle:
        try:
            slot = await asyncio.to_thread(self.slots.ensure_slot, slot_name, lineage)
            deadline = time.monotonic() + self.slot_release_timeout
            while slot.active:
                if time.monotonic() >= deadline:
                    raise SlotConflict(slot_name, "slot is still active; another standby is streaming through it")
                logger.info(f"Slot '{slot_name}' is still active; waiting for its walsender to exit...")
                await asyncio.sleep(self.slot_poll_interval)
                slot = await asyncio.to_thread(self.slots.get_slot, slot_name)
                if slot is None:
                    raise SlotConflict(slot_name, "slot was dropped while waiting for it to become inactive")
        except psycopg2.Error as e:
            raise RebuildStepFailure("ensure_slot", f"database error: {e}") from e
        return slot

    async def _await_standby(self, replica: Node) -> None:
        deadline = time.monotonic() + self.standby_timeout
        while True:
            snapshot = await self.probe.probe_replica(replica)
            if snapshot.in_recovery is True:
                return
            if snapshot.in_recovery is False:
                raise RebuildStepFailure("await_standby",
                                         f"replica '{replica.node_id}' came up as a primary, not a standby")
            if time.monotonic() >= deadline:
                raise RebuildStepFailure("await_standby",
                                         f"replica '{replica.node_id}' not in recovery after "
                                         f"{self.standby_timeout}s ({snapshot.connection_error})")
            await asyncio.sleep(self.standby_poll_interval)
