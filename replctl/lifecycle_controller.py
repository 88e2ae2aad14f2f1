"""
The replication lifecycle control loop.

One task probes the primary. Every registered replica gets a probe task that
produces (primary, replica) snapshot pairs and a controller task that consumes
them in order. The controller task is the only writer of its replica's state:
it classifies each pair, applies the state transition, runs the rebuild when
WAL has been lost, and applies operator requests posted through the state
store.
"""
import asyncio
import logging
from collections import deque

import psycopg2

from replctl.collaborators import PgBaseBackup, build_service_control
from replctl.errors import ReplctlError, RoleViolationDetected, SlotConflict
from replctl.failure_classifier import ClassifierPolicy, classify
from replctl.models import FailureMode, JobOutcome, Node, RebuildJob, ReplicaRecord, ReplicaState, Role
from replctl.rebuild_orchestrator import RebuildOrchestrator
from replctl.slot_manager import SlotManager
from replctl.state_probe import StateProbe
from replctl.state_store import REQUEST_REBUILD, REQUEST_RESET, StateStore

logger = logging.getLogger(__name__)

INTERRUPTED_REBUILD = "rebuild interrupted by controller restart"

# mode -> (states it applies to, target state); HEALTHY and ROLE_VIOLATION are handled separately
TRANSITIONS = {
    FailureMode.NOT_CONNECTED: (
        (ReplicaState.UNINITIALIZED, ReplicaState.STREAMING, ReplicaState.LAGGING),
        ReplicaState.DISCONNECTED),
    FailureMode.LAGGING: (
        (ReplicaState.UNINITIALIZED, ReplicaState.STREAMING, ReplicaState.DISCONNECTED),
        ReplicaState.LAGGING),
    FailureMode.REPLAY_STALLED: (
        (ReplicaState.UNINITIALIZED, ReplicaState.STREAMING, ReplicaState.DISCONNECTED),
        ReplicaState.LAGGING),
    FailureMode.WAL_LOST: (
        (ReplicaState.UNINITIALIZED, ReplicaState.STREAMING, ReplicaState.LAGGING, ReplicaState.DISCONNECTED),
        ReplicaState.WAL_LOST),
}


class ReplicaSupervisor:
    """Owns the lifecycle state of one replica."""

    def __init__(self, record: ReplicaRecord, controller: "LifecycleController"):
        self.record = record
        self.controller = controller
        self.policy = controller.policy
        self.history = deque(maxlen=self.policy.history_window)
        self.queue: asyncio.Queue = asyncio.Queue()
        self.probing = asyncio.Event()
        self.probing.set()
        self.healthy_streak = 0
        self._tasks: list[asyncio.Task] = []

    @property
    def replica_id(self) -> str:
        return self.record.replica_id

    @property
    def state(self) -> ReplicaState:
        return self.record.state

    def start(self) -> None:
        self._tasks = [
            asyncio.create_task(self.probe_loop(), name=f"probe-{self.replica_id}"),
            asyncio.create_task(self.control_loop(), name=f"control-{self.replica_id}"),
        ]

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def probe_loop(self) -> None:
        while True:
            await self.probing.wait()
            try:
                primary = await self.controller.current_primary()
                replica = await self.controller.probe.probe_replica(self.record.node)
            except Exception:
                logger.exception(f"Replica '{self.replica_id}': unexpected error while probing")
            else:
                # Results taken while a rebuild started are about a store that no longer exists.
                if self.probing.is_set():
                    await self.queue.put((primary, replica))
            await asyncio.sleep(self.controller.probe_interval)

    async def control_loop(self) -> None:
        while True:
            primary, replica = await self.queue.get()
            try:
                await self.observe(primary, replica)
            except ReplctlError as e:
                logger.error(f"Replica '{self.replica_id}': {e}")
            except Exception:
                logger.exception(f"Replica '{self.replica_id}': unexpected error while processing a probe")

    async def observe(self, primary, replica) -> ReplicaState:
        """Processes one probe cycle and returns the resulting state."""
        if await self.apply_pending_request():
            return self.state
        if self.state is ReplicaState.REBUILDING:
            return self.state
        if self.state is ReplicaState.WAL_LOST:
            await self.rebuild(FailureMode.WAL_LOST)
            return self.state

        mode = classify(primary, replica, self.history, self.policy, slot_name=self.record.slot_name)
        self.history.append((primary, replica))
        self.record.last_snapshot = replica
        logger.debug(f"Replica '{self.replica_id}' classified {mode.value} in state {self.state.value}")
        self._apply(mode)
        await self._save()

        if self.state is ReplicaState.WAL_LOST:
            await self.rebuild(FailureMode.WAL_LOST)
        return self.state

    def _apply(self, mode: FailureMode) -> None:
        state = self.state
        self.healthy_streak = self.healthy_streak + 1 if mode is FailureMode.HEALTHY else 0

        if mode is FailureMode.ROLE_VIOLATION:
            if state not in (ReplicaState.ROLE_VIOLATION, ReplicaState.REBUILDING):
                error = RoleViolationDetected(self.replica_id)
                logger.critical(str(error))
                self.record.last_error = str(error)
                self._transition(ReplicaState.ROLE_VIOLATION, mode)
            return
        if state.terminal:
            return

        if mode is FailureMode.HEALTHY:
            if state is ReplicaState.UNINITIALIZED:
                self._transition(ReplicaState.STREAMING, mode)
            elif state in (ReplicaState.LAGGING, ReplicaState.DISCONNECTED) \
                    and self.healthy_streak >= self.policy.recovery_probes:
                self._transition(ReplicaState.STREAMING, mode)
            return

        sources, target = TRANSITIONS.get(mode, ((), None))
        if state in sources:
            self._transition(target, mode)

    def _transition(self, new_state: ReplicaState, mode: FailureMode | None) -> None:
        old_state = self.state
        if old_state is new_state:
            return
        self.record.state = new_state
        if mode is not None and mode is not FailureMode.HEALTHY:
            self.record.last_failure_mode = mode
        reason = f" ({mode.value})" if mode else ""
        log = logger.warning if new_state is not ReplicaState.STREAMING else logger.info
        log(f"Replica '{self.replica_id}': {old_state.value} -> {new_state.value}{reason}")

    async def _save(self) -> None:
        if not await asyncio.to_thread(self.controller.store.save, self.record):
            logger.warning(f"Replica '{self.replica_id}' is no longer registered; state not persisted.")

    def _drain(self) -> None:
        while not self.queue.empty():
            self.queue.get_nowait()

    async def rebuild(self, trigger: FailureMode | None, requested_by: str = "controller") -> RebuildJob:
        """
        Runs a fresh rebuild job with the next generation number.

        The replica's probe task is suspended for the whole job and the snapshot
        window is discarded afterwards.
        """
        record = self.record
        record.generation += 1
        job = RebuildJob(replica_id=self.replica_id, generation=record.generation,
                         trigger=trigger, requested_by=requested_by)
        previous_state = record.state
        record.last_job = job
        record.last_error = None
        self.probing.clear()
        self._drain()
        self._transition(ReplicaState.REBUILDING, trigger)
        await self._save()
        try:
            await self.controller.orchestrator.rebuild(record.node, record.slot_name, job,
                                                       lineage=record.slot_lineage, progress=self._on_progress)
        finally:
            await self._finish_rebuild(job, previous_state)
            self._drain()
            self.history.clear()
            self.healthy_streak = 0
            self.controller.probe.forget(self.replica_id)
            self.probing.set()
        return job

    async def _on_progress(self, job: RebuildJob) -> None:
        if job.generation == self.record.generation:
            self.record.last_job = job
            await self._save()

    async def _finish_rebuild(self, job: RebuildJob, previous_state: ReplicaState) -> None:
        record = self.record
        if job.generation != record.generation:
            logger.warning(f"Ignoring outcome of stale rebuild job {job.job_id} "
                           f"(current generation {record.generation}).")
            return
        if job.slot is not None:
            record.slot_lineage = job.slot.lineage
        if job.outcome is JobOutcome.SUCCESS:
            self._transition(ReplicaState.STREAMING, None)
        elif job.outcome is JobOutcome.ABORTED:
            record.state = previous_state
            logger.warning(f"Replica '{self.replica_id}': rebuild job {job.job_id} aborted; "
                           f"back to {previous_state.value}")
        else:
            if not job.terminal:
                job.finish(JobOutcome.ERROR, "rebuild ended without an outcome")
            record.last_error = job.error
            self._transition(ReplicaState.FAILED, None)
        await self._save()

    async def apply_pending_request(self) -> bool:
        """Applies a queued operator request. Returns True if the request took up this cycle."""
        request, drop_slot = await asyncio.to_thread(self.controller.store.take_request, self.replica_id)
        if request == REQUEST_REBUILD:
            if self.state is ReplicaState.REBUILDING:
                logger.warning(f"Ignoring rebuild request for '{self.replica_id}': already rebuilding.")
                return False
            logger.warning(f"Operator requested a rebuild of replica '{self.replica_id}' "
                           f"(state {self.state.value}).")
            await self.rebuild(None, requested_by="operator")
            return True
        if request == REQUEST_RESET:
            return await self.reset(drop_slot)
        if request is not None:
            logger.error(f"Ignoring unknown request '{request}' for replica '{self.replica_id}'.")
        return False

    async def reset(self, drop_slot: bool = False) -> bool:
        """Returns a FAILED or ROLE_VIOLATION replica to UNINITIALIZED, optionally dropping its slot."""
        record = self.record
        if not record.state.terminal:
            logger.warning(f"Ignoring reset of replica '{self.replica_id}' in state {record.state.value}.")
            return False
        if drop_slot:
            try:
                await asyncio.to_thread(self.controller.slots.drop_slot, record.slot_name)
            except (SlotConflict, psycopg2.Error) as e:
                record.last_error = f"reset failed: {e}"
                logger.error(f"Replica '{self.replica_id}': slot reset failed: {e}")
                await self._save()
                return False
            record.slot_lineage = None
        record.last_error = None
        self.history.clear()
        self.healthy_streak = 0
        self._transition(ReplicaState.UNINITIALIZED, None)
        await self._save()
        return True


class LifecycleController:
    """
    Supervises the primary and every replica registered in the state store.

    Args:
        store (StateStore): Durable replica registry and state.
        probe (StateProbe): Health probes.
        slots (SlotManager): Replication slot management on the primary.
        orchestrator (RebuildOrchestrator): Runs rebuild jobs.
        policy (ClassifierPolicy): Classification thresholds and hysteresis.
        probe_interval (float): Seconds between probes of each node.
    """

    def __init__(self, store: StateStore, probe, slots, orchestrator,
                 policy: ClassifierPolicy = ClassifierPolicy(), probe_interval: float = 5.0):
        self.store = store
        self.probe = probe
        self.slots = slots
        self.orchestrator = orchestrator
        self.policy = policy
        self.probe_interval = probe_interval
        self.supervisors: dict[str, ReplicaSupervisor] = {}
        self._primary_snapshot = None
        self._primary_ready = asyncio.Event()

    @classmethod
    def from_config(cls, config) -> "LifecycleController":
        primary_cfg, rebuild_cfg, ctl_cfg = config.primary, config.rebuild, config.controller
        primary = Node(node_id="primary", role=Role.PRIMARY, host=primary_cfg.host, port=primary_cfg.port)
        probe = StateProbe(primary, primary_cfg.conn_params,
                           lambda node: primary_cfg.replica_conn_params(node.host, node.port),
                           timeout=ctl_cfg.probe_timeout)
        slots = SlotManager(primary_cfg.conn_params, timeout=rebuild_cfg.service_timeout)
        base_backup = PgBaseBackup(primary_cfg, bindir=rebuild_cfg.bindir,
                                   timeout=rebuild_cfg.basebackup_timeout, backup_label=rebuild_cfg.backup_label)
        orchestrator = RebuildOrchestrator(
            probe, slots, base_backup, build_service_control(rebuild_cfg), primary.endpoint,
            standby_timeout=rebuild_cfg.standby_timeout,
            standby_poll_interval=rebuild_cfg.standby_poll_interval,
            slot_release_timeout=rebuild_cfg.slot_release_timeout,
        )
        return cls(StateStore(ctl_cfg.state_file), probe, slots, orchestrator,
                   policy=ctl_cfg.policy, probe_interval=ctl_cfg.probe_interval)

    def recover_interrupted_jobs(self) -> list[str]:
        """Marks replicas left REBUILDING by a previous controller process as FAILED; jobs never resume."""
        failed = []
        for replica_id, record in self.store.load_all().items():
            if record.state is not ReplicaState.REBUILDING:
                continue
            job = record.last_job
            if job is not None and not job.terminal:
                job.finish(JobOutcome.ERROR, INTERRUPTED_REBUILD)
            record.state = ReplicaState.FAILED
            record.last_error = INTERRUPTED_REBUILD
            self.store.save(record)
            logger.error(f"Replica '{replica_id}' was REBUILDING when the controller stopped; marked FAILED.")
            failed.append(replica_id)
        return failed

    def supervisor(self, replica_id: str) -> ReplicaSupervisor:
        supervisor = self.supervisors.get(replica_id)
        if supervisor is None:
            record = self.store.get(replica_id)
            if record is None:
                raise KeyError(f"Replica '{replica_id}' is not registered")
            supervisor = self.supervisors[replica_id] = ReplicaSupervisor(record, self)
        return supervisor

    async def sync_registry(self, start: bool = True) -> None:
        records = await asyncio.to_thread(self.store.load_all)
        for replica_id in list(self.supervisors):
            if replica_id not in records:
                logger.info(f"Replica '{replica_id}' deregistered; stopping its supervision.")
                await self.supervisors.pop(replica_id).stop()
                self.probe.forget(replica_id)
        for replica_id, record in records.items():
            if replica_id in self.supervisors:
                continue
            logger.info(f"Supervising replica '{replica_id}' at {record.host}:{record.port} "
                        f"(state {record.state.value}).")
            supervisor = self.supervisors[replica_id] = ReplicaSupervisor(record, self)
            if start:
                supervisor.start()

    async def current_primary(self):
        await self._primary_ready.wait()
        return self._primary_snapshot

    async def _primary_loop(self) -> None:
        while True:
            snapshot = await self.probe.probe_primary()
            if not snapshot.reachable:
                logger.warning(f"Primary unreachable: {snapshot.connection_error}")
            self._primary_snapshot = snapshot
            self._primary_ready.set()
            await asyncio.sleep(self.probe_interval)

    async def run(self, stop_event: asyncio.Event) -> None:
        """Runs until stop_event is set, then cancels all probe and controller tasks."""
        await asyncio.to_thread(self.recover_interrupted_jobs)
        primary_task = asyncio.create_task(self._primary_loop(), name="probe-primary")
        logger.info(f"Controller started (probe interval {self.probe_interval}s, "
                    f"lag threshold {self.policy.lag_threshold.total_seconds()}s).")
        try:
            while not stop_event.is_set():
                try:
                    await self.sync_registry()
                    await asyncio.to_thread(self.store.heartbeat)
                except ReplctlError as e:
                    logger.error(f"Controller loop: {e}")
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.probe_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            logger.info("Controller stopping; waiting for supervisors to finish.")
            primary_task.cancel()
            await asyncio.gather(primary_task, *(s.stop() for s in self.supervisors.values()),
                                 return_exceptions=True)
