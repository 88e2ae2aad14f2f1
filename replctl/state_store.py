"""
Durable controller state: one INI section per replica plus a [controller] heartbeat.

The controller and the CLI share the file. Every mutation is a locked
read-modify-write that replaces the file atomically, and each side only writes
the fields it owns: the CLI writes registration and request fields, the
controller writes lifecycle fields.
"""
import configparser
import fcntl
import logging
import os
from contextlib import contextmanager
from datetime import datetime, timedelta

from replctl.errors import RequestRejected, StateStoreError
from replctl.models import (FailureMode, HealthSnapshot, JobOutcome, RebuildJob, ReplicaRecord, ReplicaState, Role,
                            SlotLineage, format_lsn, parse_lsn, utcnow)

logger = logging.getLogger(__name__)

SECTION_PREFIX = "replica:"
CONTROLLER_SECTION = "controller"

REQUEST_REBUILD = "rebuild"
REQUEST_RESET = "reset"

REGISTRATION_FIELDS = ("host", "port", "datadir", "log_file", "service_name", "slot_name", "registered_at")
OPERATOR_FIELDS = ("pending_request", "drop_slot_on_reset")


def _iso(value: datetime | None) -> str:
    return value.isoformat() if value else ""


def _dt(value: str) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _opt(value: str) -> str | None:
    return value or None


def snapshot_fields(snapshot: HealthSnapshot | None) -> dict:
    if snapshot is None:
        return {}
    return {
        "snapshot_taken_at": _iso(snapshot.taken_at),
        "snapshot_in_recovery": "" if snapshot.in_recovery is None else str(snapshot.in_recovery).lower(),
        "snapshot_lag_seconds": "" if snapshot.lag is None else f"{snapshot.lag.total_seconds():.3f}",
        "snapshot_last_replay_at": _iso(snapshot.last_replay_at),
        "snapshot_wal_lsn": format_lsn(snapshot.wal_lsn),
        "snapshot_slot_name": snapshot.slot_name or "",
        "snapshot_slot_error": snapshot.slot_error or "",
        "snapshot_connection_error": snapshot.connection_error or "",
    }


def _snapshot_from(replica_id: str, section) -> HealthSnapshot | None:
    taken_at = _dt(section.get("snapshot_taken_at", ""))
    if taken_at is None:
        return None
    in_recovery = section.get("snapshot_in_recovery", "")
    lag = section.get("snapshot_lag_seconds", "")
    return HealthSnapshot(
        node_id=replica_id, role=Role.REPLICA, taken_at=taken_at,
        in_recovery=None if not in_recovery else in_recovery == "true",
        lag=timedelta(seconds=float(lag)) if lag else None,
        last_replay_at=_dt(section.get("snapshot_last_replay_at", "")),
        wal_lsn=parse_lsn(section.get("snapshot_wal_lsn", "")),
        slot_name=_opt(section.get("snapshot_slot_name", "")),
        slot_error=_opt(section.get("snapshot_slot_error", "")),
        connection_error=_opt(section.get("snapshot_connection_error", "")),
    )


def job_fields(job: RebuildJob | None) -> dict:
    if job is None:
        return {}
    return {
        "job_generation": str(job.generation),
        "job_trigger": job.trigger.value if job.trigger else "",
        "job_requested_by": job.requested_by,
        "job_started_at": _iso(job.started_at),
        "job_step": job.step or "",
        "job_finished_at": _iso(job.finished_at),
        "job_outcome": job.outcome.value if job.outcome else "",
        "job_error": job.error or "",
    }


def _job_from(replica_id: str, section) -> RebuildJob | None:
    generation = section.get("job_generation", "")
    if not generation:
        return None
    trigger = section.get("job_trigger", "")
    outcome = section.get("job_outcome", "")
    return RebuildJob(
        replica_id=replica_id, generation=int(generation),
        trigger=FailureMode(trigger) if trigger else None,
        requested_by=section.get("job_requested_by", "controller"),
        started_at=_dt(section.get("job_started_at", "")) or utcnow(),
        step=_opt(section.get("job_step", "")),
        finished_at=_dt(section.get("job_finished_at", "")),
        outcome=JobOutcome(outcome) if outcome else None,
        error=_opt(section.get("job_error", "")),
    )


def registration_fields(record: ReplicaRecord) -> dict:
    return {
        "host": record.host,
        "port": str(record.port),
        "datadir": record.datadir or "",
        "log_file": record.log_file or "",
        "service_name": record.service_name or "",
        "slot_name": record.slot_name or "",
        "registered_at": _iso(record.registered_at),
    }


def controller_fields(record: ReplicaRecord) -> dict:
    lineage = record.slot_lineage
    fields = {
        "state": record.state.value,
        "generation": str(record.generation),
        "last_failure_mode": record.last_failure_mode.value if record.last_failure_mode else "",
        "last_error": record.last_error or "",
        "slot_system_id": (lineage.system_identifier or "") if lineage else "",
        "slot_restart_lsn": format_lsn(lineage.restart_lsn) if lineage else "",
        "updated_at": _iso(record.updated_at),
    }
    fields.update(snapshot_fields(record.last_snapshot))
    fields.update(job_fields(record.last_job))
    return fields


def record_from_section(replica_id: str, section) -> ReplicaRecord:
    try:
        system_id = _opt(section.get("slot_system_id", ""))
        restart_lsn = parse_lsn(section.get("slot_restart_lsn", ""))
        failure = section.get("last_failure_mode", "")
        return ReplicaRecord(
            replica_id=replica_id,
            host=section["host"],
            port=int(section.get("port", "5432")),
            datadir=_opt(section.get("datadir", "")),
            log_file=_opt(section.get("log_file", "")),
            service_name=_opt(section.get("service_name", "")),
            slot_name=_opt(section.get("slot_name", "")),
            state=ReplicaState(section.get("state", ReplicaState.UNINITIALIZED.value)),
            generation=int(section.get("generation", "0")),
            last_failure_mode=FailureMode(failure) if failure else None,
            last_error=_opt(section.get("last_error", "")),
            slot_lineage=SlotLineage(system_id, restart_lsn) if (system_id or restart_lsn is not None) else None,
            last_snapshot=_snapshot_from(replica_id, section),
            last_job=_job_from(replica_id, section),
            pending_request=_opt(section.get("pending_request", "")),
            drop_slot_on_reset=section.get("drop_slot_on_reset", "false") == "true",
            registered_at=_dt(section.get("registered_at", "")) or utcnow(),
            updated_at=_dt(section.get("updated_at", "")),
        )
    except (KeyError, ValueError) as e:
        raise StateStoreError(f"Corrupt state for replica '{replica_id}': {e}") from e


class StateStore:
    """INI-backed registry of supervised replicas."""

    def __init__(self, path: str):
        self.path = path
        self.lock_path = path + ".lock"

    @contextmanager
    def _locked(self):
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            os.makedirs(directory, exist_ok=True)
            lock_file = open(self.lock_path, "a")
        except OSError as e:
            raise StateStoreError(f"Cannot open lock file '{self.lock_path}': {e}") from e
        with lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file, fcntl.LOCK_UN)

    def _read(self, require: bool = False) -> configparser.ConfigParser:
        parser = configparser.ConfigParser(interpolation=None)
        if not os.path.exists(self.path):
            if require:
                raise StateStoreError(f"State file '{self.path}' not found.")
            return parser
        try:
            with open(self.path, "r") as f:
                parser.read_file(f)
        except (OSError, configparser.Error) as e:
            raise StateStoreError(f"Cannot read state file '{self.path}': {e}") from e
        return parser

    def _write(self, parser: configparser.ConfigParser) -> None:
        tmp_path = self.path + ".tmp"
        try:
            with open(tmp_path, "w") as f:
                parser.write(f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StateStoreError(f"Cannot write state file '{self.path}': {e}") from e

    def load_all(self, require: bool = False) -> dict[str, ReplicaRecord]:
        with self._locked():
            parser = self._read(require=require)
        return {name[len(SECTION_PREFIX):]: record_from_section(name[len(SECTION_PREFIX):], parser[name])
                for name in parser.sections() if name.startswith(SECTION_PREFIX)}

    def get(self, replica_id: str, require: bool = False) -> ReplicaRecord | None:
        with self._locked():
            parser = self._read(require=require)
        section = SECTION_PREFIX + replica_id
        if not parser.has_section(section):
            return None
        return record_from_section(replica_id, parser[section])

    def register(self, record: ReplicaRecord) -> None:
        section = SECTION_PREFIX + record.replica_id
        with self._locked():
            parser = self._read()
            if parser.has_section(section):
                raise RequestRejected(f"Replica '{record.replica_id}' is already registered.")
            parser.add_section(section)
            parser[section].update(registration_fields(record))
            parser[section].update(controller_fields(record))
            parser[section].update({"pending_request": "", "drop_slot_on_reset": "false"})
            self._write(parser)
        logger.info(f"Registered replica '{record.replica_id}' at {record.host}:{record.port}.")

    def deregister(self, replica_id: str) -> None:
        section = SECTION_PREFIX + replica_id
        with self._locked():
            parser = self._read(require=True)
            if not parser.has_section(section):
                raise RequestRejected(f"Replica '{replica_id}' is not registered.")
            if parser[section].get("state") == ReplicaState.REBUILDING.value:
                raise RequestRejected(f"Replica '{replica_id}' is being rebuilt and cannot be deregistered.")
            parser.remove_section(section)
            self._write(parser)
        logger.info(f"Deregistered replica '{replica_id}'.")

    def save(self, record: ReplicaRecord) -> bool:
        """Writes the controller-owned fields. Returns False if the replica was deregistered meanwhile."""
        section = SECTION_PREFIX + record.replica_id
        record.updated_at = utcnow()
        with self._locked():
            parser = self._read()
            if not parser.has_section(section):
                return False
            fields = {key: value for key, value in parser[section].items()
                      if key in REGISTRATION_FIELDS or key in OPERATOR_FIELDS}
            fields.update(controller_fields(record))
            parser.remove_section(section)
            parser.add_section(section)
            parser[section].update(fields)
            self._write(parser)
        return True

    def post_request(self, replica_id: str, request: str, drop_slot: bool = False) -> ReplicaRecord:
        """
        Queues an operator request for the replica's controller task.

        Raises:
            RequestRejected: If the replica is unknown or the request is invalid in its current state.
            StateStoreError: If the state file is unreadable.
        """
        section = SECTION_PREFIX + replica_id
        with self._locked():
            parser = self._read(require=True)
            if not parser.has_section(section):
                raise RequestRejected(f"Replica '{replica_id}' is not registered.")
            record = record_from_section(replica_id, parser[section])
            pending = record.pending_request
            if request == REQUEST_REBUILD:
                if record.state is ReplicaState.REBUILDING:
                    raise RequestRejected(f"Replica '{replica_id}' is already REBUILDING "
                                          f"(job {record.last_job.job_id if record.last_job else '?'}).")
                if pending == REQUEST_REBUILD:
                    raise RequestRejected(f"A rebuild of replica '{replica_id}' is already pending.")
            elif request == REQUEST_RESET:
                if not record.state.terminal:
                    raise RequestRejected(f"Replica '{replica_id}' is {record.state.value}; only FAILED or "
                                          f"ROLE_VIOLATION replicas can be reset.")
            else:
                raise RequestRejected(f"Unknown request '{request}'.")
            if pending and pending != request:
                raise RequestRejected(f"Request '{pending}' is already pending for replica '{replica_id}'.")
            parser[section]["pending_request"] = request
            parser[section]["drop_slot_on_reset"] = "true" if drop_slot else "false"
            self._write(parser)
        record.pending_request = request
        record.drop_slot_on_reset = drop_slot
        logger.info(f"Queued '{request}' request for replica '{replica_id}'.")
        return record

    def take_request(self, replica_id: str) -> tuple[str | None, bool]:
        """Atomically reads and clears the pending operator request."""
        section = SECTION_PREFIX + replica_id
        with self._locked():
            parser = self._read()
            if not parser.has_section(section):
                return None, False
            request = _opt(parser[section].get("pending_request", ""))
            if request is None:
                return None, False
            drop_slot = parser[section].get("drop_slot_on_reset", "false") == "true"
            parser[section]["pending_request"] = ""
            parser[section]["drop_slot_on_reset"] = "false"
            self._write(parser)
        return request, drop_slot

    def heartbeat(self) -> None:
        with self._locked():
            parser = self._read()
            if not parser.has_section(CONTROLLER_SECTION):
                parser.add_section(CONTROLLER_SECTION)
            parser[CONTROLLER_SECTION]["heartbeat"] = _iso(utcnow())
            parser[CONTROLLER_SECTION]["pid"] = str(os.getpid())
            self._write(parser)

    def last_heartbeat(self) -> datetime | None:
        with self._locked():
            parser = self._read(require=True)
        if not parser.has_section(CONTROLLER_SECTION):
            return None
        try:
            return _dt(parser[CONTROLLER_SECTION].get("heartbeat", ""))
        except ValueError as e:
            raise StateStoreError(f"Corrupt controller heartbeat in '{self.path}': {e}") from e
