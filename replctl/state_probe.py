"""
Read-only health probes for the primary and its replicas.

Each probe runs a small, fixed set of status queries in a worker thread, bounded
by the probe timeout. An unreachable node is not an error here: the probe
returns a snapshot whose optional fields are empty and whose connection_error
says why, and the classifier decides what the silence means.
"""
import asyncio
import logging
import os
import re
from datetime import timedelta

import psycopg2
import psycopg2.extensions

from replctl.db import connect_to_postgresql
from replctl.errors import ProbeTimeout
from replctl.models import (CONNECTION_TIMEOUT, SLOT_WAL_LOST, WAL_SEGMENT_REMOVED, HealthSnapshot, Node,
                            parse_lsn, utcnow)

logger = logging.getLogger(__name__)

IN_RECOVERY_SQL = "SELECT pg_catalog.pg_is_in_recovery()"
STANDBYS_SQL = "SELECT application_name FROM pg_catalog.pg_stat_replication"
SLOTS_SQL = ("SELECT slot_name, active, wal_status FROM pg_catalog.pg_replication_slots "
             "WHERE slot_type = 'physical'")
CURRENT_LSN_SQL = "SELECT pg_catalog.pg_current_wal_lsn()::text"
REPLICA_STATUS_SQL = """
    SELECT pg_catalog.pg_is_in_recovery(),
           pg_catalog.pg_last_wal_replay_lsn()::text,
           pg_catalog.pg_last_xact_replay_timestamp(),
           CASE WHEN pg_catalog.pg_last_wal_receive_lsn() = pg_catalog.pg_last_wal_replay_lsn() THEN 0
                ELSE EXTRACT(EPOCH FROM now() - pg_catalog.pg_last_xact_replay_timestamp())
           END,
           NULLIF(pg_catalog.current_setting('primary_slot_name', true), '')
"""

WAL_REMOVED_RE = re.compile(r"requested WAL segment \S+ has already been removed")
MAX_LOG_SCAN_BYTES = 1024 * 1024


class StateProbe:
    """
    Produces HealthSnapshots for the primary and for registered replicas.

    Args:
        primary (Node): The primary node.
        primary_params (dict): Connection parameters for the primary.
        replica_params (callable): Maps a replica Node to its connection parameters.
        timeout (float): Upper bound in seconds for one probe.
        connect (callable): Connection factory, psycopg2 by default.
    """

    def __init__(self, primary: Node, primary_params: dict, replica_params, timeout: float = 3.0,
                 connect=connect_to_postgresql):
        self.primary = primary
        self.primary_params = primary_params
        self.replica_params = replica_params
        self.timeout = timeout
        self._connect = connect
        self._log_offsets: dict[str, int] = {}

    async def probe_primary(self) -> HealthSnapshot:
        return await self._bounded(self.primary, self._collect_primary)

    async def probe_replica(self, node: Node) -> HealthSnapshot:
        slot_error = None
        if node.log_file:
            slot_error = await asyncio.to_thread(self._scan_log, node)
        return await self._bounded(node, self._collect_replica, slot_error)

    def forget(self, node_id: str) -> None:
        """Drops per-node probe bookkeeping (log offsets) after deregistration or a rebuild."""
        self._log_offsets.pop(node_id, None)

    async def _bounded(self, node: Node, collect, slot_error=None) -> HealthSnapshot:
        try:
            return await asyncio.wait_for(asyncio.to_thread(collect, node, slot_error), timeout=self.timeout)
        except (asyncio.TimeoutError, ProbeTimeout):
            logger.warning(f"Probe of node '{node.node_id}' ({node.endpoint}) timed out after {self.timeout}s")
            return HealthSnapshot.unreachable(node, CONNECTION_TIMEOUT, slot_error=slot_error)
        except psycopg2.OperationalError as e:
            detail = str(e).strip().splitlines()[0] if str(e).strip() else type(e).__name__
            logger.warning(f"Probe of node '{node.node_id}' ({node.endpoint}) failed to connect: {detail}")
            return HealthSnapshot.unreachable(node, f"refused: {detail}", slot_error=slot_error)
        except psycopg2.Error as e:
            detail = str(e).strip().splitlines()[0] if str(e).strip() else type(e).__name__
            logger.warning(f"Probe of node '{node.node_id}' ({node.endpoint}) query failed: {detail}")
            return HealthSnapshot.unreachable(node, f"error: {detail}", slot_error=slot_error)

    def _run(self, node: Node, params: dict, work):
        conn = self._connect(**params, timeout=self.timeout)
        try:
            with conn.cursor() as cur:
                return work(cur)
        except psycopg2.extensions.QueryCanceledError as e:
            raise ProbeTimeout(node.node_id, self.timeout) from e
        finally:
            conn.close()

    def _collect_primary(self, node: Node, slot_error=None) -> HealthSnapshot:
        def work(cur):
            cur.execute(IN_RECOVERY_SQL)
            in_recovery = bool(cur.fetchone()[0])
            cur.execute(STANDBYS_SQL)
            standbys = [row[0] or "" for row in cur.fetchall()]
            cur.execute(SLOTS_SQL)
            slots = cur.fetchall()
            wal_lsn = None
            if not in_recovery:
                cur.execute(CURRENT_LSN_SQL)
                wal_lsn = parse_lsn(cur.fetchone()[0])
            return in_recovery, standbys, slots, wal_lsn

        in_recovery, standbys, slots, wal_lsn = self._run(node, self.primary_params, work)
        lost = tuple(name for name, _active, wal_status in slots if wal_status == "lost")
        if in_recovery:
            logger.error(f"Primary '{node.node_id}' reports it is in recovery.")
        return HealthSnapshot(
            node_id=node.node_id, role=node.role, taken_at=utcnow(),
            in_recovery=in_recovery,
            replication_rows=len(standbys),
            standby_names=tuple(standbys),
            active_slots=tuple(name for name, active, _wal_status in slots if active),
            lost_slots=lost,
            wal_lsn=wal_lsn,
            slot_error=SLOT_WAL_LOST if lost else None,
        )

    def _collect_replica(self, node: Node, slot_error=None) -> HealthSnapshot:
        def work(cur):
            cur.execute(REPLICA_STATUS_SQL)
            return cur.fetchone()

        in_recovery, replay_lsn, replayed_at, lag_seconds, slot_name = self._run(
            node, self.replica_params(node), work)
        return HealthSnapshot(
            node_id=node.node_id, role=node.role, taken_at=utcnow(),
            in_recovery=bool(in_recovery),
            wal_lsn=parse_lsn(replay_lsn),
            lag=timedelta(seconds=float(lag_seconds)) if lag_seconds is not None else None,
            last_replay_at=replayed_at,
            slot_name=slot_name,
            slot_error=slot_error,
        )

    def _scan_log(self, node: Node) -> str | None:
        """Scans log lines written since the previous probe for a WAL-removed error."""
        path = node.log_file
        try:
            size = os.path.getsize(path)
        except OSError as e:
            logger.debug(f"Cannot stat log file '{path}' of node '{node.node_id}': {e}")
            return None
        offset = self._log_offsets.get(node.node_id)
        if offset is None or size < offset:
            # First sight starts at the end; a shrunk file was rotated or recreated.
            offset = size if offset is None else 0
        start = max(offset, size - MAX_LOG_SCAN_BYTES)
        try:
            with open(path, "rb") as f:
                f.seek(start)
                chunk = f.read(size - start).decode("utf-8", errors="replace")
        except OSError as e:
            logger.debug(f"Cannot read log file '{path}' of node '{node.node_id}': {e}")
            return None
        self._log_offsets[node.node_id] = size
        match = WAL_REMOVED_RE.search(chunk)
        if match:
            logger.warning(f"Node '{node.node_id}' log reports: {match.group(0)}")
            return WAL_SEGMENT_REMOVED
        return None
