"""
Tests for primary/replica probes with scripted connections.
"""
import time
from datetime import timedelta

import psycopg2
import psycopg2.extensions
import pytest

from helpers import T0
from replctl.models import CONNECTION_TIMEOUT, SLOT_WAL_LOST, WAL_SEGMENT_REMOVED, Node, Role
from replctl.state_probe import (CURRENT_LSN_SQL, IN_RECOVERY_SQL, REPLICA_STATUS_SQL, SLOTS_SQL, STANDBYS_SQL,
                                 StateProbe)

PRIMARY = Node(node_id="primary", role=Role.PRIMARY, host="10.0.0.1")
WAL_REMOVED_LINE = ("2026-01-01 00:00:00 UTC [42] FATAL:  could not receive data from WAL stream: "
                    "ERROR:  requested WAL segment 000000010000000000000003 has already been removed\n")


class ScriptedCursor:
    def __init__(self, results):
        self.results = results
        self.result = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, query, params=None):
        result = self.results[query]
        if isinstance(result, Exception):
            raise result
        self.result = result

    def fetchone(self):
        return self.result

    def fetchall(self):
        return self.result


class ScriptedConnection:
    def __init__(self, results):
        self.results = results
        self.closed = False

    def cursor(self):
        return ScriptedCursor(self.results)

    def close(self):
        self.closed = True


class ScriptedServer:
    """Answers every connection by host with a fixed result per query, or raises on connect."""

    def __init__(self):
        self.results = {}
        self.connect_errors = {}
        self.connect_delay = 0
        self.connections = []

    def connect(self, **params):
        host = params["host"]
        if self.connect_delay:
            time.sleep(self.connect_delay)
        if host in self.connect_errors:
            raise self.connect_errors[host]
        conn = ScriptedConnection(self.results[host])
        self.connections.append(conn)
        return conn


@pytest.fixture
def server():
    server = ScriptedServer()
    server.results["10.0.0.1"] = {
        IN_RECOVERY_SQL: (False,),
        STANDBYS_SQL: [("r1",), (None,)],
        SLOTS_SQL: [("r1_slot", True, "reserved"), ("r2_slot", False, "extended"), ("old_slot", False, "lost")],
        CURRENT_LSN_SQL: ("0/3000060",),
    }
    server.results["10.0.0.2"] = {
        REPLICA_STATUS_SQL: (True, "0/3000000", T0, 1.5, "r1_slot"),
    }
    return server


@pytest.fixture
def replica(tmp_path):
    log_file = tmp_path / "r1.log"
    log_file.write_text("2026-01-01 00:00:00 UTC [1] LOG:  database system is ready\n")
    return Node(node_id="r1", role=Role.REPLICA, host="10.0.0.2", log_file=str(log_file), slot_name="r1_slot")


def make_probe(server, timeout=1.0):
    return StateProbe(PRIMARY, {"host": "10.0.0.1", "port": "5432", "dbname": "postgres", "user": "postgres",
                                "password": None},
                      lambda node: {"host": node.host, "port": str(node.port), "dbname": "postgres",
                                    "user": "postgres", "password": None},
                      timeout=timeout, connect=server.connect)


@pytest.mark.asyncio
async def test_primary_snapshot(server):
    snapshot = await make_probe(server).probe_primary()

    assert snapshot.reachable
    assert snapshot.in_recovery is False
    assert snapshot.replication_rows == 2
    assert snapshot.standby_names == ("r1", "")
    assert snapshot.active_slots == ("r1_slot",)
    assert snapshot.lost_slots == ("old_slot",)
    assert snapshot.slot_error == SLOT_WAL_LOST
    assert snapshot.wal_lsn == 0x3000060
    assert all(conn.closed for conn in server.connections)


@pytest.mark.asyncio
async def test_replica_snapshot(server, replica):
    snapshot = await make_probe(server).probe_replica(replica)

    assert snapshot.node_id == "r1"
    assert snapshot.in_recovery is True
    assert snapshot.wal_lsn == 0x3000000
    assert snapshot.lag == timedelta(seconds=1.5)
    assert snapshot.last_replay_at == T0
    assert snapshot.slot_name == "r1_slot"
    assert snapshot.slot_error is None


@pytest.mark.asyncio
async def test_refused_connection_is_an_unreachable_snapshot(server, replica):
    server.connect_errors["10.0.0.2"] = psycopg2.OperationalError(
        'connection to server at "10.0.0.2", port 5432 failed: Connection refused\n'
        '\tIs the server running on that host and accepting TCP/IP connections?')

    snapshot = await make_probe(server).probe_replica(replica)

    assert not snapshot.reachable
    assert snapshot.connection_error.startswith("refused: ")
    assert "Is the server running" not in snapshot.connection_error
    assert snapshot.in_recovery is None
    assert snapshot.lag is None


@pytest.mark.asyncio
async def test_slow_connection_times_out(server):
    server.connect_delay = 0.5

    snapshot = await make_probe(server, timeout=0.05).probe_primary()

    assert snapshot.connection_error == CONNECTION_TIMEOUT


@pytest.mark.asyncio
async def test_statement_timeout_is_a_probe_timeout(server):
    server.results["10.0.0.1"][IN_RECOVERY_SQL] = psycopg2.extensions.QueryCanceledError(
        "canceling statement due to statement timeout")

    snapshot = await make_probe(server).probe_primary()

    assert snapshot.connection_error == CONNECTION_TIMEOUT
    assert all(conn.closed for conn in server.connections)


@pytest.mark.asyncio
async def test_query_error_is_reported(server):
    server.results["10.0.0.1"][SLOTS_SQL] = psycopg2.ProgrammingError("permission denied for view pg_replication_slots")

    snapshot = await make_probe(server).probe_primary()

    assert snapshot.connection_error == "error: permission denied for view pg_replication_slots"


@pytest.mark.asyncio
async def test_wal_removed_error_in_new_log_lines(server, replica):
    probe = make_probe(server)
    assert (await probe.probe_replica(replica)).slot_error is None

    with open(replica.log_file, "a") as f:
        f.write(WAL_REMOVED_LINE)
    assert (await probe.probe_replica(replica)).slot_error == WAL_SEGMENT_REMOVED
    assert (await probe.probe_replica(replica)).slot_error is None


@pytest.mark.asyncio
async def test_old_log_lines_are_not_rescanned_on_first_probe(server, replica):
    with open(replica.log_file, "a") as f:
        f.write(WAL_REMOVED_LINE)

    assert (await make_probe(server).probe_replica(replica)).slot_error is None


@pytest.mark.asyncio
async def test_wal_removed_error_survives_unreachable_replica(server, replica):
    probe = make_probe(server)
    await probe.probe_replica(replica)
    server.connect_errors["10.0.0.2"] = psycopg2.OperationalError("server closed the connection unexpectedly")
    with open(replica.log_file, "a") as f:
        f.write(WAL_REMOVED_LINE)

    snapshot = await probe.probe_replica(replica)

    assert not snapshot.reachable
    assert snapshot.slot_error == WAL_SEGMENT_REMOVED


@pytest.mark.asyncio
async def test_rotated_log_is_read_from_the_start(server, replica):
    probe = make_probe(server)
    with open(replica.log_file, "a") as f:
        f.write("filler line that makes the old file longer than the new one\n" * 20)
    await probe.probe_replica(replica)

    with open(replica.log_file, "w") as f:
        f.write(WAL_REMOVED_LINE)

    assert (await probe.probe_replica(replica)).slot_error == WAL_SEGMENT_REMOVED


@pytest.mark.asyncio
async def test_forget_restarts_log_scan_at_the_end(server, replica):
    probe = make_probe(server)
    await probe.probe_replica(replica)
    with open(replica.log_file, "a") as f:
        f.write(WAL_REMOVED_LINE)

    probe.forget("r1")

    assert (await probe.probe_replica(replica)).slot_error is None
