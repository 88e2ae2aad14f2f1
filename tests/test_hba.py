"""
Tests for the read-only pg_hba.conf replication access check.
"""
import pytest

from replctl.hba import check_replication_access, entry_covers

HBA = """\
# TYPE  DATABASE        USER            ADDRESS                 METHOD
local   all             postgres                                peer
host    all             all             0.0.0.0/0               scram-sha-256
host    replication     repl_user       10.0.0.0/24             scram-sha-256  # replicas
host    replication     repl_user       192.168.1.10  255.255.255.255  md5
host    replication     other_user      172.16.0.5/32           trust
host    replication     repl_user       172.16.0.9/32           reject
"""


@pytest.mark.parametrize("line, host, expected", [
    ("host replication repl_user 10.0.0.0/24 scram-sha-256", "10.0.0.42", True),
    ("host replication repl_user 10.0.0.0/24 scram-sha-256", "10.0.1.42", False),
    ("hostssl replication,postgres all 10.0.0.2/32 cert", "10.0.0.2", True),
    ("host all all 0.0.0.0/0 trust", "10.0.0.2", False),
    ("local replication repl_user trust", "10.0.0.2", False),
    ("host replication repl_user replica1.example.com md5", "replica1.example.com", True),
    ("host replication repl_user all md5", "replica1.example.com", True),
    ("host replication repl_user 10.0.0.2/32 reject", "10.0.0.2", False),
    ("# host replication repl_user 10.0.0.2/32 md5", "10.0.0.2", False),
    ("host replication repl_user", "10.0.0.2", False),
])
def test_entry_covers(line, host, expected):
    assert entry_covers(line, "repl_user", host) is expected


def test_check_replication_access(tmp_path):
    hba = tmp_path / "pg_hba.conf"
    hba.write_text(HBA)

    missing = check_replication_access(str(hba), "repl_user",
                                       ["10.0.0.2", "192.168.1.10", "172.16.0.5", "172.16.0.9"])

    assert missing == ["172.16.0.5", "172.16.0.9"]
    assert hba.read_text() == HBA


def test_missing_hba_file_is_skipped(tmp_path):
    assert check_replication_access(str(tmp_path / "pg_hba.conf"), "repl_user", ["10.0.0.2"]) == []
