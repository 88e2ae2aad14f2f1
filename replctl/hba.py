"""
Read-only check of the primary's pg_hba.conf.

The controller never edits pg_hba.conf. At startup it only verifies that the
replication user may open replication connections from every registered
replica, and warns otherwise: without such an entry a rebuild would wipe a
replica and then fail at pg_basebackup.
"""
import ipaddress
import logging
import os
import re

logger = logging.getLogger(__name__)

HOST_TYPES = ("host", "hostssl", "hostnossl")
SUFFICIENT_METHODS = ("scram-sha-256", "md5", "password", "trust", "cert")


def _address_covers(entry_address: str, replica_host: str) -> bool:
    if entry_address in ("all", replica_host):
        return True
    try:
        network = ipaddress.ip_network(entry_address, strict=False)
        return ipaddress.ip_address(replica_host) in network
    except ValueError:
        return False


def entry_covers(line: str, replication_user: str, replica_host: str) -> bool:
    """True if one pg_hba.conf line admits replication connections for the user from the host."""
    stripped_line = line.split("#", 1)[0].strip()
    if not stripped_line:
        return False
    parts = re.split(r"\s+", stripped_line)
    if len(parts) < 4:
        return False
    p_type, p_db, p_user = parts[0], parts[1], parts[2]
    if p_type == "local" or p_type not in HOST_TYPES:
        return False
    # "all" does not match replication connections; only the replication keyword does.
    if "replication" not in p_db.split(","):
        return False
    if not any(user in (replication_user, "all") for user in p_user.split(",")):
        return False
    if len(parts) >= 6 and re.match(r"^\d+\.\d+\.\d+\.\d+$", parts[3]) and re.match(r"^\d+\.\d+\.\d+\.\d+$", parts[4]):
        # address and netmask in separate columns
        p_address = f"{parts[3]}/{parts[4]}"
        p_method = parts[5]
    else:
        p_address = parts[3]
        p_method = parts[4] if len(parts) >= 5 else ""
    return _address_covers(p_address, replica_host) and p_method in SUFFICIENT_METHODS


def check_replication_access(pg_hba_path: str, replication_user: str, replica_hosts) -> list[str]:
    """
    Reads pg_hba.conf and returns the replica hosts with no covering replication entry.

    Args:
        pg_hba_path (str): Full path to the pg_hba.conf file.
        replication_user (str): The replication role used by pg_basebackup and the standbys.
        replica_hosts (iterable[str]): Replica host names or addresses.

    Returns:
        list[str]: Hosts without a suitable entry. Empty if all are covered or the file is unreadable
                   (an unreadable file is logged, not fatal: the file usually lives on the primary).
    """
    if not os.path.exists(pg_hba_path):
        logger.warning(f"pg_hba.conf '{pg_hba_path}' not found; skipping replication access check.")
        return []
    try:
        with open(pg_hba_path, "r") as f:
            lines = f.readlines()
    except OSError as e:
        logger.warning(f"Cannot read pg_hba.conf '{pg_hba_path}': {e}; skipping replication access check.")
        return []

    missing = []
    for host in replica_hosts:
        covering = next((line.strip() for line in lines if entry_covers(line, replication_user, host)), None)
        if covering:
            logger.info(f"pg_hba.conf entry '{covering}' admits replication from '{host}'.")
        else:
            logger.warning(f"No pg_hba.conf entry in '{pg_hba_path}' admits replication user "
                           f"'{replication_user}' from '{host}'.")
            missing.append(host)
    return missing
