"""
External operations used by the rebuild sequence.

The base backup and the replica's service lifecycle are delegated to the
PostgreSQL client tools (pg_basebackup, pg_ctl) or to systemd. Each
collaborator reports success as a bool and logs the details; none of them
raise for a failed command.
"""
import logging
import os
import re

from replctl.config import PrimaryConfig, RebuildConfig
from replctl.models import Node
from replctl.shell import execute_shell_command, mask

logger = logging.getLogger(__name__)

PG_CTL_NOT_RUNNING = 3


def _tool(bindir: str, name: str) -> str:
    return os.path.join(bindir, name) if bindir else name


class PgBaseBackup:
    """Runs pg_basebackup from the primary into a replica's data directory."""

    def __init__(self, primary: PrimaryConfig, bindir: str = "", timeout: float | None = None,
                 backup_label: str = "replctl_rebuild"):
        self.primary = primary
        self.bindir = bindir
        self.timeout = timeout
        self.backup_label = backup_label

    def take_base_backup(self, primary_endpoint: str, slot_name: str, target_dir: str,
                         application_name: str) -> bool:
        """
        Performs pg_basebackup to initialize the replica's data directory in standby mode.

        -R writes standby.signal and primary_conninfo (including application_name, so
        the primary can identify the standby) and -S streams WAL through the slot that
        was confirmed before the backup started.

        Args:
            primary_endpoint (str): 'host:port' of the primary, for logging.
            slot_name (str): Existing physical replication slot to use.
            target_dir (str): Empty replica data directory.
            application_name (str): Name the replica will report to the primary.

        Returns:
            bool: True if pg_basebackup completed successfully, False otherwise.
        """
        if os.path.isdir(target_dir) and os.listdir(target_dir):
            logger.error(f"Replica data directory '{target_dir}' is not empty. "
                         f"Aborting pg_basebackup to prevent mixing old and new files.")
            return False
        dsn = self.primary.basebackup_dsn(application_name)
        command = [
            _tool(self.bindir, "pg_basebackup"), "-d", dsn, "-D", target_dir,
            "-X", "stream", "-S", slot_name, "-R", "-l", self.backup_label,
        ]
        logger.info(f"Taking base backup from {primary_endpoint} into '{target_dir}' via slot '{slot_name}' "
                    f"using DSN: '{mask(dsn, self.primary.replication_password)}'")
        _stdout, _stderr, returncode = execute_shell_command(
            command, timeout=self.timeout, secret=self.primary.replication_password)
        if returncode != 0:
            logger.error(f"pg_basebackup failed for '{target_dir}'.")
            return False
        if not os.path.exists(os.path.join(target_dir, "standby.signal")):
            logger.error(f"pg_basebackup finished but '{target_dir}' has no standby.signal; "
                         f"refusing to start it as a primary.")
            return False
        logger.info(f"pg_basebackup completed successfully to '{target_dir}'.")
        return True


class PgCtlService:
    """Starts and stops a replica with pg_ctl against its data directory."""

    def __init__(self, bindir: str = "", timeout: float | None = None, stop_mode: str = "fast"):
        self.bindir = bindir
        self.timeout = timeout
        self.stop_mode = stop_mode

    def _pg_ctl(self) -> str:
        return _tool(self.bindir, "pg_ctl")

    def stop(self, node: Node) -> bool:
        if not node.datadir:
            logger.error(f"Replica '{node.node_id}' has no data directory configured; cannot use pg_ctl.")
            return False
        if not os.path.isdir(node.datadir):
            logger.info(f"Replica '{node.node_id}' has no data directory '{node.datadir}'; nothing to stop.")
            return True
        _stdout, _stderr, returncode = execute_shell_command(
            [self._pg_ctl(), "-D", node.datadir, "status"], timeout=self.timeout)
        if returncode == PG_CTL_NOT_RUNNING:
            logger.info(f"Replica '{node.node_id}' is not running; nothing to stop.")
            return True
        _stdout, _stderr, returncode = execute_shell_command(
            [self._pg_ctl(), "-D", node.datadir, "-m", self.stop_mode, "-w", "stop"], timeout=self.timeout)
        if returncode != 0:
            logger.error(f"Failed to stop replica '{node.node_id}' (mode: {self.stop_mode}).")
            return False
        logger.info(f"Replica '{node.node_id}' stopped (mode: {self.stop_mode}).")
        return True

    def start(self, node: Node) -> bool:
        if not node.datadir:
            logger.error(f"Replica '{node.node_id}' has no data directory configured; cannot use pg_ctl.")
            return False
        command = [self._pg_ctl(), "-D", node.datadir, "-o", f"-p {node.port}", "-w", "start"]
        if node.log_file:
            command[3:3] = ["-l", node.log_file]
        _stdout, _stderr, returncode = execute_shell_command(command, timeout=self.timeout)
        if returncode != 0:
            logger.error(f"Failed to start replica '{node.node_id}'.")
            return False
        logger.info(f"Replica '{node.node_id}' start command completed.")
        return True


class SystemdService:
    """Starts and stops a replica through its systemd unit."""

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout

    @staticmethod
    def _unit(node: Node) -> str:
        service_name = node.service_name or ""
        # Basic validation for service name format
        if not re.match(r"^[a-zA-Z0-9._@-]+$", service_name):
            raise ValueError(f"Invalid service name format: '{service_name}' for replica '{node.node_id}'")
        return service_name

    def _systemctl(self, action: str, node: Node) -> bool:
        try:
            unit = self._unit(node)
        except ValueError as e:
            logger.error(str(e))
            return False
        _stdout, _stderr, returncode = execute_shell_command(
            ["sudo", "systemctl", action, unit], timeout=self.timeout)
        if returncode != 0:
            logger.error(f"Attempt to {action} PostgreSQL service '{unit}' failed.")
            return False
        logger.info(f"PostgreSQL service '{unit}' {action} command issued successfully.")
        return True

    def stop(self, node: Node) -> bool:
        return self._systemctl("stop", node)

    def start(self, node: Node) -> bool:
        return self._systemctl("start", node)


def build_service_control(rebuild: RebuildConfig):
    if rebuild.service_manager == "systemd":
        return SystemdService(timeout=rebuild.service_timeout)
    return PgCtlService(bindir=rebuild.bindir, timeout=rebuild.service_timeout, stop_mode=rebuild.stop_mode)
