"""
Configuration loading for replctl.

The controller is configured from an INI file (see replctl.conf.example) with
three sections: [controller], [primary] and [rebuild]. Credentials and the
primary endpoint fall back to the same environment variables used by the
replication setup tooling (PG_PRIMARY_HOST, PG_ADMIN_PASSWORD, REPL_PASSWORD, ...).
"""
import configparser
import os
from dataclasses import dataclass, field
from datetime import timedelta

from replctl.errors import ConfigError
from replctl.failure_classifier import ClassifierPolicy

CONFIG_FILE = "replctl.conf"
SERVICE_MANAGERS = ("pg_ctl", "systemd")
STOP_MODES = ("smart", "fast", "immediate")


@dataclass(frozen=True)
class PrimaryConfig:
    host: str = "localhost"
    port: int = 5432
    dbname: str = "postgres"
    user: str = "postgres"
    password: str | None = None
    replication_user: str = "repl_user"
    replication_password: str | None = None
    hba_file: str | None = None

    @property
    def conn_params(self) -> dict:
        return {"host": self.host, "port": str(self.port), "dbname": self.dbname,
                "user": self.user, "password": self.password}

    def replica_conn_params(self, host: str, port: int) -> dict:
        """Physical replicas share the primary's roles, so the admin login is reused."""
        return dict(self.conn_params, host=host, port=str(port))

    def basebackup_dsn(self, application_name: str) -> str:
        dsn = f"host={self.host} port={self.port} user={self.replication_user} dbname={self.dbname}"
        if self.replication_password:
            dsn += f" password={self.replication_password}"
        return dsn + f" application_name={application_name}"


@dataclass(frozen=True)
class RebuildConfig:
    service_manager: str = "pg_ctl"
    bindir: str = ""
    stop_mode: str = "fast"
    backup_label: str = "replctl_rebuild"
    basebackup_timeout: float = 3600.0
    service_timeout: float = 120.0
    standby_timeout: float = 300.0
    standby_poll_interval: float = 2.0
    slot_release_timeout: float = 60.0


@dataclass(frozen=True)
class ControllerConfig:
    state_file: str = "replctl_state.ini"
    log_dir: str = "logs"
    probe_interval: float = 5.0
    probe_timeout: float = 3.0
    heartbeat_timeout: float = 30.0
    policy: ClassifierPolicy = field(default_factory=ClassifierPolicy)


@dataclass(frozen=True)
class Config:
    controller: ControllerConfig = field(default_factory=ControllerConfig)
    primary: PrimaryConfig = field(default_factory=PrimaryConfig)
    rebuild: RebuildConfig = field(default_factory=RebuildConfig)


def _positive(section, key, value):
    if value <= 0:
        raise ConfigError(f"[{section}] {key} must be positive, got {value}")
    return value


def _get_float(parser, section, key, default):
    try:
        return _positive(section, key, parser.getfloat(section, key, fallback=default))
    except ValueError as e:
        raise ConfigError(f"[{section}] {key}: {e}") from e


def _get_int(parser, section, key, default):
    try:
        return _positive(section, key, parser.getint(section, key, fallback=default))
    except ValueError as e:
        raise ConfigError(f"[{section}] {key}: {e}") from e


def _get_str(parser, section, key, env=None, default=None):
    value = parser.get(section, key, fallback="").strip()
    if value:
        return value
    if env and os.environ.get(env):
        return os.environ[env]
    return default


def parse_config(parser: configparser.ConfigParser) -> Config:
    """Validates a parsed INI file into a Config."""
    for section in ("controller", "primary", "rebuild"):
        if not parser.has_section(section):
            parser.add_section(section)

    lag_seconds = parser.getfloat("controller", "lag_threshold", fallback=30.0)
    try:
        policy = ClassifierPolicy(
            lag_threshold=timedelta(seconds=lag_seconds),
            disconnect_probes=parser.getint("controller", "disconnect_probes", fallback=5),
            recovery_probes=parser.getint("controller", "recovery_probes", fallback=3),
            stall_probes=parser.getint("controller", "stall_probes", fallback=3),
            history_window=parser.getint("controller", "history_window", fallback=10),
        )
    except ValueError as e:
        raise ConfigError(f"[controller] {e}") from e

    controller = ControllerConfig(
        state_file=_get_str(parser, "controller", "state_file", default="replctl_state.ini"),
        log_dir=_get_str(parser, "controller", "log_dir", default="logs"),
        probe_interval=_get_float(parser, "controller", "probe_interval", 5.0),
        probe_timeout=_get_float(parser, "controller", "probe_timeout", 3.0),
        heartbeat_timeout=_get_float(parser, "controller", "heartbeat_timeout", 30.0),
        policy=policy,
    )
    if controller.heartbeat_timeout <= controller.probe_interval:
        raise ConfigError("[controller] heartbeat_timeout must exceed probe_interval")

    primary = PrimaryConfig(
        host=_get_str(parser, "primary", "host", env="PG_PRIMARY_HOST", default="localhost"),
        port=int(_get_str(parser, "primary", "port", env="PG_PRIMARY_PORT", default="5432")),
        dbname=_get_str(parser, "primary", "dbname", env="PG_DB_NAME", default="postgres"),
        user=_get_str(parser, "primary", "user", env="PG_ADMIN_USER", default="postgres"),
        password=_get_str(parser, "primary", "password", env="PG_ADMIN_PASSWORD"),
        replication_user=_get_str(parser, "primary", "replication_user", env="REPL_USER", default="repl_user"),
        replication_password=_get_str(parser, "primary", "replication_password", env="REPL_PASSWORD"),
        hba_file=_get_str(parser, "primary", "hba_file"),
    )

    rebuild = RebuildConfig(
        service_manager=_get_str(parser, "rebuild", "service_manager", default="pg_ctl"),
        bindir=_get_str(parser, "rebuild", "bindir", default=""),
        stop_mode=_get_str(parser, "rebuild", "stop_mode", default="fast"),
        backup_label=_get_str(parser, "rebuild", "backup_label", default="replctl_rebuild"),
        basebackup_timeout=_get_float(parser, "rebuild", "basebackup_timeout", 3600.0),
        service_timeout=_get_float(parser, "rebuild", "service_timeout", 120.0),
        standby_timeout=_get_float(parser, "rebuild", "standby_timeout", 300.0),
        standby_poll_interval=_get_float(parser, "rebuild", "standby_poll_interval", 2.0),
        slot_release_timeout=_get_float(parser, "rebuild", "slot_release_timeout", 60.0),
    )
    if rebuild.service_manager not in SERVICE_MANAGERS:
        raise ConfigError(f"[rebuild] service_manager must be one of {SERVICE_MANAGERS}, "
                          f"got '{rebuild.service_manager}'")
    if rebuild.stop_mode not in STOP_MODES:
        raise ConfigError(f"[rebuild] stop_mode must be one of {STOP_MODES}, got '{rebuild.stop_mode}'")

    return Config(controller=controller, primary=primary, rebuild=rebuild)


def load_config(config_file_path: str) -> Config:
    """
    Loads and validates the configuration from the given INI file.

    Raises:
        ConfigError: If the file is missing, cannot be parsed, or has invalid values.
    """
    if not os.path.exists(config_file_path):
        raise ConfigError(f"Configuration file '{config_file_path}' not found.")
    parser = configparser.ConfigParser()
    try:
        parser.read(config_file_path)
    except configparser.Error as e:
        raise ConfigError(f"Error parsing configuration file '{config_file_path}': {e}") from e
    try:
        return parse_config(parser)
    except (ValueError, configparser.Error) as e:
        raise ConfigError(f"Invalid value in '{config_file_path}': {e}") from e
