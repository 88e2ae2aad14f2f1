"""
replctl command line interface.

    replctl [--config replctl.conf] run
    replctl register-replica <id> <host[:port]> [--datadir D] [--log-file F] [--service S] [--slot-name N]
    replctl deregister-replica <id>
    replctl status [<id>]
    replctl rebuild <id>
    replctl reset <id> [--drop-slot]

Exit codes: 0 success, 1 controller unreachable or configuration error,
2 request rejected for the replica's current state.
"""
import argparse
import asyncio
import os
import re
import signal
import sys
from datetime import timedelta

from replctl.config import CONFIG_FILE, load_config
from replctl.errors import ConfigError, RequestRejected, StateStoreError
from replctl.hba import check_replication_access
from replctl.lifecycle_controller import LifecycleController
from replctl.log import logger, print_failure, print_info, print_success, print_warning, setup_logging
from replctl.models import ReplicaRecord, format_lsn, parse_endpoint, utcnow
from replctl.state_store import REQUEST_REBUILD, REQUEST_RESET, StateStore

EXIT_UNREACHABLE = 1
EXIT_REJECTED = 2

REPLICA_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def _replica_id(value: str) -> str:
    if not REPLICA_ID_RE.match(value):
        raise argparse.ArgumentTypeError(f"invalid replica id '{value}' (allowed: letters, digits, '_', '.', '-')")
    return value


def handle_run(args, config):
    """Handles the 'run' command: supervises all registered replicas until SIGINT/SIGTERM."""
    controller = LifecycleController.from_config(config)
    if config.primary.hba_file:
        hosts = [record.host for record in controller.store.load_all().values()]
        missing = check_replication_access(config.primary.hba_file, config.primary.replication_user, hosts)
        for host in missing:
            print_warning(f"pg_hba.conf has no replication entry for '{config.primary.replication_user}' "
                          f"from '{host}'; rebuilds of that replica will fail at the base backup.")

    async def main():
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
        await controller.run(stop_event)

    print_info(f"Supervising replicas from state file '{config.controller.state_file}'. Press Ctrl+C to stop.")
    asyncio.run(main())
    print_success("Controller stopped.")
    return 0


def handle_register(args, config):
    try:
        host, port = parse_endpoint(args.endpoint)
    except ValueError as e:
        print_failure(str(e))
        return EXIT_REJECTED
    datadir = os.path.abspath(args.datadir) if args.datadir else None
    if config.rebuild.service_manager == "pg_ctl" and not datadir:
        print_warning(f"No --datadir given for '{args.replica_id}'; rebuilds need it with service_manager = pg_ctl.")
    if config.rebuild.service_manager == "systemd" and not args.service:
        print_warning(f"No --service given for '{args.replica_id}'; rebuilds need it with service_manager = systemd.")
    record = ReplicaRecord(replica_id=args.replica_id, host=host, port=port, datadir=datadir,
                           log_file=os.path.abspath(args.log_file) if args.log_file else None,
                           service_name=args.service, slot_name=args.slot_name)
    StateStore(config.controller.state_file).register(record)
    print_success(f"Registered replica '{record.replica_id}' at {host}:{port} (slot '{record.slot_name}'), "
                  f"state {record.state.value}.")
    return 0


def handle_deregister(args, config):
    StateStore(config.controller.state_file).deregister(args.replica_id)
    print_success(f"Deregistered replica '{args.replica_id}'. Its replication slot was left in place.")
    return 0


def _format_age(seconds: float) -> str:
    return str(timedelta(seconds=int(seconds)))


def print_record(record: ReplicaRecord):
    print(f"Replica {record.replica_id} ({record.host}:{record.port})")
    print(f"  state:             {record.state.value}")
    print(f"  generation:        {record.generation}")
    print(f"  slot:              {record.slot_name}")
    if record.last_failure_mode:
        print(f"  last failure mode: {record.last_failure_mode.value}")
    if record.last_error:
        print(f"  last error:        {record.last_error}")
    if record.pending_request:
        print(f"  pending request:   {record.pending_request}")
    snap = record.last_snapshot
    if snap is None:
        print("  last snapshot:     none")
    else:
        print(f"  last snapshot:     {snap.taken_at.isoformat()}")
        if snap.connection_error:
            print(f"    connection:      {snap.connection_error}")
        else:
            print(f"    in recovery:     {snap.in_recovery}")
            print(f"    lag:             {snap.lag.total_seconds() if snap.lag is not None else 'unknown'}s")
            print(f"    last replay:     {snap.last_replay_at.isoformat() if snap.last_replay_at else 'never'}")
            print(f"    replay lsn:      {format_lsn(snap.wal_lsn) or 'unknown'}")
        if snap.slot_error:
            print(f"    slot error:      {snap.slot_error}")
    job = record.last_job
    if job is not None:
        label = "active rebuild job" if record.active_job else "last rebuild job"
        print(f"  {label}: {job.job_id} requested by {job.requested_by}, "
              f"trigger {job.trigger.value if job.trigger else 'operator'}")
        print(f"    started:         {job.started_at.isoformat()}")
        print(f"    step:            {job.step or '-'}")
        if job.outcome:
            print(f"    outcome:         {job.outcome.value} at {job.finished_at.isoformat() if job.finished_at else '?'}")
        if job.error:
            print(f"    error:           {job.error}")


def handle_status(args, config):
    """Handles 'status'. Exits 1 only if the controller is unreachable."""
    store = StateStore(config.controller.state_file)
    try:
        if args.replica_id:
            record = store.get(args.replica_id, require=True)
            records = [record] if record else []
            if record is None:
                print_warning(f"Replica '{args.replica_id}' is not registered.")
        else:
            records = list(store.load_all(require=True).values())
        heartbeat = store.last_heartbeat()
    except StateStoreError as e:
        print_failure(f"Controller unreachable: {e}")
        return EXIT_UNREACHABLE

    if not records and not args.replica_id:
        print_info("No replicas registered.")
    for record in records:
        print_record(record)

    if heartbeat is None:
        print_failure("Controller unreachable: no heartbeat recorded; is 'replctl run' active?")
        return EXIT_UNREACHABLE
    age = (utcnow() - heartbeat).total_seconds()
    if age > config.controller.heartbeat_timeout:
        print_failure(f"Controller unreachable: last heartbeat {_format_age(age)} ago; states shown are last known.")
        return EXIT_UNREACHABLE
    print_success(f"Controller alive (heartbeat {_format_age(age)} ago).")
    return 0


def handle_rebuild(args, config):
    StateStore(config.controller.state_file).post_request(args.replica_id, REQUEST_REBUILD)
    print_success(f"Rebuild of replica '{args.replica_id}' queued; the controller will start it on its next cycle.")
    print_warning(f"The rebuild deletes the data directory of '{args.replica_id}'.")
    return 0


def handle_reset(args, config):
    StateStore(config.controller.state_file).post_request(args.replica_id, REQUEST_RESET, drop_slot=args.drop_slot)
    slot_note = " and its replication slot will be dropped" if args.drop_slot else ""
    print_success(f"Reset of replica '{args.replica_id}' queued{slot_note}.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="replctl",
        description="PostgreSQL replication lifecycle controller",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument('--config', default=os.environ.get("REPLCTL_CONFIG", CONFIG_FILE),
                        help=f"Path to the configuration file (default: {CONFIG_FILE}). ENV: REPLCTL_CONFIG")
    parser.add_argument('-v', '--verbose', action='store_true', help="Debug logging.")
    subparsers = parser.add_subparsers(dest='command', title='Available commands', required=True)

    run_parser = subparsers.add_parser('run', help='Run the controller in the foreground.')
    run_parser.set_defaults(func=handle_run)

    register_parser = subparsers.add_parser('register-replica', help='Add a replica to supervision.',
                                            description='Registers a replica with initial state UNINITIALIZED.')
    register_parser.add_argument('replica_id', type=_replica_id, help='Unique replica id (also its application_name).')
    register_parser.add_argument('endpoint', help='Replica endpoint as host[:port].')
    register_parser.add_argument('--datadir', help="Replica data directory (required for pg_ctl rebuilds).")
    register_parser.add_argument('--log-file', help="Replica server log, scanned for WAL-removed errors.")
    register_parser.add_argument('--service', help="systemd unit of the replica (service_manager = systemd).")
    register_parser.add_argument('--slot-name', help="Replication slot name. Default: <id>_slot.")
    register_parser.set_defaults(func=handle_register)

    deregister_parser = subparsers.add_parser('deregister-replica', help='Remove a replica from supervision.')
    deregister_parser.add_argument('replica_id', type=_replica_id)
    deregister_parser.set_defaults(func=handle_deregister)

    status_parser = subparsers.add_parser('status', help='Show replica state, last snapshot and rebuild job.')
    status_parser.add_argument('replica_id', nargs='?', type=_replica_id)
    status_parser.set_defaults(func=handle_status)

    rebuild_parser = subparsers.add_parser('rebuild', help='Queue a manual rebuild (operator override).')
    rebuild_parser.add_argument('replica_id', type=_replica_id)
    rebuild_parser.set_defaults(func=handle_rebuild)

    reset_parser = subparsers.add_parser('reset', help='Clear a FAILED or ROLE_VIOLATION replica.')
    reset_parser.add_argument('replica_id', type=_replica_id)
    reset_parser.add_argument('--drop-slot', action='store_true',
                              help="Also drop the replica's replication slot (explicit slot reset).")
    reset_parser.set_defaults(func=handle_reset)
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print_failure(str(e))
        return EXIT_UNREACHABLE
    setup_logging(config.controller.log_dir, verbose=args.verbose, console=args.command == 'run')
    logger.debug(f"Command '{args.command}' with configuration '{args.config}'")

    try:
        return args.func(args, config)
    except RequestRejected as e:
        print_failure(str(e))
        return EXIT_REJECTED
    except StateStoreError as e:
        print_failure(f"Controller unreachable: {e}")
        return EXIT_UNREACHABLE


if __name__ == "__main__":
    sys.exit(main())
