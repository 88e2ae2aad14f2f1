"""Physical replication slot management on the primary."""
import logging

import psycopg2
import psycopg2.errors
from psycopg2 import sql

from replctl.db import connect_to_postgresql
from replctl.errors import SlotConflict
from replctl.models import SlotHandle, SlotLineage, format_lsn, parse_lsn

logger = logging.getLogger(__name__)

GET_SLOT_SQL = sql.SQL("""
    SELECT s.slot_name, s.slot_type, s.active, s.restart_lsn::text, s.wal_status,
           c.system_identifier::text
    FROM pg_catalog.pg_replication_slots s CROSS JOIN pg_catalog.pg_control_system() c
    WHERE s.slot_name = %s
""")
SYSTEM_IDENTIFIER_SQL = sql.SQL("SELECT system_identifier::text FROM pg_catalog.pg_control_system()")
# pg_create_physical_replication_slot(slot_name, immediately_reserve, temporary)
CREATE_SLOT_SQL = sql.SQL("SELECT pg_catalog.pg_create_physical_replication_slot(%s, true, false)")
DROP_SLOT_SQL = sql.SQL("SELECT pg_catalog.pg_drop_replication_slot(%s)")


class SlotManager:
    """
    Creates, validates and drops physical replication slots on the primary.

    Slots are only ever dropped through drop_slot(), which the controller calls
    for an explicit operator reset. Health checks never remove a slot.
    """

    def __init__(self, conn_params: dict, connect=connect_to_postgresql, timeout: float | None = None):
        self.conn_params = conn_params
        self.timeout = timeout
        self._connect = connect

    def _connection(self):
        return self._connect(**self.conn_params, timeout=self.timeout)

    @staticmethod
    def _fetch_slot(cur, name: str) -> SlotHandle | None:
        cur.execute(GET_SLOT_SQL, [name])
        row = cur.fetchone()
        if row is None:
            return None
        slot_name, slot_type, active, restart_lsn, wal_status, system_identifier = row
        return SlotHandle(name=slot_name, slot_type=slot_type, active=bool(active),
                          restart_lsn=parse_lsn(restart_lsn), wal_status=wal_status,
                          system_identifier=system_identifier)

    def get_slot(self, name: str) -> SlotHandle | None:
        conn = self._connection()
        try:
            with conn.cursor() as cur:
                return self._fetch_slot(cur, name)
        finally:
            conn.close()

    def ensure_slot(self, name: str, lineage: SlotLineage | None = None) -> SlotHandle:
        """
        Guarantees that a usable physical slot named `name` exists on the primary.

        Idempotent: an existing slot of the expected lineage is returned untouched.

        Args:
            name (str): Slot name.
            lineage (SlotLineage | None): Lineage recorded the last time this slot was confirmed.
                                          None accepts any healthy physical slot.

        Returns:
            SlotHandle: The slot as it exists on the primary.

        Raises:
            SlotConflict: If the existing slot is not physical, has been invalidated, or belongs
                          to a different lineage.
            psycopg2.Error: On database errors.
        """
        conn = self._connection()
        try:
            with conn.cursor() as cur:
                slot = self._fetch_slot(cur, name)
                if slot is None:
                    self._check_system_identifier(cur, name, lineage)
                    logger.info(f"Creating physical replication slot '{name}' (WAL reserved immediately)...")
                    try:
                        cur.execute(CREATE_SLOT_SQL, [name])
                    except psycopg2.errors.DuplicateObject:
                        logger.warning(f"Replication slot '{name}' was created concurrently; validating it.")
                    else:
                        slot = self._fetch_slot(cur, name)
                        if slot is None:
                            raise SlotConflict(name, "slot disappeared right after creation")
                        logger.info(f"Created replication slot '{name}' at restart_lsn "
                                    f"{format_lsn(slot.restart_lsn)}.")
                        return slot
                    slot = self._fetch_slot(cur, name)
                    if slot is None:
                        raise SlotConflict(name, "slot disappeared right after a concurrent creation")
                self._validate(slot, lineage)
                logger.info(f"Replication slot '{name}' already exists and matches the expected lineage.")
                return slot
        finally:
            conn.close()

    @staticmethod
    def _check_system_identifier(cur, name: str, lineage: SlotLineage | None) -> None:
        """Refuses to create a slot on a primary whose cluster differs from the recorded lineage."""
        if lineage is None or not lineage.system_identifier:
            return
        cur.execute(SYSTEM_IDENTIFIER_SQL)
        system_identifier = cur.fetchone()[0]
        if system_identifier != lineage.system_identifier:
            raise SlotConflict(name, f"primary system identifier {system_identifier} does not match "
                                     f"recorded {lineage.system_identifier}; slot not created")

    @staticmethod
    def _validate(slot: SlotHandle, lineage: SlotLineage | None) -> None:
        if slot.slot_type != "physical":
            raise SlotConflict(slot.name, f"existing slot is {slot.slot_type}, not physical")
        if slot.lost:
            raise SlotConflict(slot.name, "slot has been invalidated (wal_status = lost); "
                                          "an explicit slot reset is required")
        if lineage is None:
            return
        if lineage.system_identifier and slot.system_identifier != lineage.system_identifier:
            raise SlotConflict(slot.name, f"primary system identifier {slot.system_identifier} does not match "
                                          f"recorded {lineage.system_identifier}")
        if (lineage.restart_lsn is not None and slot.restart_lsn is not None
                and slot.restart_lsn < lineage.restart_lsn):
            raise SlotConflict(slot.name, f"restart_lsn {format_lsn(slot.restart_lsn)} is behind recorded "
                                          f"{format_lsn(lineage.restart_lsn)}; slot was recreated elsewhere")

    def drop_slot(self, name: str) -> bool:
        """
        Drops the slot. Returns False if it did not exist.

        Raises:
            SlotConflict: If a walsender is still streaming through the slot.
        """
        conn = self._connection()
        try:
            with conn.cursor() as cur:
                if self._fetch_slot(cur, name) is None:
                    logger.info(f"Replication slot '{name}' does not exist; nothing to drop.")
                    return False
                try:
                    cur.execute(DROP_SLOT_SQL, [name])
                except psycopg2.errors.ObjectInUse as e:
                    raise SlotConflict(name, "slot is active and cannot be dropped") from e
                except psycopg2.errors.UndefinedObject:
                    logger.info(f"Replication slot '{name}' was dropped concurrently.")
                    return False
                logger.warning(f"Dropped replication slot '{name}'.")
                return True
        finally:
            conn.close()
