"""Main store: inventory, assays, calibrations, users, holidays, settings.

Assays reference cargo pieces by ``piece_tag_id`` only.  The main store
never checks that tag against the cargo store; cross-store consistency is
the coordinator's job.
"""

import json
import logging
from typing import Any

from pydantic import BaseModel
from sqlalchemy import text

from labcontrol.errors import AssayNotFoundError, InvalidAssayStatusError, NotFoundError
from labcontrol.stores.base import SqliteStore, utc_now
from labcontrol.stores.models import (
    ASSAY_STATUSES,
    Assay,
    AssayStatus,
    Calibration,
    Holiday,
    InventoryItem,
    MainData,
    Notification,
    SystemUser,
)

logger = logging.getLogger(__name__)

# Tables with plain id-keyed CRUD and the record model each returns
RECORD_TABLES: dict[str, type[BaseModel]] = {
    "inventory": InventoryItem,
    "calibrations": Calibration,
    "system_users": SystemUser,
    "holidays": Holiday,
}


class MainStore(SqliteStore):
    """Store for everything except load-test pieces."""

    name = "main"

    DDL = (
        """
        CREATE TABLE IF NOT EXISTS inventory (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            code TEXT NOT NULL,
            description TEXT NOT NULL,
            manufacturer TEXT,
            lot TEXT,
            quantity REAL NOT NULL DEFAULT 0,
            unit TEXT NOT NULL DEFAULT 'g',
            validity TEXT
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS assays (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            protocol TEXT NOT NULL,
            piece_tag_id TEXT,
            status TEXT NOT NULL DEFAULT 'scheduled',
            cycles INTEGER NOT NULL DEFAULT 0,
            start_date TEXT,
            end_date TEXT,
            completed_at TEXT
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS calibrations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            equipment TEXT NOT NULL,
            last_calibration TEXT,
            next_calibration TEXT,
            status TEXT NOT NULL DEFAULT 'valid'
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS system_users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT NOT NULL UNIQUE,
            display_name TEXT NOT NULL DEFAULT '',
            role TEXT NOT NULL DEFAULT 'operator'
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS holidays (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            date TEXT NOT NULL,
            name TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS notifications (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            type TEXT NOT NULL,
            message TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_assays_piece_tag_id ON assays(piece_tag_id)",
        "CREATE INDEX IF NOT EXISTS idx_assays_status ON assays(status)",
    )

    EXPECTED_COLUMNS = {
        "inventory": {
            "id",
            "code",
            "description",
            "manufacturer",
            "lot",
            "quantity",
            "unit",
            "validity",
        },
        "assays": {
            "id",
            "protocol",
            "piece_tag_id",
            "status",
            "cycles",
            "start_date",
            "end_date",
            "completed_at",
        },
        "calibrations": {"id", "equipment", "last_calibration", "next_calibration", "status"},
        "system_users": {"id", "username", "display_name", "role"},
        "holidays": {"id", "date", "name"},
        "settings": {"key", "value"},
        "notifications": {"id", "type", "message", "created_at"},
    }

    JSON_COLUMNS = ("value",)

    # ------------------------------------------------------------------
    # Assays
    # ------------------------------------------------------------------

    async def add_assay(
        self,
        protocol: str,
        piece_tag_id: str | None = None,
        cycles: int = 0,
        status: AssayStatus = "scheduled",
        start_date: str | None = None,
        end_date: str | None = None,
    ) -> Assay:
        _check_status(status)
        row = await self.adapter.insert(
            "assays",
            {
                "protocol": protocol,
                "piece_tag_id": piece_tag_id,
                "cycles": cycles,
                "status": status,
                "start_date": start_date,
                "end_date": end_date,
            },
        )
        return Assay.model_validate(row)

    async def get_assay(self, assay_id: int) -> Assay | None:
        rows = await self.adapter.select("assays", "*", filters={"id": assay_id})
        return Assay.model_validate(rows[0]) if rows else None

    async def list_assays(
        self,
        status: AssayStatus | None = None,
        piece_tag_id: str | None = None,
    ) -> list[Assay]:
        filters: dict[str, Any] = {}
        if status is not None:
            filters["status"] = status
        if piece_tag_id is not None:
            filters["piece_tag_id"] = piece_tag_id
        rows = await self.adapter.select("assays", "*", filters=filters or None, order_by="id")
        return [Assay.model_validate(r) for r in rows]

    async def update_assay(self, assay_id: int, updates: dict[str, Any]) -> Assay:
        """Update assay fields.

        Raises:
            AssayNotFoundError: If no assay has ``assay_id``.
            InvalidAssayStatusError: If ``updates`` carries an unknown status.
        """
        if "status" in updates:
            _check_status(updates["status"])
        try:
            row = await self.adapter.update("assays", updates, {"id": assay_id})
        except ValueError:
            raise AssayNotFoundError(assay_id) from None
        return Assay.model_validate(row)

    async def update_assay_status(self, assay_id: int, status: AssayStatus) -> Assay:
        return await self.update_assay(assay_id, {"status": status})

    async def delete_assay(self, assay_id: int) -> None:
        await self.adapter.delete("assays", {"id": assay_id})

    async def complete_assay(
        self, assay_id: int, message: str, piece_tag_id: str | None = None
    ) -> Assay:
        """Mark an assay completed and record a notification, atomically.

        An assay with no piece yet is assigned ``piece_tag_id``; an existing
        assignment is kept.

        Raises:
            AssayNotFoundError: If no assay has ``assay_id`` (nothing is written).
        """
        now = utc_now()
        async with self.adapter.transaction() as conn:
            result = await conn.execute(
                text(
                    "UPDATE assays SET status = 'completed', completed_at = :now, "
                    "piece_tag_id = COALESCE(piece_tag_id, :tag_id) "
                    "WHERE id = :id RETURNING *"
                ),
                {"now": now, "tag_id": piece_tag_id, "id": assay_id},
            )
            row = result.fetchone()
            if row is None:
                raise AssayNotFoundError(assay_id)
            await conn.execute(
                text(
                    "INSERT INTO notifications (type, message, created_at) "
                    "VALUES ('assay-completed', :message, :now)"
                ),
                {"message": message, "now": now},
            )
        logger.info("Assay %s marked completed", assay_id)
        return Assay.model_validate(dict(row._mapping))

    # ------------------------------------------------------------------
    # Inventory, calibrations, users, holidays
    # ------------------------------------------------------------------

    async def add_record(self, table: str, data: dict[str, Any]) -> BaseModel:
        model = _record_model(table)
        row = await self.adapter.insert(table, data)
        return model.model_validate(row)

    async def list_records(self, table: str) -> list[BaseModel]:
        model = _record_model(table)
        rows = await self.adapter.select(table, "*", order_by="id")
        return [model.model_validate(r) for r in rows]

    async def update_record(self, table: str, record_id: int, updates: dict[str, Any]) -> BaseModel:
        model = _record_model(table)
        try:
            row = await self.adapter.update(table, updates, {"id": record_id})
        except ValueError:
            raise NotFoundError(f"No {table} record with id {record_id}") from None
        return model.model_validate(row)

    async def delete_record(self, table: str, record_id: int) -> None:
        _record_model(table)
        await self.adapter.delete(table, {"id": record_id})

    # ------------------------------------------------------------------
    # Settings and notifications
    # ------------------------------------------------------------------

    async def get_settings(self) -> dict[str, Any]:
        rows = await self.adapter.select("settings", "key, value", order_by="key")
        return {r["key"]: r["value"] for r in rows}

    async def update_setting(self, key: str, value: Any) -> None:
        """Insert or replace one setting.  ``value`` is stored as JSON."""
        await self.adapter.execute(
            "INSERT INTO settings (key, value) VALUES (:key, :value) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            {"key": key, "value": json.dumps(value)},
        )

    async def add_notification(self, type: str, message: str) -> Notification:
        row = await self.adapter.insert(
            "notifications", {"type": type, "message": message, "created_at": utc_now()}
        )
        return Notification.model_validate(row)

    async def list_notifications(self) -> list[Notification]:
        rows = await self.adapter.select("notifications", "*", order_by="id DESC")
        return [Notification.model_validate(r) for r in rows]

    async def read_all(self) -> MainData:
        """Read every table of the main store."""
        return MainData(
            inventory=await self.list_records("inventory"),
            assays=await self.list_assays(),
            calibrations=await self.list_records("calibrations"),
            users=await self.list_records("system_users"),
            holidays=await self.list_records("holidays"),
            settings=await self.get_settings(),
            notifications=await self.list_notifications(),
        )


def _check_status(status: str) -> None:
    if status not in ASSAY_STATUSES:
        raise InvalidAssayStatusError(
            f"Unknown assay status {status!r}; expected one of {', '.join(sorted(ASSAY_STATUSES))}"
        )


def _record_model(table: str) -> type[BaseModel]:
    try:
        return RECORD_TABLES[table]
    except KeyError:
        raise ValueError(
            f"Unsupported table {table!r}; expected one of {', '.join(sorted(RECORD_TABLES))}"
        ) from None
