"""Cargo store: load-test pieces, their protocol links and the cycle ledger.

The cargo store is a separate SQLite file from the main store.  Pieces are
related to main-store assays only through ``tag_id``; nothing in this file
references the main store.

Link history is append-only: re-linking a piece deactivates its current
link and inserts a new one, and a partial unique index guarantees at most
one active link per piece.
"""

import logging
from collections.abc import Iterable
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from labcontrol.errors import NotFoundError, PieceNotFoundError
from labcontrol.stores.base import SqliteStore, utc_now
from labcontrol.stores.models import (
    BulkAddResult,
    CargoAssayLink,
    CargoData,
    CycleApplication,
    CycleDistributionRow,
    CycleKind,
    CycleLedgerEntry,
    LinkStatus,
    Piece,
    PieceCycleChange,
    PieceDetails,
    PieceReportRow,
    PieceStatus,
    ProtocolFinalization,
)

logger = logging.getLogger(__name__)

# Pieces are retired once they accumulate this many cycles
CYCLE_LIMIT = 80

_PIECE_FIELDS = frozenset({"tag_id", "type", "cycle_count", "status", "acquisition_date"})


class CargoStore(SqliteStore):
    """Store for pieces and their protocol links."""

    name = "cargo"

    DDL = (
        """
        CREATE TABLE IF NOT EXISTS pieces (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            tag_id TEXT NOT NULL UNIQUE,
            type TEXT NOT NULL,
            cycle_count INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'active'
                CHECK (status IN ('active', 'inactive')),
            acquisition_date TEXT
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS assay_links (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            piece_id INTEGER NOT NULL REFERENCES pieces(id),
            protocol TEXT NOT NULL,
            cycle_kind TEXT NOT NULL CHECK (cycle_kind IN ('cold', 'hot')),
            link_status TEXT NOT NULL DEFAULT 'active'
                CHECK (link_status IN ('active', 'inactive')),
            cycles_in_link INTEGER,
            created_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS cycle_ledger (
            assay_id INTEGER PRIMARY KEY,
            tag_id TEXT NOT NULL,
            cycles INTEGER NOT NULL,
            applied_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_pieces_status ON pieces(status)",
        "CREATE INDEX IF NOT EXISTS idx_links_piece_id ON assay_links(piece_id)",
        "CREATE INDEX IF NOT EXISTS idx_links_protocol ON assay_links(protocol)",
        (
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_links_one_active "
            "ON assay_links(piece_id) WHERE link_status = 'active'"
        ),
    )

    EXPECTED_COLUMNS = {
        "pieces": {"id", "tag_id", "type", "cycle_count", "status", "acquisition_date"},
        "assay_links": {
            "id",
            "piece_id",
            "protocol",
            "cycle_kind",
            "link_status",
            "cycles_in_link",
            "created_at",
        },
        "cycle_ledger": {"assay_id", "tag_id", "cycles", "applied_at"},
    }

    # ------------------------------------------------------------------
    # Pieces
    # ------------------------------------------------------------------

    async def add_piece(
        self,
        tag_id: str,
        type: str,
        acquisition_date: str | None = None,
    ) -> Piece:
        """Insert a new active piece with zero cycles."""
        row = await self.adapter.insert(
            "pieces",
            {
                "tag_id": tag_id,
                "type": type,
                "cycle_count": 0,
                "status": "active",
                "acquisition_date": acquisition_date,
            },
        )
        logger.debug("Piece %s added (id=%s)", tag_id, row["id"])
        return Piece.model_validate(row)

    async def add_pieces(self, pieces: list[dict[str, Any]]) -> BulkAddResult:
        """Insert several pieces, skipping tag ids that already exist.

        Args:
            pieces: Dicts with ``tag_id``, ``type`` and optional
                ``acquisition_date``.
        """
        existing = {p.tag_id for p in await self.list_pieces()}
        result = BulkAddResult()
        for data in pieces:
            tag_id = data["tag_id"]
            if tag_id in existing:
                result.skipped_tags.append(tag_id)
                continue
            piece = await self.add_piece(
                tag_id, data["type"], acquisition_date=data.get("acquisition_date")
            )
            existing.add(tag_id)
            result.added.append(piece)
        return result

    async def update_piece(self, piece_id: int, updates: dict[str, Any]) -> Piece:
        """Update selected piece fields.

        Raises:
            ValueError: If ``updates`` names a field pieces don't have.
            NotFoundError: If no piece has ``piece_id``.
        """
        unknown = set(updates) - _PIECE_FIELDS
        if unknown:
            raise ValueError(f"Unknown piece field(s): {', '.join(sorted(unknown))}")
        try:
            row = await self.adapter.update("pieces", updates, {"id": piece_id})
        except ValueError:
            raise NotFoundError(f"Piece {piece_id} not found in cargo store") from None
        return Piece.model_validate(row)

    async def delete_piece(self, piece_id: int) -> None:
        """Delete a piece together with its link history."""
        async with self.adapter.transaction() as conn:
            await conn.execute(
                text("DELETE FROM assay_links WHERE piece_id = :piece_id"),
                {"piece_id": piece_id},
            )
            await conn.execute(text("DELETE FROM pieces WHERE id = :id"), {"id": piece_id})

    async def get_piece_by_id(self, piece_id: int) -> Piece | None:
        rows = await self.adapter.select("pieces", "*", filters={"id": piece_id})
        return Piece.model_validate(rows[0]) if rows else None

    async def get_piece_by_tag(self, tag_id: str) -> Piece | None:
        rows = await self.adapter.select("pieces", "*", filters={"tag_id": tag_id})
        return Piece.model_validate(rows[0]) if rows else None

    async def list_pieces(self, status: PieceStatus | None = None) -> list[Piece]:
        filters = {"status": status} if status else None
        rows = await self.adapter.select("pieces", "*", filters=filters, order_by="tag_id")
        return [Piece.model_validate(r) for r in rows]

    async def update_piece_status(self, tag_id: str, status: PieceStatus) -> Piece:
        """Set the status of the piece with ``tag_id``.

        Raises:
            PieceNotFoundError: If no piece has ``tag_id``.
        """
        try:
            row = await self.adapter.update("pieces", {"status": status}, {"tag_id": tag_id})
        except ValueError:
            raise PieceNotFoundError(tag_id) from None
        return Piece.model_validate(row)

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------

    async def supersede_link(
        self,
        piece_id: int,
        protocol: str,
        cycle_kind: CycleKind,
    ) -> tuple[CargoAssayLink, list[int]]:
        """Make a new active link for a piece, deactivating the current one.

        Both steps run in one transaction, so the piece never has two active
        links and never has none because of a half-applied re-link.

        Returns:
            Tuple of (new link, ids of the links that were deactivated).
        """
        async with self.adapter.transaction() as conn:
            link, superseded = await _supersede(conn, piece_id, protocol, cycle_kind)

        if superseded:
            logger.debug("Piece %s: links %s superseded by %s", piece_id, superseded, link.id)
        return link, superseded

    async def link_pieces(
        self,
        protocol: str,
        pieces: list[tuple[int, CycleKind]],
    ) -> list[tuple[CargoAssayLink, list[int]]]:
        """Link several pieces to one protocol in a single transaction.

        Each piece's current active link is superseded.  If any piece id is
        unknown nothing is written.

        Args:
            protocol: Protocol identifier; surrounding whitespace is stripped.
            pieces: ``(piece_id, cycle_kind)`` pairs.

        Raises:
            ValueError: If ``protocol`` is blank or ``pieces`` is empty.
            NotFoundError: If a piece id does not exist.
        """
        protocol = protocol.strip()
        if not protocol:
            raise ValueError("Protocol must not be blank")
        if not pieces:
            raise ValueError("At least one piece is required")

        linked = []
        async with self.adapter.transaction() as conn:
            for piece_id, cycle_kind in pieces:
                result = await conn.execute(
                    text("SELECT id FROM pieces WHERE id = :id"), {"id": piece_id}
                )
                if result.fetchone() is None:
                    raise NotFoundError(f"Piece {piece_id} not found in cargo store")
                linked.append(await _supersede(conn, piece_id, protocol, cycle_kind))

        logger.info("Protocol %r linked to %d piece(s)", protocol, len(linked))
        return linked

    async def list_links(
        self,
        piece_id: int | None = None,
        link_status: LinkStatus | None = None,
    ) -> list[CargoAssayLink]:
        """List links, newest first, optionally filtered by piece and status."""
        filters: dict[str, Any] = {}
        if piece_id is not None:
            filters["piece_id"] = piece_id
        if link_status is not None:
            filters["link_status"] = link_status
        rows = await self.adapter.select(
            "assay_links", "*", filters=filters or None, order_by="id DESC"
        )
        return [CargoAssayLink.model_validate(r) for r in rows]

    async def count_active_links(self, piece_id: int) -> int:
        return len(await self.list_links(piece_id=piece_id, link_status="active"))

    # ------------------------------------------------------------------
    # Cycle ledger
    # ------------------------------------------------------------------

    async def apply_assay_cycles(
        self,
        assay_id: int,
        tag_id: str,
        cycles: int,
        cycle_limit: int = CYCLE_LIMIT,
    ) -> CycleApplication:
        """Add one assay's cycles to a piece, at most once per assay.

        The ledger row, the piece increment and the active link's running
        total are written in a single transaction.  The increment is one SQL
        statement, so concurrent callers never lose an update.  A piece that
        reaches ``cycle_limit`` becomes inactive.

        Raises:
            PieceNotFoundError: If no piece has ``tag_id`` (nothing is written).
        """
        async with self.adapter.transaction() as conn:
            result = await conn.execute(
                text(
                    "INSERT INTO cycle_ledger (assay_id, tag_id, cycles, applied_at) "
                    "VALUES (:assay_id, :tag_id, :cycles, :applied_at) "
                    "ON CONFLICT(assay_id) DO NOTHING"
                ),
                {
                    "assay_id": assay_id,
                    "tag_id": tag_id,
                    "cycles": cycles,
                    "applied_at": utc_now(),
                },
            )
            if result.rowcount == 0:
                result = await conn.execute(
                    text("SELECT * FROM pieces WHERE tag_id = :tag_id"), {"tag_id": tag_id}
                )
                row = result.fetchone()
                if row is None:
                    raise PieceNotFoundError(tag_id)
                logger.info("Assay %s cycles already applied to %s", assay_id, tag_id)
                return CycleApplication(piece=Piece.model_validate(dict(row._mapping)), applied=False)

            result = await conn.execute(
                text(
                    "UPDATE pieces SET cycle_count = cycle_count + :cycles, "
                    "status = CASE WHEN cycle_count + :cycles >= :limit "
                    "THEN 'inactive' ELSE status END "
                    "WHERE tag_id = :tag_id RETURNING *"
                ),
                {"cycles": cycles, "limit": cycle_limit, "tag_id": tag_id},
            )
            row = result.fetchone()
            if row is None:
                raise PieceNotFoundError(tag_id)
            piece = Piece.model_validate(dict(row._mapping))

            await conn.execute(
                text(
                    "UPDATE assay_links "
                    "SET cycles_in_link = COALESCE(cycles_in_link, 0) + :cycles "
                    "WHERE piece_id = :piece_id AND link_status = 'active'"
                ),
                {"cycles": cycles, "piece_id": piece.id},
            )

        expired = piece.cycle_count >= cycle_limit > piece.cycle_count - cycles
        if expired:
            logger.warning("Piece %s reached %s cycles and was retired", tag_id, piece.cycle_count)
        return CycleApplication(piece=piece, applied=True, expired=expired)

    async def finalize_protocol(
        self,
        protocol: str,
        cycle_kind: CycleKind,
        cycles: int,
        cycle_limit: int = CYCLE_LIMIT,
    ) -> ProtocolFinalization:
        """Close a protocol run: add ``cycles`` to every actively linked piece.

        Every active link of ``protocol`` in ``cycle_kind`` is credited and
        deactivated, all in one transaction.  Pieces that reach
        ``cycle_limit`` in this run are retired and listed in ``expired``.
        A protocol with no active links writes nothing.
        """
        finalization = ProtocolFinalization(protocol=protocol, cycle_kind=cycle_kind)
        async with self.adapter.transaction() as conn:
            result = await conn.execute(
                text(
                    "SELECT l.id AS link_id, p.id AS piece_id, p.cycle_count "
                    "FROM assay_links l JOIN pieces p ON p.id = l.piece_id "
                    "WHERE l.protocol = :protocol AND l.cycle_kind = :cycle_kind "
                    "AND l.link_status = 'active' ORDER BY p.tag_id"
                ),
                {"protocol": protocol, "cycle_kind": cycle_kind},
            )
            targets = [dict(row._mapping) for row in result.fetchall()]

            for target in targets:
                result = await conn.execute(
                    text(
                        "UPDATE pieces SET cycle_count = cycle_count + :cycles, "
                        "status = CASE WHEN cycle_count + :cycles >= :limit "
                        "THEN 'inactive' ELSE status END "
                        "WHERE id = :id RETURNING *"
                    ),
                    {"cycles": cycles, "limit": cycle_limit, "id": target["piece_id"]},
                )
                piece = Piece.model_validate(dict(result.fetchone()._mapping))
                await conn.execute(
                    text(
                        "UPDATE assay_links "
                        "SET cycles_in_link = COALESCE(cycles_in_link, 0) + :cycles, "
                        "link_status = 'inactive' WHERE id = :id"
                    ),
                    {"cycles": cycles, "id": target["link_id"]},
                )

                change = PieceCycleChange(
                    tag_id=piece.tag_id,
                    type=piece.type,
                    cycles_before=target["cycle_count"],
                    cycles_after=piece.cycle_count,
                    cycles_added=cycles,
                )
                finalization.affected.append(change)
                if piece.cycle_count >= cycle_limit > target["cycle_count"]:
                    finalization.expired.append(change)

        logger.info(
            "Protocol %r (%s) finalized: %d piece(s) credited, %d expired",
            protocol,
            cycle_kind,
            len(finalization.affected),
            len(finalization.expired),
        )
        return finalization

    async def list_ledger(self) -> list[CycleLedgerEntry]:
        rows = await self.adapter.select("cycle_ledger", "*", order_by="assay_id")
        return [CycleLedgerEntry.model_validate(r) for r in rows]

    async def applied_assay_ids(self) -> set[int]:
        rows = await self.adapter.select("cycle_ledger", "assay_id")
        return {r["assay_id"] for r in rows}

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    async def cargo_report(self) -> list[PieceReportRow]:
        """Per-piece link totals, most recently acquired first."""
        pieces = await self.list_pieces()
        links = await self.list_links()

        totals: dict[int, dict[str, int]] = {}
        for link in links:
            counts = totals.setdefault(link.piece_id, {"active": 0, "inactive": 0})
            counts[link.link_status] += 1

        report = []
        for piece in pieces:
            counts = totals.get(piece.id, {"active": 0, "inactive": 0})
            report.append(
                PieceReportRow(
                    tag_id=piece.tag_id,
                    type=piece.type,
                    status=piece.status,
                    cycle_count=piece.cycle_count,
                    acquisition_date=piece.acquisition_date,
                    total_links=counts["active"] + counts["inactive"],
                    active_links=counts["active"],
                    inactive_links=counts["inactive"],
                )
            )
        report.sort(key=lambda r: r.acquisition_date or "", reverse=True)
        return report

    async def list_pieces_without_active_link(self) -> list[Piece]:
        """Active pieces not linked to any protocol, most recently acquired first."""
        linked = {link.piece_id for link in await self.list_links(link_status="active")}
        return _by_acquisition(
            p for p in await self.list_pieces(status="active") if p.id not in linked
        )

    async def list_expired_pieces(self, cycle_limit: int = CYCLE_LIMIT) -> list[Piece]:
        """Pieces at or over ``cycle_limit``, most recently acquired first."""
        return _by_acquisition(p for p in await self.list_pieces() if p.cycle_count >= cycle_limit)

    async def cycle_distribution(self) -> list[CycleDistributionRow]:
        """Active pieces per type, bucketed into 0-19, 20-39, 40-59 and 60+ cycles."""
        rows: dict[str, CycleDistributionRow] = {}
        for piece in await self.list_pieces(status="active"):
            kind = piece.type.strip().lower()
            row = rows.setdefault(kind, CycleDistributionRow(type=kind))
            if piece.cycle_count < 20:
                row.under_20 += 1
            elif piece.cycle_count < 40:
                row.from_20_to_39 += 1
            elif piece.cycle_count < 60:
                row.from_40_to_59 += 1
            else:
                row.from_60 += 1
        return [rows[kind] for kind in sorted(rows)]

    async def piece_details(self, tag_id: str) -> PieceDetails | None:
        piece = await self.get_piece_by_tag(tag_id)
        if piece is None:
            return None
        return PieceDetails(piece=piece, links=await self.list_links(piece_id=piece.id))

    async def read_all(self) -> CargoData:
        """Read every piece, link and ledger entry."""
        return CargoData(
            pieces=await self.list_pieces(),
            links=await self.list_links(),
            ledger=await self.list_ledger(),
        )


async def _supersede(
    conn: AsyncConnection,
    piece_id: int,
    protocol: str,
    cycle_kind: CycleKind,
) -> tuple[CargoAssayLink, list[int]]:
    """Deactivate the piece's active link and insert a new active one on ``conn``."""
    result = await conn.execute(
        text(
            "UPDATE assay_links SET link_status = 'inactive' "
            "WHERE piece_id = :piece_id AND link_status = 'active' "
            "RETURNING id"
        ),
        {"piece_id": piece_id},
    )
    superseded = [row[0] for row in result.fetchall()]

    result = await conn.execute(
        text(
            "INSERT INTO assay_links "
            "(piece_id, protocol, cycle_kind, link_status, cycles_in_link, created_at) "
            "VALUES (:piece_id, :protocol, :cycle_kind, 'active', 0, :created_at) "
            "RETURNING *"
        ),
        {
            "piece_id": piece_id,
            "protocol": protocol,
            "cycle_kind": cycle_kind,
            "created_at": utc_now(),
        },
    )
    return CargoAssayLink.model_validate(dict(result.fetchone()._mapping)), superseded


def _by_acquisition(pieces: Iterable[Piece]) -> list[Piece]:
    """Newest acquisition first; ties and undated pieces keep tag order."""
    return sorted(pieces, key=lambda p: p.acquisition_date or "", reverse=True)
