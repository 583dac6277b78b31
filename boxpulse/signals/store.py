"""
Signal Store — read contract over upstream member activity aggregates.

The retention engine never computes component scores itself; it reads
whatever the aggregation job last published. Reads happen before any
transactional write so a slow store never holds a write transaction open.
"""

import uuid
from datetime import datetime
from typing import Optional, Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from boxpulse.db.models import SignalSnapshotModel
from boxpulse.errors import InputIncompleteError
from boxpulse.signals.schemas import SignalSnapshot

logger = structlog.get_logger(__name__)


class SignalStore(Protocol):
    async def get_snapshot(
        self,
        session: AsyncSession,
        box_id: uuid.UUID,
        membership_id: uuid.UUID,
        as_of: datetime,
    ) -> Optional[SignalSnapshot]:
        """Latest snapshot captured at or before as_of."""
        ...

    async def get_snapshot_after(
        self,
        session: AsyncSession,
        box_id: uuid.UUID,
        membership_id: uuid.UUID,
        not_before: datetime,
    ) -> Optional[SignalSnapshot]:
        """Earliest snapshot captured at or after not_before."""
        ...


class DatabaseSignalStore:
    """Reads bp_signal_snapshots, populated by the upstream aggregation job."""

    async def get_snapshot(
        self,
        session: AsyncSession,
        box_id: uuid.UUID,
        membership_id: uuid.UUID,
        as_of: datetime,
    ) -> Optional[SignalSnapshot]:
        result = await session.execute(
            select(SignalSnapshotModel)
            .where(
                SignalSnapshotModel.box_id == box_id,
                SignalSnapshotModel.membership_id == membership_id,
                SignalSnapshotModel.captured_at <= as_of,
            )
            .order_by(SignalSnapshotModel.captured_at.desc(), SignalSnapshotModel.id.desc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return SignalSnapshot.from_row(row) if row else None

    async def get_snapshot_after(
        self,
        session: AsyncSession,
        box_id: uuid.UUID,
        membership_id: uuid.UUID,
        not_before: datetime,
    ) -> Optional[SignalSnapshot]:
        result = await session.execute(
            select(SignalSnapshotModel)
            .where(
                SignalSnapshotModel.box_id == box_id,
                SignalSnapshotModel.membership_id == membership_id,
                SignalSnapshotModel.captured_at >= not_before,
            )
            .order_by(SignalSnapshotModel.captured_at.asc(), SignalSnapshotModel.id.asc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return SignalSnapshot.from_row(row) if row else None


async def fetch_complete_snapshot(
    store: SignalStore,
    session: AsyncSession,
    box_id: uuid.UUID,
    membership_id: uuid.UUID,
    as_of: datetime,
) -> SignalSnapshot:
    """
    Fetch the member's signals and refuse incomplete input.

    Raises:
        InputIncompleteError: no snapshot, or required signals missing.
    """
    snapshot = await store.get_snapshot(session, box_id, membership_id, as_of)
    if snapshot is None:
        logger.info("signals_unavailable", membership_id=str(membership_id))
        raise InputIncompleteError(["snapshot"], member_id=str(membership_id))
    missing = snapshot.missing_signals()
    if missing:
        logger.info(
            "signals_incomplete",
            membership_id=str(membership_id),
            missing=missing,
        )
        raise InputIncompleteError(missing, member_id=str(membership_id))
    return snapshot
