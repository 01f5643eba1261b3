"""Book shipments from quote sessions and persist the outcome."""
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional
import asyncio
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shipquote.core.exceptions import (
    AlreadyUsedSessionError, ExhaustedError, NonRecoverableProviderError,
)
from shipquote.database import async_session_factory
from shipquote.models.quote_session import ShipmentRecord, ShipmentRecordStatus
from shipquote.schemas.quote import QuoteOption
from shipquote.services.booking_resolver import BookingResolver
from shipquote.services.carrier_adapters import BookingRequest
from shipquote.services.quote_session_service import QuoteSessionBuilder

logger = logging.getLogger(__name__)


class CompensationStage:
    """Where a failed booking left things, for the reconciliation queue."""
    BOOKING_PARTIAL = "booking_partial"  # carrier holds an AWB we could not complete
    BOOKING_FAILED = "booking_failed"  # nothing was created at any carrier


def pricing_snapshot(option: QuoteOption) -> dict:
    return {
        "option_id": option.option_id,
        "carrier": option.carrier,
        "service_id": option.service_id,
        "zone": option.zone,
        "quoted_amount": str(option.quoted_amount),
        "expected_cost": str(option.cost_amount),
        "expected_margin": str(option.estimated_margin),
        "pricing_source": option.pricing_source.value,
        "confidence": option.confidence.value,
        "rank_score": option.rank_score,
    }


class ShipmentRecordStore:

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = async_session_factory):
        self._session_factory = session_factory

    async def get_for_order(self, order_id: str, quote_session_id: uuid.UUID) -> Optional[ShipmentRecord]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(ShipmentRecord)
                .where(
                    ShipmentRecord.order_id == order_id,
                    ShipmentRecord.quote_session_id == quote_session_id,
                )
                .order_by(ShipmentRecord.created_at.desc())
            )
            return result.scalars().first()

    async def create(self, **fields) -> ShipmentRecord:
        async with self._session_factory() as db:
            record = ShipmentRecord(**fields)
            db.add(record)
            await db.commit()
            await db.refresh(record)
            return record


class BookingResult:

    def __init__(
        self,
        option_id: str,
        carrier: str,
        tracking_number: str,
        fallback_info: dict,
        pricing_snapshot: dict,
        shipment_record_id: Optional[uuid.UUID] = None,
        replayed: bool = False,
    ):
        self.option_id = option_id
        self.carrier = carrier
        self.tracking_number = tracking_number
        self.fallback_info = fallback_info
        self.pricing_snapshot = pricing_snapshot
        self.shipment_record_id = shipment_record_id
        self.replayed = replayed

    @classmethod
    def from_record(cls, record: ShipmentRecord, total_options: int) -> "BookingResult":
        return cls(
            option_id=record.option_id,
            carrier=record.carrier,
            tracking_number=record.tracking_number,
            fallback_info={
                "attempt_number": record.attempt_number,
                "fallback_used": record.fallback_used,
                "total_options_available": total_options,
                "attempted_option_ids": list(record.attempted_option_ids or []),
            },
            pricing_snapshot=dict(record.pricing_snapshot or {}),
            shipment_record_id=record.id,
            replayed=True,
        )

    def to_dict(self) -> dict:
        return {
            "option_id": self.option_id,
            "carrier": self.carrier,
            "tracking_number": self.tracking_number,
            "fallback_info": self.fallback_info,
            "pricing_snapshot": self.pricing_snapshot,
            "shipment_record_id": str(self.shipment_record_id) if self.shipment_record_id else None,
            "replayed": self.replayed,
        }


class SessionLock:
    """A lock plus the number of tasks holding or waiting on it."""

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class BookingService:
    """
    Converts a quote session into a carrier booking.

    Calls for the same session are serialized in-process; across processes
    the per-attempt idempotency key lets the carrier dedupe the first
    attempt, and the conditional ACTIVE -> BOOKED update decides the winner.
    """

    def __init__(
        self,
        quote_builder: QuoteSessionBuilder,
        resolver: BookingResolver,
        records: Optional[ShipmentRecordStore] = None,
    ):
        self.quote_builder = quote_builder
        self.resolver = resolver
        self.records = records or ShipmentRecordStore()
        self._locks: Dict[uuid.UUID, SessionLock] = {}

    @asynccontextmanager
    async def _session_lock(self, session_id: uuid.UUID) -> AsyncIterator[None]:
        """Serialise bookings per session; the entry goes once nobody holds or waits on it."""
        entry = self._locks.get(session_id)
        if entry is None:
            entry = self._locks[session_id] = SessionLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[session_id]

    async def book_from_quote(
        self,
        session_id: uuid.UUID,
        option_id: str,
        order_id: str,
    ) -> BookingResult:
        """
        Book the selected option, falling back through the ranked list.

        A caller that goes away does not abort the booking: the in-flight
        attempt and its bookkeeping run to completion.
        """
        task = asyncio.ensure_future(self._book(session_id, option_id, order_id))
        return await asyncio.shield(task)

    async def _book(self, session_id: uuid.UUID, option_id: str, order_id: str) -> BookingResult:
        async with self._session_lock(session_id):
            existing = await self.records.get_for_order(order_id, session_id)
            if existing is not None and existing.status == ShipmentRecordStatus.BOOKED.value:
                logger.info(f"Order {order_id} already booked from session {session_id}, replaying")
                session = await self.quote_builder.store.get(session_id)
                return BookingResult.from_record(existing, len(session.options) if session else 0)

            session, option = await self.quote_builder.get_session_for_booking(session_id, option_id)
            request = BookingRequest(
                tenant_id=session.tenant_id,
                order_id=order_id,
                quote_session_id=session.id,
                shipment=session.input_params,
            )

            try:
                outcome = await self.resolver.resolve(session.id, session.options, option_id, request)
            except NonRecoverableProviderError as e:
                await self._record_non_recoverable(session.tenant_id, session.id, order_id, option, e)
                raise
            except ExhaustedError as e:
                logger.error(
                    f"Order {order_id} not booked ({CompensationStage.BOOKING_FAILED}): "
                    f"tried {e.attempted_option_ids}"
                )
                raise

            snapshot = pricing_snapshot(outcome.option)
            claimed = await self.quote_builder.store.mark_booked(session.id, outcome.option_id)
            status = ShipmentRecordStatus.BOOKED if claimed else ShipmentRecordStatus.NEEDS_RECONCILIATION
            record = await self.records.create(
                tenant_id=session.tenant_id,
                order_id=order_id,
                quote_session_id=session.id,
                option_id=outcome.option_id,
                carrier=outcome.booking.carrier,
                tracking_number=outcome.tracking_number,
                status=status.value,
                attempt_number=outcome.attempt_number,
                fallback_used=outcome.fallback_used,
                attempted_option_ids=outcome.attempted_option_ids,
                pricing_snapshot=snapshot,
                failure_reason=None if claimed else {"reason": "session consumed concurrently"},
            )

            if not claimed:
                logger.error(
                    f"Session {session.id} was consumed concurrently; AWB {outcome.tracking_number} "
                    f"needs reconciliation"
                )
                raise AlreadyUsedSessionError(
                    f"Quote session {session.id} was already booked",
                    details={
                        "session_id": str(session.id),
                        "tracking_number": outcome.tracking_number,
                        "shipment_record_id": str(record.id),
                    },
                )

            return BookingResult(
                option_id=outcome.option_id,
                carrier=outcome.booking.carrier,
                tracking_number=outcome.tracking_number,
                fallback_info=outcome.fallback_info,
                pricing_snapshot=snapshot,
                shipment_record_id=record.id,
            )

    async def _record_non_recoverable(
        self,
        tenant_id: str,
        session_id: uuid.UUID,
        order_id: str,
        selected: QuoteOption,
        error: NonRecoverableProviderError,
    ) -> None:
        trail = error.trail
        attempted: List[str] = trail.attempted_option_ids if trail else [selected.option_id]
        failed_option_id = attempted[-1]

        if not error.post_awb_issued:
            logger.error(
                f"Order {order_id} not booked ({CompensationStage.BOOKING_FAILED}): "
                f"{error.code.value} {error.message}"
            )
            return

        # Carrier holds a live AWB; the session must not be booked again
        await self.quote_builder.store.mark_booked(session_id, failed_option_id)
        session = await self.quote_builder.store.get(session_id)
        option = session.get_option(failed_option_id) if session else None

        await self.records.create(
            tenant_id=tenant_id,
            order_id=order_id,
            quote_session_id=session_id,
            option_id=failed_option_id,
            carrier=error.carrier or selected.carrier,
            tracking_number=error.tracking_number,
            status=ShipmentRecordStatus.NEEDS_RECONCILIATION.value,
            attempt_number=trail.attempt_count if trail else 1,
            fallback_used=trail.fallback_used if trail else False,
            attempted_option_ids=attempted,
            pricing_snapshot=pricing_snapshot(option or selected),
            failure_reason={
                "compensation_stage": CompensationStage.BOOKING_PARTIAL,
                **error.to_dict(),
            },
        )
        logger.error(
            f"Order {order_id} needs reconciliation ({CompensationStage.BOOKING_PARTIAL}): "
            f"AWB {error.tracking_number} on {failed_option_id}"
        )
