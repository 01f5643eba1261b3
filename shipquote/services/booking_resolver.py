"""
Booking Resolver.

Walks a quote session's ranked options until a carrier accepts the
booking:

    ATTEMPTING -> SUCCEEDED
               -> ATTEMPTING (recoverable error, next ranked option)
               -> EXHAUSTED (no options or attempts left)
               -> FAILED_NON_RECOVERABLE (AWB already issued, or rejected)

Attempts are strictly sequential. Each attempt gets its own idempotency
key so carriers never dedupe a fallback against the attempt before it.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional
import asyncio
import logging
import time
import uuid

import httpx

from shipquote.config import settings
from shipquote.core.exceptions import (
    CarrierError, ConfigurationError, ErrorCode, ExhaustedError, NonRecoverableProviderError,
    RECOVERABLE_ERROR_CODES,
)
from shipquote.core.metrics import BookingMetrics, FailureStage, booking_metrics
from shipquote.schemas.quote import QuoteOption
from shipquote.services.carrier_adapters import (
    BookingRequest, CarrierAdapterRegistry, CarrierBooking,
)

logger = logging.getLogger(__name__)


class BookingState(str, Enum):
    ATTEMPTING = "ATTEMPTING"
    SUCCEEDED = "SUCCEEDED"
    FAILED_NON_RECOVERABLE = "FAILED_NON_RECOVERABLE"
    EXHAUSTED = "EXHAUSTED"


def make_idempotency_key(session_id: uuid.UUID, option_id: str, attempt_number: int) -> str:
    """Stable per (session, option, attempt)."""
    return f"quote-{session_id}-{option_id}-a{attempt_number}"


def classify_error(error: BaseException, carrier: Optional[str] = None) -> CarrierError:
    """Map any adapter failure onto a CarrierError with recoverable set."""
    if isinstance(error, CarrierError):
        if error.post_awb_issued:
            error.recoverable = False
        elif error.recoverable is None:
            error.recoverable = (
                error.code in RECOVERABLE_ERROR_CODES
                or (error.status_code is not None and error.status_code >= 500)
                or _looks_transient(error.message)
            )
        if error.carrier is None:
            error.carrier = carrier
        return error

    if isinstance(error, ConfigurationError):
        # Raised before any request left the process, so the next option is safe
        return CarrierError(
            error.message,
            code=error.code,
            carrier=carrier,
            recoverable=True,
            details=error.details,
        )

    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        return CarrierError(
            f"{carrier} booking timed out",
            code=ErrorCode.SYS_TIMEOUT,
            carrier=carrier,
            recoverable=True,
        )

    if isinstance(error, httpx.TransportError):
        return CarrierError(
            f"{carrier} unreachable: {error}",
            code=ErrorCode.EXT_SERVICE_UNAVAILABLE,
            carrier=carrier,
            recoverable=True,
        )

    message = str(error) or type(error).__name__
    return CarrierError(
        message,
        code=ErrorCode.SYS_INTERNAL_ERROR,
        carrier=carrier,
        recoverable=_looks_transient(message),
    )


def _looks_transient(message: str) -> bool:
    lowered = (message or "").lower()
    return "timeout" in lowered or "timed out" in lowered or "unavailable" in lowered


def failure_stage(error: CarrierError) -> str:
    if error.post_awb_issued:
        return FailureStage.AFTER_AWB
    if error.recoverable or error.code in RECOVERABLE_ERROR_CODES or error.code == ErrorCode.EXT_BOOKING_REJECTED:
        return FailureStage.BEFORE_AWB
    return FailureStage.UNKNOWN


class AttemptRecord:
    """One adapter call and how it ended."""

    def __init__(
        self,
        attempt_number: int,
        option_id: str,
        carrier: str,
        idempotency_key: str,
    ):
        self.attempt_number = attempt_number
        self.option_id = option_id
        self.carrier = carrier
        self.idempotency_key = idempotency_key
        self.started_at = datetime.now(timezone.utc)
        self.succeeded = False
        self.tracking_number: Optional[str] = None
        self.error_code: Optional[str] = None
        self.error_message: Optional[str] = None
        self.recoverable: Optional[bool] = None
        self.stage: Optional[str] = None
        self.duration_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "attempt_number": self.attempt_number,
            "option_id": self.option_id,
            "carrier": self.carrier,
            "idempotency_key": self.idempotency_key,
            "started_at": self.started_at.isoformat(),
            "succeeded": self.succeeded,
            "tracking_number": self.tracking_number,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "recoverable": self.recoverable,
            "stage": self.stage,
            "duration_ms": self.duration_ms,
        }


class BookingAttemptTrail:
    """
    Accumulator threaded through the fallback loop. Holds every attempt
    and the current state; nothing else in the loop is mutable.
    """

    def __init__(self, session_id: uuid.UUID, total_options: int):
        self.session_id = session_id
        self.total_options = total_options
        self.state = BookingState.ATTEMPTING
        self.attempts: List[AttemptRecord] = []

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)

    @property
    def attempted_option_ids(self) -> List[str]:
        return [attempt.option_id for attempt in self.attempts]

    @property
    def fallback_used(self) -> bool:
        return self.attempt_count > 1

    def start_attempt(self, option: QuoteOption) -> AttemptRecord:
        number = self.attempt_count + 1
        attempt = AttemptRecord(
            attempt_number=number,
            option_id=option.option_id,
            carrier=option.carrier,
            idempotency_key=make_idempotency_key(self.session_id, option.option_id, number),
        )
        self.attempts.append(attempt)
        return attempt

    def succeed(self, attempt: AttemptRecord, booking: CarrierBooking, started: float) -> None:
        attempt.succeeded = True
        attempt.tracking_number = booking.tracking_number
        attempt.duration_ms = int((time.perf_counter() - started) * 1000)
        self.state = BookingState.SUCCEEDED

    def fail(self, attempt: AttemptRecord, error: CarrierError, started: float) -> None:
        attempt.error_code = error.code.value
        attempt.error_message = error.message
        attempt.recoverable = error.recoverable
        attempt.tracking_number = error.tracking_number
        attempt.stage = failure_stage(error)
        attempt.duration_ms = int((time.perf_counter() - started) * 1000)

    def to_dict(self) -> dict:
        return {
            "session_id": str(self.session_id),
            "state": self.state.value,
            "attempt_count": self.attempt_count,
            "fallback_used": self.fallback_used,
            "total_options_available": self.total_options,
            "attempted_option_ids": self.attempted_option_ids,
            "attempts": [attempt.to_dict() for attempt in self.attempts],
        }


class BookingOutcome:
    """Successful resolution."""

    def __init__(self, option: QuoteOption, booking: CarrierBooking, trail: BookingAttemptTrail):
        self.option = option
        self.booking = booking
        self.trail = trail

    @property
    def option_id(self) -> str:
        return self.option.option_id

    @property
    def tracking_number(self) -> str:
        return self.booking.tracking_number

    @property
    def attempt_number(self) -> int:
        return self.trail.attempt_count

    @property
    def fallback_used(self) -> bool:
        return self.trail.fallback_used

    @property
    def attempted_option_ids(self) -> List[str]:
        return self.trail.attempted_option_ids

    @property
    def fallback_info(self) -> dict:
        return {
            "attempt_number": self.attempt_number,
            "fallback_used": self.fallback_used,
            "total_options_available": self.trail.total_options,
            "attempted_option_ids": self.attempted_option_ids,
        }

    def to_dict(self) -> dict:
        return {
            "option_id": self.option_id,
            "carrier": self.booking.carrier,
            "tracking_number": self.tracking_number,
            "fallback_info": self.fallback_info,
        }


def fallback_order(options: List[QuoteOption], selected_option_id: str) -> List[QuoteOption]:
    """The selected option first, then the rest in ranked order."""
    selected = [o for o in options if o.option_id == selected_option_id]
    rest = [o for o in options if o.option_id != selected_option_id]
    return selected + rest


class BookingResolver:

    def __init__(
        self,
        adapters: CarrierAdapterRegistry,
        metrics: BookingMetrics = booking_metrics,
        max_attempts: Optional[int] = None,
        timeouts: Optional[Dict[str, float]] = None,
        default_timeout: Optional[float] = None,
    ):
        self.adapters = adapters
        self.metrics = metrics
        self.max_attempts = settings.BOOKING_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self.timeouts = settings.CARRIER_TIMEOUTS if timeouts is None else timeouts
        self.default_timeout = default_timeout or settings.CARRIER_DEFAULT_TIMEOUT_SECONDS

    def timeout_for(self, carrier: str) -> float:
        return self.timeouts.get(carrier.lower(), self.default_timeout)

    async def resolve(
        self,
        session_id: uuid.UUID,
        options: List[QuoteOption],
        selected_option_id: str,
        request: BookingRequest,
    ) -> BookingOutcome:
        """
        Book the selected option, falling back through the ranked list.

        Raises:
            NonRecoverableProviderError: stopped without fallback
            ExhaustedError: every allowed attempt failed recoverably
        """
        queue = fallback_order(options, selected_option_id)
        if self.max_attempts:
            queue = queue[:self.max_attempts]
        trail = BookingAttemptTrail(session_id, total_options=len(options))
        last_error: Optional[CarrierError] = None

        for index, option in enumerate(queue):
            attempt = trail.start_attempt(option)
            logger.info(
                f"Booking attempt {attempt.attempt_number} for session {session_id}: "
                f"{option.option_id} key={attempt.idempotency_key}"
            )

            started = time.perf_counter()
            try:
                adapter = self.adapters.get(option.carrier)
                self.metrics.record_attempt(option.carrier)
                booking = await asyncio.wait_for(
                    adapter.create_booking(request.for_option(option), attempt.idempotency_key),
                    timeout=self.timeout_for(option.carrier),
                )
            except Exception as e:
                error = classify_error(e, option.carrier)
                trail.fail(attempt, error, started)
                last_error = error

                if not error.recoverable:
                    trail.state = BookingState.FAILED_NON_RECOVERABLE
                    self.metrics.record_failure(attempt.stage, non_recoverable_stop=True)
                    logger.error(
                        f"Booking for session {session_id} stopped on {option.option_id}: "
                        f"{error.code.value} {error.message}"
                        + (f" (AWB {error.tracking_number})" if error.tracking_number else "")
                    )
                    raise NonRecoverableProviderError(
                        error.message,
                        trail=trail,
                        code=error.code,
                        carrier=error.carrier,
                        post_awb_issued=error.post_awb_issued,
                        tracking_number=error.tracking_number,
                        status_code=error.status_code,
                        details={**error.details, "attempted_option_ids": trail.attempted_option_ids},
                    ) from e

                has_next = index + 1 < len(queue)
                self.metrics.record_failure(attempt.stage, exhausted=not has_next)
                if has_next:
                    self.metrics.record_fallback(option.carrier, queue[index + 1].carrier)
                    logger.warning(
                        f"Booking attempt {attempt.attempt_number} on {option.option_id} failed "
                        f"({error.code.value}), falling back to {queue[index + 1].option_id}"
                    )
                continue

            trail.succeed(attempt, booking, started)
            self.metrics.record_success(option.carrier, attempt.attempt_number, trail.fallback_used)
            logger.info(
                f"Booked session {session_id} on {option.option_id} "
                f"AWB {booking.tracking_number} after {attempt.attempt_number} attempt(s)"
            )
            return BookingOutcome(option, booking, trail)

        trail.state = BookingState.EXHAUSTED
        logger.error(
            f"Booking for session {session_id} exhausted after {trail.attempt_count} attempt(s): "
            f"{trail.attempted_option_ids}"
        )
        raise ExhaustedError(
            f"All {trail.attempt_count} booking attempt(s) failed"
            + (f"; last error: {last_error.message}" if last_error else ""),
            last_error=last_error,
            trail=trail,
            attempted_option_ids=trail.attempted_option_ids,
        )
