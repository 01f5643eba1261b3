import asyncio
import uuid

import httpx
import pytest

from shipquote.core.exceptions import (
    CarrierError, ErrorCode, ExhaustedError, NonRecoverableProviderError,
    RecoverableProviderError,
)
from shipquote.core.metrics import FailureStage, booking_metrics
from shipquote.services.booking_resolver import (
    BookingResolver, BookingState, classify_error, failure_stage, fallback_order,
    make_idempotency_key,
)
from shipquote.services.carrier_adapters import BookingRequest, CarrierAdapterRegistry

from tests.factories import TENANT, ScriptedAdapter, make_option

SESSION_ID = uuid.UUID("6f1c1f44-3c44-4d7e-9a55-0c1d2b3a4f50")


def timeout_error(carrier):
    return RecoverableProviderError(f"{carrier} timed out", code=ErrorCode.SYS_TIMEOUT, carrier=carrier)


def unavailable_error(carrier):
    return RecoverableProviderError(
        f"{carrier} returned 503", code=ErrorCode.EXT_SERVICE_UNAVAILABLE, carrier=carrier
    )


class SlowAdapter:

    def __init__(self, carrier, delay):
        self.carrier = carrier
        self.delay = delay
        self.cancelled = False

    async def create_booking(self, request, idempotency_key):
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        raise AssertionError("slow adapter should have been timed out")


def setup(scripts, options=None, **resolver_kwargs):
    """Build a resolver over ScriptedAdapters sharing one call log."""
    calls = []
    adapters = CarrierAdapterRegistry([
        ScriptedAdapter(carrier, script, calls) for carrier, script in scripts.items()
    ])
    resolver_kwargs.setdefault("max_attempts", 0)
    resolver_kwargs.setdefault("timeouts", {})
    resolver = BookingResolver(adapters, **resolver_kwargs)
    if options is None:
        options = [make_option(f"opt-{carrier}") for carrier in scripts]
    return resolver, options, calls


def request():
    return BookingRequest(tenant_id=TENANT, order_id="order-1", quote_session_id=SESSION_ID)


def called_options(calls):
    return [option_id for option_id, _ in calls]


# ============================================
# FALLBACK
# ============================================

@pytest.mark.anyio
async def test_falls_back_through_ranked_options_until_success():
    resolver, options, calls = setup({
        "alpha": [timeout_error("alpha")],
        "beta": [unavailable_error("beta")],
        "gamma": ["AWB-GAMMA-77"],
    })
    before = booking_metrics.snapshot()

    outcome = await resolver.resolve(SESSION_ID, options, "opt-alpha", request())

    after = booking_metrics.snapshot()
    assert outcome.option_id == "opt-gamma"
    assert outcome.tracking_number == "AWB-GAMMA-77"
    assert outcome.attempt_number == 3
    assert outcome.fallback_used is True
    assert outcome.attempted_option_ids == ["opt-alpha", "opt-beta", "opt-gamma"]
    assert outcome.trail.state == BookingState.SUCCEEDED
    assert [a.error_code for a in outcome.trail.attempts] == [
        "SYS_TIMEOUT", "EXT_SERVICE_UNAVAILABLE", None,
    ]
    assert outcome.fallback_info == {
        "attempt_number": 3,
        "fallback_used": True,
        "total_options_available": 3,
        "attempted_option_ids": ["opt-alpha", "opt-beta", "opt-gamma"],
    }
    assert after["attempts"] - before["attempts"] == 3
    assert after["successes"] - before["successes"] == 1
    assert after["failures"] - before["failures"] == 2
    assert after["fallbacks"] - before["fallbacks"] == 2
    assert after["exhausted"] == before["exhausted"]


@pytest.mark.anyio
async def test_first_attempt_success_uses_no_fallback():
    resolver, options, calls = setup({"alpha": [], "beta": []})

    outcome = await resolver.resolve(SESSION_ID, options, "opt-alpha", request())

    assert outcome.attempt_number == 1
    assert outcome.fallback_used is False
    assert called_options(calls) == ["opt-alpha"]


@pytest.mark.anyio
async def test_next_call_after_failure_is_next_ranked_option():
    resolver, options, calls = setup({
        "alpha": [unavailable_error("alpha")],
        "beta": [],
        "gamma": [],
    })

    await resolver.resolve(SESSION_ID, options, "opt-alpha", request())

    assert called_options(calls) == ["opt-alpha", "opt-beta"]


@pytest.mark.anyio
async def test_selected_option_goes_first_then_ranked_order():
    resolver, options, calls = setup({
        "alpha": [unavailable_error("alpha")],
        "beta": [unavailable_error("beta")],
        "gamma": [],
    })

    outcome = await resolver.resolve(SESSION_ID, options, "opt-beta", request())

    assert called_options(calls) == ["opt-beta", "opt-alpha", "opt-gamma"]
    assert outcome.option_id == "opt-gamma"


def test_fallback_order():
    options = [make_option("opt-a"), make_option("opt-b"), make_option("opt-c")]

    assert [o.option_id for o in fallback_order(options, "opt-c")] == ["opt-c", "opt-a", "opt-b"]
    assert [o.option_id for o in fallback_order(options, "opt-z")] == ["opt-a", "opt-b", "opt-c"]


@pytest.mark.anyio
async def test_each_attempt_gets_its_own_idempotency_key():
    resolver, options, calls = setup({
        "alpha": [unavailable_error("alpha")],
        "beta": [],
    })

    await resolver.resolve(SESSION_ID, options, "opt-alpha", request())

    assert [key for _, key in calls] == [
        f"quote-{SESSION_ID}-opt-alpha-a1",
        f"quote-{SESSION_ID}-opt-beta-a2",
    ]
    assert make_idempotency_key(SESSION_ID, "opt-alpha", 1) == calls[0][1]


# ============================================
# STOPS
# ============================================

@pytest.mark.anyio
async def test_post_awb_failure_stops_without_fallback():
    post_awb = CarrierError(
        "label generation failed", code=ErrorCode.EXT_POST_AWB_FAILURE, tracking_number="AWB-ALPHA-9",
    )
    resolver, options, calls = setup({"alpha": [post_awb], "beta": []})
    before = booking_metrics.snapshot()

    with pytest.raises(NonRecoverableProviderError) as exc_info:
        await resolver.resolve(SESSION_ID, options, "opt-alpha", request())

    error = exc_info.value
    assert called_options(calls) == ["opt-alpha"]
    assert error.post_awb_issued is True
    assert error.tracking_number == "AWB-ALPHA-9"
    assert error.carrier == "alpha"
    assert error.trail.state == BookingState.FAILED_NON_RECOVERABLE
    assert error.trail.attempts[0].stage == FailureStage.AFTER_AWB
    assert error.details["attempted_option_ids"] == ["opt-alpha"]
    after = booking_metrics.snapshot()
    assert after["non_recoverable_stops"] - before["non_recoverable_stops"] == 1
    assert after["fallbacks"] == before["fallbacks"]


@pytest.mark.anyio
async def test_explicit_non_recoverable_error_stops():
    stop = NonRecoverableProviderError("account suspended", code=ErrorCode.EXT_COURIER_FAILURE)
    resolver, options, calls = setup({"alpha": [stop], "beta": []})

    with pytest.raises(NonRecoverableProviderError):
        await resolver.resolve(SESSION_ID, options, "opt-alpha", request())

    assert called_options(calls) == ["opt-alpha"]


@pytest.mark.anyio
async def test_rejected_booking_stops():
    rejected = CarrierError(
        "invalid consignee phone", code=ErrorCode.EXT_BOOKING_REJECTED, recoverable=False, status_code=400,
    )
    resolver, options, calls = setup({"alpha": [rejected], "beta": []})

    with pytest.raises(NonRecoverableProviderError) as exc_info:
        await resolver.resolve(SESSION_ID, options, "opt-alpha", request())

    assert exc_info.value.code == ErrorCode.EXT_BOOKING_REJECTED
    assert exc_info.value.post_awb_issued is False
    assert exc_info.value.trail.attempts[0].stage == FailureStage.BEFORE_AWB
    assert called_options(calls) == ["opt-alpha"]


@pytest.mark.anyio
async def test_unexpected_exception_is_non_recoverable():
    resolver, options, calls = setup({"alpha": [KeyError("awb")], "beta": []})

    with pytest.raises(NonRecoverableProviderError) as exc_info:
        await resolver.resolve(SESSION_ID, options, "opt-alpha", request())

    assert exc_info.value.code == ErrorCode.SYS_INTERNAL_ERROR
    assert isinstance(exc_info.value.__cause__, KeyError)
    assert called_options(calls) == ["opt-alpha"]


@pytest.mark.anyio
async def test_transient_looking_exception_falls_back():
    resolver, options, calls = setup({
        "alpha": [RuntimeError("upstream gateway timed out")],
        "beta": [],
    })

    outcome = await resolver.resolve(SESSION_ID, options, "opt-alpha", request())

    assert outcome.option_id == "opt-beta"


@pytest.mark.anyio
async def test_all_recoverable_failures_exhaust():
    resolver, options, calls = setup({
        "alpha": [timeout_error("alpha")],
        "beta": [unavailable_error("beta")],
    })
    before = booking_metrics.snapshot()

    with pytest.raises(ExhaustedError) as exc_info:
        await resolver.resolve(SESSION_ID, options, "opt-alpha", request())

    error = exc_info.value
    assert error.code == ErrorCode.BIZ_BOOKING_EXHAUSTED
    assert error.attempted_option_ids == ["opt-alpha", "opt-beta"]
    assert error.last_error.code == ErrorCode.EXT_SERVICE_UNAVAILABLE
    assert error.trail.state == BookingState.EXHAUSTED
    assert booking_metrics.snapshot()["exhausted"] - before["exhausted"] == 1
    assert error.to_dict()["trail"]["attempt_count"] == 2


@pytest.mark.anyio
async def test_max_attempts_caps_the_fallback_chain():
    resolver, options, calls = setup(
        {
            "alpha": [unavailable_error("alpha")],
            "beta": [unavailable_error("beta")],
            "gamma": [],
        },
        max_attempts=2,
    )

    with pytest.raises(ExhaustedError) as exc_info:
        await resolver.resolve(SESSION_ID, options, "opt-alpha", request())

    assert called_options(calls) == ["opt-alpha", "opt-beta"]
    assert exc_info.value.trail.total_options == 3


@pytest.mark.anyio
async def test_unregistered_carrier_keeps_trail_when_exhausted():
    options = [make_option("opt-alpha"), make_option("opt-ghost")]
    resolver, _, calls = setup({"alpha": [timeout_error("alpha")]}, options=options)
    before = booking_metrics.snapshot()

    with pytest.raises(ExhaustedError) as exc_info:
        await resolver.resolve(SESSION_ID, options, "opt-alpha", request())

    error = exc_info.value
    assert error.attempted_option_ids == ["opt-alpha", "opt-ghost"]
    assert error.last_error.carrier == "ghost"
    assert error.trail.attempts[-1].stage == FailureStage.BEFORE_AWB
    assert called_options(calls) == ["opt-alpha"]
    # Only the call that reached a carrier counts as an attempt
    assert booking_metrics.snapshot()["attempts"] - before["attempts"] == 1


@pytest.mark.anyio
async def test_unregistered_carrier_falls_back_to_next_option():
    options = [make_option("opt-ghost"), make_option("opt-beta")]
    resolver, _, calls = setup({"beta": ["AWB-BETA-9"]}, options=options)

    outcome = await resolver.resolve(SESSION_ID, options, "opt-ghost", request())

    assert outcome.option_id == "opt-beta"
    assert outcome.attempted_option_ids == ["opt-ghost", "opt-beta"]
    assert called_options(calls) == ["opt-beta"]


@pytest.mark.anyio
async def test_slow_carrier_times_out_and_falls_back():
    slow = SlowAdapter("slow", delay=5)
    calls = []
    registry = CarrierAdapterRegistry([slow, ScriptedAdapter("fast", [], calls)])
    resolver = BookingResolver(registry, max_attempts=0, timeouts={"slow": 0.05})
    options = [make_option("opt-slow"), make_option("opt-fast")]

    outcome = await resolver.resolve(SESSION_ID, options, "opt-slow", request())

    assert outcome.option_id == "opt-fast"
    assert outcome.trail.attempts[0].error_code == "SYS_TIMEOUT"
    assert slow.cancelled is True


# ============================================
# CLASSIFICATION
# ============================================

@pytest.mark.parametrize(
    "error,recoverable,code",
    [
        (asyncio.TimeoutError(), True, ErrorCode.SYS_TIMEOUT),
        (httpx.ReadTimeout("read timed out"), True, ErrorCode.SYS_TIMEOUT),
        (httpx.ConnectError("connection refused"), True, ErrorCode.EXT_SERVICE_UNAVAILABLE),
        (ValueError("bad payload"), False, ErrorCode.SYS_INTERNAL_ERROR),
        (RuntimeError("service unavailable"), True, ErrorCode.SYS_INTERNAL_ERROR),
        (CarrierError("oops", code=ErrorCode.EXT_SERVICE_ERROR), True, ErrorCode.EXT_SERVICE_ERROR),
        (CarrierError("oops", code=ErrorCode.SYS_INTERNAL_ERROR, status_code=502), True, ErrorCode.SYS_INTERNAL_ERROR),
        (CarrierError("oops", code=ErrorCode.SYS_INTERNAL_ERROR, status_code=409), False, ErrorCode.SYS_INTERNAL_ERROR),
    ],
)
def test_classify_error(error, recoverable, code):
    classified = classify_error(error, "alpha")

    assert classified.recoverable is recoverable
    assert classified.code == code
    assert classified.carrier == "alpha"


def test_awb_forces_non_recoverable():
    error = RecoverableProviderError("timed out after label", tracking_number="AWB-1")

    classified = classify_error(error, "alpha")

    assert classified.recoverable is False
    assert failure_stage(classified) == FailureStage.AFTER_AWB


def test_failure_stage_unknown_for_internal_errors():
    classified = classify_error(ValueError("bad payload"), "alpha")

    assert failure_stage(classified) == FailureStage.UNKNOWN
