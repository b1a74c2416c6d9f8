import asyncio

import pytest

from payfirst.errors import SignatureMismatch, ValidationError
from payfirst.services import pending_store
from payfirst.services.callbacks import CallbackOutcome, CallbackReceiver, DuitkuCallback

from .conftest import signed_callback

ORDER_ID = "PAYF-1700000000000-AB12CD"


@pytest.fixture
def receiver(settings, session_factory):
    return CallbackReceiver(settings, session_factory)


async def _status(session_factory, order_id=ORDER_ID):
    async with session_factory() as db:
        pending = await pending_store.find_pending(db, merchant_order_id=order_id)
    return pending.status if pending else None


async def test_success_callback_completes_pending(receiver, session_factory, make_pending):
    await make_pending()

    outcome = await receiver.handle(DuitkuCallback(**signed_callback(ORDER_ID)))

    assert outcome == CallbackOutcome.APPLIED
    assert await _status(session_factory) == "COMPLETED"


async def test_replayed_callbacks_are_no_ops(receiver, session_factory, make_pending):
    await make_pending()
    payload = DuitkuCallback(**signed_callback(ORDER_ID))

    outcomes = [await receiver.handle(payload) for _ in range(4)]

    assert outcomes == [CallbackOutcome.APPLIED] + [CallbackOutcome.UNCHANGED] * 3
    assert await _status(session_factory) == "COMPLETED"


async def test_failed_result_code(receiver, session_factory, make_pending):
    await make_pending()
    outcome = await receiver.handle(DuitkuCallback(**signed_callback(ORDER_ID, result_code="01")))
    assert outcome == CallbackOutcome.APPLIED
    assert await _status(session_factory) == "FAILED"


async def test_completed_is_never_downgraded(receiver, session_factory, make_pending):
    await make_pending()
    await receiver.handle(DuitkuCallback(**signed_callback(ORDER_ID)))

    outcome = await receiver.handle(DuitkuCallback(**signed_callback(ORDER_ID, result_code="01")))

    assert outcome == CallbackOutcome.CONFLICT
    assert await _status(session_factory) == "COMPLETED"


async def test_bad_signature_changes_nothing(receiver, session_factory, make_pending):
    await make_pending()
    payload = signed_callback(ORDER_ID)
    payload["signature"] = "0" * 32

    with pytest.raises(SignatureMismatch):
        await receiver.handle(DuitkuCallback(**payload))
    assert await _status(session_factory) == "PENDING"


async def test_signature_from_another_key_is_rejected(receiver, session_factory, make_pending):
    await make_pending()
    payload = signed_callback(ORDER_ID, api_key="someone-elses-key")
    with pytest.raises(SignatureMismatch):
        await receiver.handle(DuitkuCallback(**payload))


async def test_tampered_amount_is_rejected(receiver, make_pending):
    await make_pending()
    payload = signed_callback(ORDER_ID)
    payload["amount"] = "1000"
    with pytest.raises(SignatureMismatch):
        await receiver.handle(DuitkuCallback(**payload))


async def test_missing_fields(receiver):
    with pytest.raises(ValidationError):
        await receiver.handle(DuitkuCallback(merchantCode="DS24219", signature="abc"))


async def test_orphan_callback(receiver):
    outcome = await receiver.handle(DuitkuCallback(**signed_callback("PAYF-0-NOPE00")))
    assert outcome == CallbackOutcome.ORPHAN


async def test_amount_mismatch_is_ignored(receiver, session_factory, make_pending, caplog):
    await make_pending(amount=150000)

    outcome = await receiver.handle(DuitkuCallback(**signed_callback(ORDER_ID)))

    assert outcome == CallbackOutcome.IGNORED
    assert await _status(session_factory) == "PENDING"
    assert "Anomaly" in caplog.text


async def test_course_mismatch_is_ignored(receiver, session_factory, make_pending):
    await make_pending()
    outcome = await receiver.handle(DuitkuCallback(**signed_callback(ORDER_ID, course_id="other-course")))
    assert outcome == CallbackOutcome.IGNORED
    assert await _status(session_factory) == "PENDING"


async def test_unknown_result_code_leaves_pending(receiver, session_factory, make_pending):
    await make_pending()
    outcome = await receiver.handle(DuitkuCallback(**signed_callback(ORDER_ID, result_code="02")))
    assert outcome == CallbackOutcome.IGNORED
    assert await _status(session_factory) == "PENDING"


async def test_callback_fills_missing_reference(receiver, session_factory, make_pending):
    await make_pending(reference=None)

    await receiver.handle(DuitkuCallback(**signed_callback(ORDER_ID, reference="DS2421924LATE01")))

    async with session_factory() as db:
        pending = await pending_store.find_pending(db, reference="DS2421924LATE01")
    assert pending.status == "COMPLETED"


async def test_racing_callbacks_apply_one_transition(receiver, session_factory, make_pending):
    await make_pending()
    payloads = [
        DuitkuCallback(**signed_callback(ORDER_ID, result_code="00" if i % 2 == 0 else "01"))
        for i in range(12)
    ]

    outcomes = await asyncio.gather(*[receiver.handle(payload) for payload in payloads])

    assert outcomes.count(CallbackOutcome.APPLIED) == 1
    assert set(outcomes) <= {CallbackOutcome.APPLIED, CallbackOutcome.UNCHANGED, CallbackOutcome.CONFLICT}
    assert await _status(session_factory) in ("COMPLETED", "FAILED")
