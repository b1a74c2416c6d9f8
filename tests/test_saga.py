from payfirst.services.saga import Saga


async def test_compensations_run_in_reverse_order():
    saga = Saga("registration", "PAYF-1-AAAAAA")
    calls = []

    async def undo(name):
        calls.append(name)

    saga.add_compensation("first", lambda: undo("first"))
    saga.add_compensation("second", lambda: undo("second"))

    assert await saga.compensate()
    assert calls == ["second", "first"]
    assert saga.statuses("first") == ["compensated"]
    assert saga.pending_compensations == []


async def test_compensation_is_retried_then_reported():
    saga = Saga("registration", "PAYF-1-AAAAAA", max_compensation_attempts=3)
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 2:
            raise RuntimeError("identity provider timeout")

    async def broken():
        raise RuntimeError("still down")

    saga.add_compensation("identity_signup", flaky)
    saga.add_compensation("other", broken)

    assert await saga.compensate() is False
    assert len(attempts) == 2
    assert saga.statuses("identity_signup") == ["compensated"]
    assert saga.statuses("other") == ["compensation_failed"]


async def test_discarded_compensations_do_not_run():
    saga = Saga("registration", "PAYF-1-AAAAAA")
    calls = []

    async def undo():
        calls.append(1)

    saga.add_compensation("identity_signup", undo)
    saga.discard_compensations()

    assert await saga.compensate()
    assert calls == []
