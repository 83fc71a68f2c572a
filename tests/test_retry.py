import pytest

from cloud_errors import MfaTimeoutError
from cloud_retry import RetryExhausted, bounded_poll, bounded_retry
from fakes import FakeClock


class Flaky(Exception):
    pass


# Test intent: retryable failures are retried with a fixed backoff until the operation succeeds.
def test_bounded_retry_succeeds_after_transient_failures():
    clock = FakeClock()
    outcomes = [Flaky("1"), Flaky("2"), "done"]

    def op(attempt):
        result = outcomes[attempt - 1]
        if isinstance(result, Exception):
            raise result
        return result

    assert bounded_retry(op, lambda e: isinstance(e, Flaky), max_attempts=5, backoff=1.0, sleep=clock.sleep) == "done"
    assert clock.sleeps == [1.0, 1.0]


# Test intent: a non-retryable error escapes on the first attempt without sleeping.
def test_bounded_retry_propagates_non_retryable():
    clock = FakeClock()
    calls = []

    def op(attempt):
        calls.append(attempt)
        raise KeyError("fatal")

    with pytest.raises(KeyError):
        bounded_retry(op, lambda e: isinstance(e, Flaky), sleep=clock.sleep)
    assert calls == [1]
    assert clock.sleeps == []


# Test intent: exhausting the budget raises RetryExhausted carrying the attempt count and
# the last error, with no sleep after the final attempt.
def test_bounded_retry_exhausted():
    clock = FakeClock()

    def op(attempt):
        raise Flaky(f"attempt {attempt}")

    with pytest.raises(RetryExhausted) as exc:
        bounded_retry(op, lambda e: True, max_attempts=3, backoff=2.0, sleep=clock.sleep)
    assert exc.value.attempts == 3
    assert str(exc.value.last_error) == "attempt 3"
    assert clock.sleeps == [2.0, 2.0]


# Test intent: the poll deadline is fixed up front; once the next interval would pass it
# the loop stops and raises the caller's timeout error.
def test_bounded_poll_times_out():
    clock = FakeClock()
    probes = []

    def probe(n):
        probes.append(n)
        return "pending"

    with pytest.raises(MfaTimeoutError):
        bounded_poll(probe, lambda r: r == "done", interval=3, timeout=10,
                     on_timeout=lambda: MfaTimeoutError("late"), clock=clock, sleep=clock.sleep)
    assert probes == [1, 2, 3, 4]
    assert clock.sleeps == [3, 3, 3]


# Test intent: polling returns the first result accepted by is_done and honours max_polls.
def test_bounded_poll_done_and_max_polls():
    clock = FakeClock()
    results = iter(["pending", "pending", "approved"])
    assert bounded_poll(lambda n: next(results), lambda r: r != "pending", interval=1,
                        clock=clock, sleep=clock.sleep) == "approved"

    with pytest.raises(TimeoutError):
        bounded_poll(lambda n: "pending", lambda r: False, interval=1, timeout=1000, max_polls=2,
                     clock=clock, sleep=clock.sleep)


# Test intent: a budget below one attempt is rejected before the operation runs.
def test_bounded_retry_rejects_empty_budget():
    calls = []
    with pytest.raises(ValueError):
        bounded_retry(calls.append, lambda e: True, max_attempts=0)
    assert calls == []


# Test intent: a single-attempt budget gives up at once without sleeping.
def test_bounded_retry_single_attempt():
    clock = FakeClock()

    def op(attempt):
        raise Flaky("only")

    with pytest.raises(RetryExhausted) as exc:
        bounded_retry(op, lambda e: True, max_attempts=1, sleep=clock.sleep)
    assert exc.value.attempts == 1
    assert clock.sleeps == []
