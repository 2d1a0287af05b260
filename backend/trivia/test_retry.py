import asyncio
from unittest import IsolatedAsyncioTestCase, TestCase

from backend.trivia.errors import TransientNetworkError, ValidationError
from backend.trivia.retry import RetryCancelled, exponential_backoff, fixed_delay, retry_with_backoff


class _Recorder:
    def __init__(self):
        self.sleeps = []

    async def __call__(self, seconds: float) -> None:
        self.sleeps.append(seconds)


class _Flaky:
    def __init__(self, failures, result="ok"):
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


class DelayPolicyTests(TestCase):
    def test_exponential_backoff_is_capped(self):
        delay = exponential_backoff(base=2.0, factor=1.5, cap=5.0)
        self.assertEqual([delay(n) for n in range(1, 6)], [0.0, 2.0, 3.0, 4.5, 5.0])

    def test_fixed_delay_skips_first_attempt(self):
        delay = fixed_delay(1.0)
        self.assertEqual([delay(n) for n in range(1, 4)], [0.0, 1.0, 1.0])


class RetryWithBackoffTests(IsolatedAsyncioTestCase):
    async def test_succeeds_after_transient_failures(self):
        sleep = _Recorder()
        op = _Flaky([TransientNetworkError("down"), TransientNetworkError("down")])

        result = await retry_with_backoff(op, max_attempts=3, delay=exponential_backoff(), sleep=sleep)

        self.assertEqual(result, "ok")
        self.assertEqual(op.calls, 3)
        self.assertEqual(sleep.sleeps, [2.0, 3.0])

    async def test_reraises_last_error_when_exhausted(self):
        last = TransientNetworkError("third")
        op = _Flaky([TransientNetworkError("first"), TransientNetworkError("second"), last])

        with self.assertRaises(TransientNetworkError) as ctx:
            await retry_with_backoff(op, max_attempts=3, delay=fixed_delay(1.0), sleep=_Recorder())

        self.assertIs(ctx.exception, last)
        self.assertEqual(op.calls, 3)

    async def test_non_retryable_errors_propagate_immediately(self):
        op = _Flaky([ValidationError("bad input")])

        with self.assertRaises(ValidationError):
            await retry_with_backoff(op, max_attempts=3, delay=fixed_delay(1.0), sleep=_Recorder())
        self.assertEqual(op.calls, 1)

    async def test_attempt_timeout_is_transient(self):
        async def slow():
            await asyncio.sleep(1)

        with self.assertRaises(TransientNetworkError):
            await retry_with_backoff(slow, max_attempts=1, delay=fixed_delay(0), timeout=0.01)

    async def test_cancel_event_stops_further_attempts(self):
        cancel = asyncio.Event()

        async def op():
            cancel.set()
            raise TransientNetworkError("down")

        with self.assertRaises(RetryCancelled):
            await retry_with_backoff(
                op, max_attempts=3, delay=fixed_delay(1.0), cancel_event=cancel, sleep=_Recorder()
            )

    async def test_rejects_zero_attempts(self):
        with self.assertRaises(ValueError):
            await retry_with_backoff(_Flaky([]), max_attempts=0, delay=fixed_delay(0))
