import pytest

from backend.app.core.retry import backoff_delay, with_retry


class Flaky:
    def __init__(self, failures, exc_type=RuntimeError):
        self.failures = failures
        self.exc_type = exc_type
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc_type(f"failure {self.calls}")
        return "ok"


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def test_backoff_delay_grows_exponentially_with_bounded_jitter():
    for attempt in range(4):
        delay = backoff_delay(attempt, 1.0)
        assert 2 ** attempt <= delay <= 2 ** attempt + 1


@pytest.mark.asyncio
async def test_with_retry_returns_after_transient_failures():
    fn = Flaky(failures=2)
    sleep = RecordingSleep()

    result = await with_retry(fn, max_attempts=4, base_delay=1.0, sleep=sleep)

    assert result == "ok"
    assert fn.calls == 3
    assert len(sleep.delays) == 2
    assert 1 <= sleep.delays[0] <= 2
    assert 2 <= sleep.delays[1] <= 3


@pytest.mark.asyncio
async def test_with_retry_reraises_last_error_after_max_attempts():
    fn = Flaky(failures=10)
    sleep = RecordingSleep()

    with pytest.raises(RuntimeError, match="failure 4"):
        await with_retry(fn, max_attempts=4, base_delay=0.5, sleep=sleep)

    assert fn.calls == 4
    assert len(sleep.delays) == 3


@pytest.mark.asyncio
async def test_with_retry_does_not_retry_unlisted_errors():
    fn = Flaky(failures=1, exc_type=KeyError)
    sleep = RecordingSleep()

    with pytest.raises(KeyError):
        await with_retry(fn, max_attempts=4, retry_on=(ValueError,), sleep=sleep)

    assert fn.calls == 1
    assert sleep.delays == []


@pytest.mark.asyncio
@pytest.mark.parametrize("max_attempts", [0, 1])
async def test_with_retry_single_attempt_raises_without_sleeping(max_attempts):
    fn = Flaky(failures=1)
    sleep = RecordingSleep()

    with pytest.raises(RuntimeError, match="failure 1"):
        await with_retry(fn, max_attempts=max_attempts, sleep=sleep)

    assert fn.calls == 1
    assert sleep.delays == []
