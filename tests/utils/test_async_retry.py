import pytest

from nodeforge.utils.async_retry import async_retry


async def test_retries_until_success():
    attempts = []

    @async_retry(retries=3, delay=0, retry_on=(ConnectionError,))
    async def flaky() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionError("down")
        return "ok"

    assert await flaky() == "ok"
    assert len(attempts) == 3


async def test_gives_up_after_last_attempt():
    attempts = []

    @async_retry(retries=2, delay=0, noisy=True)
    async def broken() -> None:
        attempts.append(1)
        raise RuntimeError("still down")

    with pytest.raises(RuntimeError, match="still down"):
        await broken()
    assert len(attempts) == 2


async def test_unlisted_exceptions_are_not_retried():
    attempts = []

    @async_retry(retries=5, delay=0, retry_on=(ConnectionError,))
    async def wrong() -> None:
        attempts.append(1)
        raise KeyError("bad")

    with pytest.raises(KeyError):
        await wrong()
    assert len(attempts) == 1
