"""Tests for reconnect backoff."""
import pytest

from mcp_netops import errors
from mcp_netops.utils.connection import retry_async, wait_jittered_exponential

from fakes import RecordingSleep, make_settings


class TestBackoff:
    """Delay schedule of wait_jittered_exponential."""

    def test_exponential_without_jitter(self):
        wait = wait_jittered_exponential(base=1, factor=2, cap=30, jitter=0)
        assert [wait.delay_for(n) for n in range(1, 7)] == [1, 2, 4, 8, 16, 30]

    def test_never_exceeds_cap(self):
        wait = wait_jittered_exponential(base=1, factor=2, cap=30, jitter=0.2, rng=lambda: 1.0)
        assert wait.delay_for(5) == pytest.approx(19.2)
        assert wait.delay_for(6) == 30
        assert wait.delay_for(20) == 30

    def test_jitter_bounds(self):
        low = wait_jittered_exponential(base=2, jitter=0.2, rng=lambda: 0.0)
        high = wait_jittered_exponential(base=2, jitter=0.2, rng=lambda: 1.0)
        assert low.delay_for(1) == pytest.approx(1.6)
        assert high.delay_for(1) == pytest.approx(2.4)

    def test_from_settings(self):
        wait = wait_jittered_exponential.from_settings(make_settings(backoff_base=0.5, backoff_cap=3))
        assert [wait.delay_for(n) for n in (1, 2, 3, 4)] == [0.5, 1.0, 2.0, 3]


class TestRetryAsync:
    """Bounded retries around an awaitable."""

    @pytest.mark.asyncio
    async def test_returns_after_transient_failures(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionResetError("reset by peer")
            return "ok"

        sleep = RecordingSleep()
        result = await retry_async(flaky, 5, wait_jittered_exponential(jitter=0), sleep=sleep)

        assert result == "ok"
        assert len(calls) == 3
        assert sleep.delays == [1, 2]

    @pytest.mark.asyncio
    async def test_reraises_last_error(self):
        async def down():
            raise errors.ConnectionError("unreachable", device="edge-1")

        sleep = RecordingSleep()
        with pytest.raises(errors.ConnectionError, match="unreachable"):
            await retry_async(down, 3, wait_jittered_exponential(jitter=0), sleep=sleep)
        assert len(sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_non_retryable_error_is_immediate(self):
        calls = []

        async def bad():
            calls.append(1)
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            await retry_async(bad, 5, wait_jittered_exponential(jitter=0), sleep=RecordingSleep())
        assert len(calls) == 1
