"""Tests for the command executor."""
import asyncio

import pytest

from mcp_netops import errors
from mcp_netops.executor import CommandExecutor
from mcp_netops.session_pool import SessionPool

from fakes import (
    FakeNetwork,
    IOSSim,
    JunosSim,
    NXOSSim,
    IOS_CONFIG,
    JUNOS_CONFIG,
    NXOS_CONFIG,
    make_credentials,
    make_device,
    make_settings,
)


class TestExecute:
    """Single commands and output parsing."""

    @pytest.fixture
    def network(self):
        return FakeNetwork(**{
            "core-1": IOSSim("core-1", IOS_CONFIG),
            "nx-1": NXOSSim("nx-1", NXOS_CONFIG),
            "edge-1": JunosSim("edge-1", JUNOS_CONFIG),
        })

    @pytest.fixture
    def executor(self, network):
        return CommandExecutor(SessionPool(make_credentials(), make_settings(), transport_factory=network))

    @pytest.mark.asyncio
    async def test_execute_returns_clean_output(self, executor):
        result = await executor.execute(make_device("core-1", "cisco_ios"), "show clock")

        assert result.success
        assert result.output == "*10:15:01.123 UTC Mon Oct 19 2026"
        assert result.structured is None
        assert result.device_id == "core-1"
        assert result.elapsed_ms >= 0

    @pytest.mark.asyncio
    async def test_named_parser(self, executor):
        result = await executor.execute(make_device("edge-1", "juniper_junos"), "show version", parser="version")
        assert result.structured["version"] == "21.4R3.15"

    @pytest.mark.asyncio
    async def test_parser_mismatch_falls_back_to_raw(self, executor):
        result = await executor.execute(make_device("nx-1", "cisco_nxos"), "show clock", parser="interfaces")

        assert result.success
        assert result.structured is None
        assert "UTC" in result.output

    @pytest.mark.asyncio
    async def test_device_error_is_a_result(self, executor):
        result = await executor.execute(make_device("core-1", "cisco_ios"), "show bogus")

        assert not result.success
        assert result.error.startswith("% Invalid input")
        assert "Invalid input" in result.output

    @pytest.mark.asyncio
    async def test_session_released_after_execute(self, executor):
        device = make_device("edge-1", "juniper_junos")
        await executor.execute(device, "show version")
        stats = executor.pool.stats("edge-1")
        assert stats["in_use"] == 0
        assert stats["idle"] == 1


class TestTimeouts:
    """Timeouts and cancellation leave the session unusable."""

    @pytest.fixture
    def sim(self):
        sim = IOSSim("core-1", IOS_CONFIG)
        sim.hang_on.add("show tech-support")
        return sim

    @pytest.fixture
    def network(self, sim):
        return FakeNetwork(**{"core-1": sim})

    @pytest.fixture
    def executor(self, network):
        return CommandExecutor(SessionPool(make_credentials(), make_settings(), transport_factory=network))

    @pytest.mark.asyncio
    async def test_timeout_raises_and_discards_session(self, executor, network):
        device = make_device("core-1", "cisco_ios")

        with pytest.raises(errors.CommandTimeout) as exc_info:
            await executor.execute(device, "show tech-support", timeout=0.05)

        assert exc_info.value.details == {"command": "show tech-support", "timeout": 0.05}
        assert exc_info.value.to_dict()["code"] == "NETWORK_COMMAND_ERROR"
        assert network.transports[0].closed
        assert executor.pool.stats("core-1")["idle"] == 0

        # The next call gets a fresh session
        result = await executor.execute(device, "show clock")
        assert result.success
        assert len(network.transports) == 2

    @pytest.mark.asyncio
    async def test_cancellation_discards_session(self, executor, network):
        device = make_device("core-1", "cisco_ios", timeout=5)
        task = asyncio.create_task(executor.execute(device, "show tech-support"))
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert network.transports[0].closed
        assert executor.pool.stats("core-1")["idle"] == 0


class TestBatch:
    """Ordered batches, fail-fast and best-effort."""

    @pytest.fixture
    def sim(self):
        sim = IOSSim("core-1", IOS_CONFIG)
        sim.reject.add("show bogus")
        return sim

    @pytest.fixture
    def executor(self, sim):
        network = FakeNetwork(**{"core-1": sim})
        return CommandExecutor(SessionPool(make_credentials(), make_settings(), transport_factory=network))

    @pytest.mark.asyncio
    async def test_batch_runs_in_order_on_one_session(self, executor, sim):
        batch = await executor.execute_batch(
            make_device("core-1", "cisco_ios"),
            ["show clock", "show version", "show ip interface brief"],
            parser="version",
        )

        assert batch.success
        assert [r.command for r in batch.results] == ["show clock", "show version", "show ip interface brief"]
        assert batch.results[1].structured["version"] == "15.2(7)E4"
        assert sim.received[-3:] == ["show clock", "show version", "show ip interface brief"]
        assert executor.pool.stats("core-1")["opened"] == 1

    @pytest.mark.asyncio
    async def test_batch_fails_fast(self, executor, sim):
        batch = await executor.execute_batch(
            make_device("core-1", "cisco_ios"),
            ["show clock", "show bogus", "show version"],
        )

        assert not batch.success
        assert len(batch.results) == 2
        assert batch.failed[0].command == "show bogus"
        assert batch.skipped == ["show version"]
        assert "show version" not in sim.received

    @pytest.mark.asyncio
    async def test_best_effort_runs_everything(self, executor):
        batch = await executor.execute_batch(
            make_device("core-1", "cisco_ios"),
            ["show bogus", "show clock"],
            best_effort=True,
        )

        assert [r.success for r in batch.results] == [False, True]
        assert batch.skipped == []
        assert not batch.success
        assert batch.to_dict()["best_effort"] is True
