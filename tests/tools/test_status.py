"""Tests for birrpay.tools.status: health, quota and flush MCP tools."""

from unittest.mock import patch

import pytest
from fastmcp import Client, FastMCP

from birrpay.core.context import PerformanceContext
from birrpay.tools.status import register_status_tools
from tests.factories import RecordingStore, make_settings


@pytest.fixture
async def ctx():
    context = PerformanceContext(
        RecordingStore(always_fail={"bad"}),
        make_settings(quota_read_limit=1000, quota_write_limit=100),
        memory_reader=lambda: 64.0,
    )
    yield context
    await context.shutdown()


@pytest.fixture
def status_mcp(ctx):
    test_mcp = FastMCP("test")
    ctx_patch = patch("birrpay.tools.status.get_context", return_value=ctx)
    ctx_patch.start()
    register_status_tools(test_mcp)
    yield test_mcp
    ctx_patch.stop()


class TestHealthStatusTool:
    async def test_shows_state_and_scores(self, status_mcp):
        async with Client(status_mcp) as client:
            result = await client.call_tool("health_status", {})
        text = str(result)
        assert "Health: healthy" in text
        assert "memory" in text
        assert "Memory: 64 MB" in text

    async def test_shows_pending_writes(self, status_mcp, ctx):
        await ctx.queue_write("users", "u1", {"a": 1})
        async with Client(status_mcp) as client:
            result = await client.call_tool("health_status", {})
        assert "Pending writes: 1 in 1 batches" in str(result)


class TestQuotaStatusTool:
    async def test_shows_usage(self, status_mcp, ctx):
        ctx.quota.record_read(250)
        async with Client(status_mcp) as client:
            result = await client.call_tool("quota_status", {})
        text = str(result)
        assert "Quota mode: normal" in text
        assert "Reads: 250/1,000 (25.0%, 750 left)" in text
        assert "Writes: 0/100" in text
        assert "Deletes: 0/20,000" in text
        assert "Per second: 250 reads" in text

    async def test_shows_emergency_mode(self, status_mcp, ctx):
        ctx.quota.record_write(95)
        async with Client(status_mcp) as client:
            result = await client.call_tool("quota_status", {})
        assert "Quota mode: emergency" in str(result)


class TestPerformanceStatsTool:
    async def test_returns_nested_counters(self, status_mcp, ctx):
        await ctx.cached_get("users", "missing")
        async with Client(status_mcp) as client:
            result = await client.call_tool("performance_stats", {})
        data = result.data
        assert data["store_reads"] == 1
        assert data["quota"]["reads"]["used"] == 1
        assert "hit_rate" in data["cache"]


class TestFlushWritesTool:
    async def test_nothing_pending(self, status_mcp):
        async with Client(status_mcp) as client:
            result = await client.call_tool("flush_writes", {})
        assert "No pending writes." in str(result)

    async def test_reports_committed_and_failed(self, status_mcp, ctx):
        await ctx.queue_write("users", "good", {"a": 1})
        await ctx.queue_write("users", "bad", {"a": 2})
        async with Client(status_mcp) as client:
            result = await client.call_tool("flush_writes", {})
        text = str(result)
        assert "Flushed 1 batches: 1 committed, 1 failed." in text
        assert "users/bad" in text
