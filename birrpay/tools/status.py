"""MCP tools for inspecting and nudging the performance layer."""

import logging

from fastmcp import FastMCP

from birrpay.server import get_context

logger = logging.getLogger(__name__)


def register_status_tools(mcp: FastMCP) -> None:
    """Register health, quota, and batching tools on the MCP server."""

    @mcp.tool
    async def health_status() -> str:
        """Show the current health score and per-component sub-scores.

        Returns:
            Formatted health summary.
        """
        snapshot = get_context().get_health_status()
        s = snapshot.scores
        lines = [
            f"Health: {snapshot.state} ({snapshot.score:.1f}/100)",
            f"  cache {s.cache:.0f} | memory {s.memory:.0f} | "
            f"quota {s.quota:.0f} | pool {s.pool:.0f}",
            f"  Cache: {snapshot.cache.size}/{snapshot.cache.max_size} entries, "
            f"{snapshot.cache.hit_rate * 100:.0f}% hit rate",
            f"  Pending writes: {snapshot.batcher.queue_depth} in "
            f"{snapshot.batcher.pending_batches} batches",
            f"  Pool: {snapshot.pool.active}/{snapshot.pool.size} slots in use, "
            f"{snapshot.pool.fallbacks} fallbacks",
            f"  Memory: {snapshot.memory_mb:.0f} MB",
        ]
        return "\n".join(lines)

    @mcp.tool
    async def quota_status() -> str:
        """Show today's document store usage, current rates and quota mode.

        Returns:
            Formatted quota usage.
        """
        status = get_context().get_quota_status()
        lines = [f"Quota mode: {status.mode}"]
        usages = (("Reads", status.reads), ("Writes", status.writes), ("Deletes", status.deletes))
        for label, usage in usages:
            lines.append(
                f"  {label}: {usage.used:,}/{usage.limit:,} "
                f"({usage.pct:.1f}%, {usage.remaining:,} left)"
            )
        lines.append(
            f"  Per second: {status.reads_per_second} reads, "
            f"{status.writes_per_second} writes, {status.deletes_per_second} deletes"
        )
        lines.append(f"  Window resets at {status.window_resets_at:%Y-%m-%d %H:%M} UTC")
        return "\n".join(lines)

    @mcp.tool
    async def performance_stats() -> dict:
        """Return cumulative counters for cache, batcher, pool, quota and monitor.

        Returns:
            Nested statistics as JSON.
        """
        return get_context().get_stats().model_dump(mode="json")

    @mcp.tool
    async def flush_writes() -> str:
        """Commit every pending write batch now.

        Returns:
            Summary of committed and failed items.
        """
        results = await get_context().flush_writes()
        if not results:
            return "No pending writes."
        committed = sum(len(r.committed) for r in results)
        failed = [f"{r.collection}/{doc_id}" for r in results for doc_id in r.failed_ids]
        text = f"Flushed {len(results)} batches: {committed} committed, {len(failed)} failed."
        if failed:
            text += "\nFailed: " + ", ".join(failed)
        logger.info(text)
        return text
