import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path

from fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

from birrpay.core.context import PerformanceContext
from birrpay.storage.database import SQLiteDocumentStore

logger = logging.getLogger(__name__)

_store: SQLiteDocumentStore | None = None
_context: PerformanceContext | None = None


def get_context() -> PerformanceContext:
    """Get the current PerformanceContext. Raises if not initialized."""
    if _context is None:
        raise RuntimeError("Performance layer not initialized. Server lifespan has not started.")
    return _context


def get_store() -> SQLiteDocumentStore:
    """Get the current document store. Raises if not initialized."""
    if _store is None:
        raise RuntimeError("Document store not initialized. Server lifespan has not started.")
    return _store


def _reset_context() -> None:
    """Clear the module-level references. Used in tests."""
    global _store, _context  # noqa: PLW0603
    _store = None
    _context = None


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[dict]:
    """Open the store and run the performance layer for the server lifecycle."""
    global _store, _context  # noqa: PLW0603
    from birrpay.config import get_settings

    settings = get_settings()
    _store = SQLiteDocumentStore(settings.db_path)
    await _store.initialize()
    _context = PerformanceContext(_store, settings)
    _context.initialize()

    try:
        yield {"store": _store, "context": _context}
    finally:
        # Pending writes must reach the store before it closes.
        await _context.shutdown()
        await _store.close()
        _reset_context()
        logger.info("Document store closed")


mcp = FastMCP("birrpay-performance", lifespan=app_lifespan)


@mcp.custom_route("/health", methods=["GET"])
async def health_check(request: Request | None) -> JSONResponse:
    """Health snapshot for external pollers; 503 when not running or critical."""
    if _context is None:
        return JSONResponse({"status": "starting"}, status_code=503)
    snapshot = _context.get_health_status()
    status_code = 503 if snapshot.state == "critical" else 200
    return JSONResponse(snapshot.model_dump(mode="json"), status_code=status_code)


def setup_logging(log_level: str, data_dir: Path) -> None:
    """Configure logging with file rotation and console output.

    Args:
        log_level: Logging level string (DEBUG, INFO, WARNING, ERROR).
        data_dir: Base data directory; logs go to data_dir/logs/server.log.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Exact type check so FileHandler subclasses do not count as console handlers.
    if not any(type(h) is logging.StreamHandler for h in root_logger.handlers):
        console = logging.StreamHandler()
        console.setLevel(level)
        console.setFormatter(formatter)
        root_logger.addHandler(console)

    log_dir = data_dir / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "server.log"

    if not any(isinstance(h, RotatingFileHandler) for h in root_logger.handlers):
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=5 * 1024 * 1024,  # 5 MB
            backupCount=3,
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def initialize() -> FastMCP:
    """Set up directories, logging, and register tools. Returns the MCP server."""
    from birrpay.config import get_settings

    settings = get_settings()

    settings.data_dir.mkdir(parents=True, exist_ok=True)
    (settings.data_dir / "logs").mkdir(exist_ok=True)

    setup_logging(settings.log_level, settings.data_dir)

    from birrpay.tools.status import register_status_tools

    register_status_tools(mcp)

    logger.info("BirrPay performance server initialized")
    return mcp
