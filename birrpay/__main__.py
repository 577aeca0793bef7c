import logging

from birrpay.config import get_settings
from birrpay.server import initialize

logger = logging.getLogger("birrpay")

if __name__ == "__main__":  # pragma: no cover
    app = initialize()
    settings = get_settings()

    if settings.mcp_transport == "streamable-http":
        logger.info("Serving on http://%s:%d", settings.mcp_host, settings.mcp_port)
        app.run(
            transport="streamable-http",
            host=settings.mcp_host,
            port=settings.mcp_port,
        )
    else:
        app.run()
