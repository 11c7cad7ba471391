"""Integration definition: handler tables plus a runnable HTTP host."""

from typing import Optional

import structlog

from .config import get_config
from .handlers import IntegrationHandlers
from .logging_config import setup_logging
from .serve import serve
from .server import ClientFactory, IntegrationServer, integration_handler

logger = structlog.get_logger("hookwire.dispatch")


class Integration:
    """An integration ready to be served.

    Usage:
        handlers = IntegrationHandlers(webhook=on_webhook)

        @handlers.action("createTicket")
        async def create_ticket(props): ...

        integration = Integration(handlers)
        integration.start()
    """

    def __init__(
        self,
        handlers: IntegrationHandlers,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.handlers = handlers
        self._client_factory = client_factory
        self._server: Optional[IntegrationServer] = None

    @property
    def handler(self) -> IntegrationServer:
        """The request handler, built (and tables frozen) on first access."""
        if self._server is None:
            self._server = integration_handler(self.handlers, client_factory=self._client_factory)
        return self._server

    def start(self, port: Optional[int] = None) -> None:
        """Configure logging from settings and serve until interrupted."""
        setup_logging()
        config = get_config()
        config.validate()
        setup_logging(config)

        logger.info("integration_starting", port=port or config.server_port)
        serve(self.handler, host=config.server_host, port=port or config.server_port)
