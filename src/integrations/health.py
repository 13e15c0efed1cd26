"""
HTTP health listener for the notification worker.

Runs on the worker's event loop and answers independently of broker
connectivity, so orchestrators can tell "process alive" (/health) from
"consuming" (/ready).
"""

import logging
from typing import Callable, Optional

from aiohttp import web

logger = logging.getLogger(__name__)


class HealthServer:
    """Serves /health and /ready on the configured port."""

    def __init__(
        self,
        port: int,
        is_queue_connected: Callable[[], bool],
        environment: str = 'dev',
        host: str = '0.0.0.0'
    ):
        """
        Initialize health listener.

        Args:
            port: TCP port to listen on
            is_queue_connected: Callable reporting whether the consumer is live
            environment: Deployment environment reported in responses
            host: Interface to bind
        """
        self._port = port
        self._host = host
        self._environment = environment
        self._is_queue_connected = is_queue_connected
        self._runner: Optional[web.AppRunner] = None

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get('/health', self.handle_health)
        app.router.add_get('/ready', self.handle_ready)
        return app

    async def handle_health(self, request: web.Request) -> web.Response:
        """Liveness: always 200 while the process runs."""
        return web.json_response({
            'status': 'healthy',
            'environment': self._environment,
            'queueConnected': self._is_queue_connected()
        })

    async def handle_ready(self, request: web.Request) -> web.Response:
        """Readiness: 200 only while the queue consumer is connected."""
        connected = self._is_queue_connected()
        return web.json_response(
            {'ready': connected, 'queueConnected': connected},
            status=200 if connected else 503
        )

    async def start(self) -> None:
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()

        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()

        logger.info(f"Successfully started the health listener on PORT : {self._port}")

    async def stop(self) -> None:
        if self._runner is None:
            return
        await self._runner.cleanup()
        self._runner = None
        logger.info("Health listener stopped")
