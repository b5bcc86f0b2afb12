"""
HTTP callback endpoints for WebSub hubs.

The hub calls back on ``<base>/<token>``: a GET to verify a (un)subscription
and a POST to distribute new feed content.
"""

import asyncio
import logging

from aiohttp import web

from streamping.errors import HandlerInvocationError
from streamping.registry import DeliveryHandler, SubscriptionRegistry

logger = logging.getLogger(__name__)


class CallbackRouter:
    """Routes hub verification challenges and content pushes by correlation token."""

    def __init__(self, registry: SubscriptionRegistry, base_path: str = "/yt-pubsub"):
        """Initialize the router.

        Args:
            registry: Registry holding the subscriptions callbacks are routed to
            base_path: URL path the callback endpoints are mounted under
        """
        self.registry = registry
        self.base_path = "/" + base_path.strip("/") if base_path.strip("/") else ""
        self._handler_tasks: set[asyncio.Task] = set()
        self.deliveries_received = 0
        self.deliveries_unmatched = 0

    def routes(self) -> list[web.RouteDef]:
        path = f"{self.base_path}/{{token}}"
        return [
            web.get(path, self.handle_challenge),
            web.post(path, self.handle_delivery),
        ]

    def setup(self, app: web.Application):
        """Register the callback routes on an aiohttp application."""
        app.add_routes(self.routes())

    async def handle_challenge(self, request: web.Request) -> web.Response:
        """Answer a hub verification request by echoing ``hub.challenge``.

        Verification always succeeds, whether or not the token is known locally.
        """
        token = request.match_info["token"]
        mode = request.query.get("hub.mode")
        topic = request.query.get("hub.topic")
        lease = request.query.get("hub.lease_seconds")
        challenge = request.query.get("hub.challenge", "")

        logger.info(
            f"Received [{mode}] challenge for topic {topic} on token {token}. "
            f"Subscription lasts for [{lease}] seconds. Responding with challenge {challenge}."
        )

        if mode == "subscribe":
            lease_seconds = None
            if lease is not None:
                try:
                    lease_seconds = int(lease)
                except ValueError:
                    logger.warning(f"Invalid hub.lease_seconds {lease!r} for token {token}")
            if not await self.registry.mark_verified(token, lease_seconds):
                logger.debug(f"Challenge for unknown token {token}")

        return web.Response(status=200, text=challenge, content_type="text/plain")

    async def handle_delivery(self, request: web.Request) -> web.Response:
        """Accept a content push and hand it to the subscription's handler.

        Always answers 200 so application failures never make the hub retry.
        """
        token = request.match_info["token"]
        self.deliveries_received += 1

        try:
            payload = await request.text()
        except Exception:
            logger.exception(f"Failed to read delivery body for token {token}:")
            return web.Response(status=200)

        logger.debug(f"Processing feed for token {token}: {payload}")

        handler = await self.registry.take_handler(token)
        if handler is None:
            self.deliveries_unmatched += 1
            logger.warning(f"Received delivery for token {token} with no pending handler")
            return web.Response(status=200)

        task = asyncio.create_task(self._invoke(token, handler, payload))
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_tasks.discard)

        return web.Response(status=200)

    async def _invoke(self, token: str, handler: DeliveryHandler, payload: str):
        try:
            await handler(payload)
        except Exception as e:
            error = HandlerInvocationError(token, e)
            logger.error(str(error), exc_info=e)

    async def drain(self):
        """Wait for all dispatched handlers to finish."""
        while self._handler_tasks:
            await asyncio.gather(*list(self._handler_tasks), return_exceptions=True)
