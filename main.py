"""Callmate entrypoint: one signed-in user's calling session plus its panel."""

import asyncio
import logging
import signal
import time

import aiohttp
from dotenv import load_dotenv

from callmate.api.gateway import CallGateway
from callmate.auth.tokens import TokenManager, TokenPair
from callmate.call.controller import CallController, CallTimings
from callmate.config import Settings
from callmate.signaling.transport import WebSocketSignaling
from callmate.web import create_app, start_webapp, stop_webapp

logger = logging.getLogger(__name__)

# Lifetime assumed for credentials passed in through the environment
_ENV_ACCESS_TTL = 15 * 60
_ENV_REFRESH_TTL = 30 * 24 * 3600


def _initial_tokens(settings: Settings) -> TokenPair | None:
    if not settings.access_token:
        return None
    if not settings.refresh_token:
        return TokenPair.from_jwt(settings.access_token)
    now = time.time()
    return TokenPair(
        access_token=settings.access_token,
        refresh_token=settings.refresh_token,
        access_expires_at=now + _ENV_ACCESS_TTL,
        refresh_expires_at=now + _ENV_REFRESH_TTL,
    )


async def main() -> None:
    load_dotenv()
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

    loop = asyncio.get_running_loop()
    shutdown = asyncio.Event()

    def on_session_expired() -> None:
        logger.warning("Session expired, signing out")
        shutdown.set()

    async with aiohttp.ClientSession() as http:
        tokens = TokenManager(settings.api_url, session=http)
        pair = _initial_tokens(settings)
        if pair is not None:
            tokens.store(pair)

        gateway = CallGateway(settings.api_url, session=http)
        transport = WebSocketSignaling(
            settings.signaling_url, session=http, credentials=tokens.get_token
        )
        controller = CallController(
            transport=transport,
            gateway=gateway,
            tokens=tokens,
            role=settings.role,
            loop=loop,
            timings=CallTimings(connection_timeout=settings.connection_timeout),
            on_session_expired=on_session_expired,
        )
        await controller.start(settings.user_id)

        app = create_app(controller, gateway, tokens)
        runner = await start_webapp(app, settings.web_host, settings.web_port)
        logger.info(
            "Call panel on http://%s:%d", settings.web_host, settings.web_port
        )

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown.set)
        try:
            await shutdown.wait()
            logger.info("Shutting down...")
        finally:
            await stop_webapp(runner)
            await controller.close()
            tokens.clear()


if __name__ == "__main__":
    asyncio.run(main())
