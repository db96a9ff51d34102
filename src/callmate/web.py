"""Call control panel: aiohttp-based presentation layer."""

from __future__ import annotations

import logging

import aiohttp_jinja2
import jinja2
from aiohttp import web

from callmate.api.gateway import CallGateway
from callmate.auth.tokens import TokenManager
from callmate.call.controller import CallController
from callmate.call.errors import (
    CallInProgressError,
    GatewayError,
    InitiationError,
    map_call_error,
)
from callmate.call.state import CallerType

logger = logging.getLogger(__name__)

_controller_key = web.AppKey("controller", CallController)
_gateway_key = web.AppKey("gateway", CallGateway)
_tokens_key = web.AppKey("tokens", TokenManager)


_FORM_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


def _is_form(request: web.Request) -> bool:
    return request.method == "POST" and request.content_type in _FORM_TYPES


def _state(request: web.Request) -> web.Response:
    """Answer with the current snapshot, or back to the panel for form posts."""
    if _is_form(request):
        raise web.HTTPSeeOther(location="/")
    controller = request.app[_controller_key]
    return web.json_response(controller.snapshot().to_json())


def _render_panel(
    request: web.Request, *, form_error: str | None = None, status: int = 200
) -> web.Response:
    controller = request.app[_controller_key]
    context = {
        "snapshot": controller.snapshot(),
        "caller_types": [str(t) for t in CallerType],
        "form_error": form_error,
    }
    return aiohttp_jinja2.render_template(
        "call.html", request, context, status=status
    )


def _refuse(request: web.Request, message: str, status: int) -> web.Response:
    """Form posts get the panel back with the message; API clients get JSON."""
    if _is_form(request):
        return _render_panel(request, form_error=message, status=status)
    return web.json_response({"message": message}, status=status)


async def _panel_handler(request: web.Request) -> web.Response:
    return _render_panel(request)


async def _state_handler(request: web.Request) -> web.Response:
    return _state(request)


async def _initiate_handler(request: web.Request) -> web.Response:
    controller = request.app[_controller_key]
    if request.content_type == "application/json":
        try:
            data = await request.json()
        except ValueError:
            return web.json_response({"message": "Invalid JSON body"}, status=400)
        if not isinstance(data, dict):
            return web.json_response({"message": "Expected a JSON object"}, status=400)
    else:
        data = dict(await request.post())
    booking_id = str(data.get("bookingId", "")).strip()
    raw_type = str(data.get("callerType", "")).strip()
    if not booking_id:
        return _refuse(request, "bookingId is required", 400)
    try:
        caller_type = CallerType(raw_type)
    except ValueError:
        return _refuse(request, "callerType must be user or provider", 400)

    try:
        await controller.initiate_call(booking_id, caller_type)
    except CallInProgressError as exc:
        return _refuse(request, str(exc), 409)
    return _state(request)


async def _accept_handler(request: web.Request) -> web.Response:
    await request.app[_controller_key].accept_call()
    return _state(request)


async def _reject_handler(request: web.Request) -> web.Response:
    await request.app[_controller_key].reject_call()
    return _state(request)


async def _end_handler(request: web.Request) -> web.Response:
    await request.app[_controller_key].end_call()
    return _state(request)


async def _history_handler(request: web.Request) -> web.Response:
    gateway = request.app[_gateway_key]
    tokens = request.app[_tokens_key]
    booking_id = request.match_info["booking_id"]

    token = await tokens.get_token()
    if token is None:
        return web.json_response({"message": "Session expired"}, status=401)
    try:
        entries = await gateway.fetch_history(booking_id, token)
    except InitiationError as exc:
        return web.json_response(
            {"message": map_call_error(exc.code), "errorCode": exc.code}, status=403
        )
    except GatewayError as exc:
        logger.warning("Call history unavailable: %s", exc)
        return web.json_response({"message": "Call history unavailable"}, status=502)

    calls = [
        {
            "bookingId": e.booking_id,
            "callerType": e.caller_type,
            "callerId": e.caller_id,
            "status": e.status,
            "duration": e.duration,
            "createdAt": e.created_at,
        }
        for e in entries
    ]
    return web.json_response({"calls": calls})


def create_app(
    controller: CallController,
    gateway: CallGateway,
    tokens: TokenManager,
) -> web.Application:
    app = web.Application()
    aiohttp_jinja2.setup(
        app,
        loader=jinja2.PackageLoader("callmate"),
        autoescape=jinja2.select_autoescape(),
    )
    app[_controller_key] = controller
    app[_gateway_key] = gateway
    app[_tokens_key] = tokens
    app.router.add_get("/", _panel_handler)
    app.router.add_get("/call", _state_handler)
    app.router.add_post("/call", _initiate_handler)
    app.router.add_post("/call/accept", _accept_handler)
    app.router.add_post("/call/reject", _reject_handler)
    app.router.add_post("/call/end", _end_handler)
    app.router.add_get("/history/{booking_id}", _history_handler)
    return app


async def start_webapp(app: web.Application, host: str, port: int) -> web.AppRunner:
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    return runner


async def stop_webapp(runner: web.AppRunner) -> None:
    await runner.cleanup()
