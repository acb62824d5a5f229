"""
HTTP service exposing the swap operations.

The caller identity comes from the ``X-HTLC-Caller`` header. Putting
something in front of the service that authenticates callers and sets this
header is the deployment's job; the service itself trusts it.

Engine calls block on storage and on event sinks, so handlers run them in
the default executor and keep the event loop free for other requests.
"""

import asyncio
from contextlib import nullcontext
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from aiohttp import web

from .auth import CallerAuthorizer
from .engine import HTLCEngine
from .errors import HTLCError
from .models import SwapStatus

logger = structlog.get_logger()

CALLER_HEADER = "X-HTLC-Caller"

ENGINE_KEY = web.AppKey("engine", HTLCEngine)
AUTHORIZER_KEY = web.AppKey("authorizer", CallerAuthorizer)
LEDGER_KEY = web.AppKey("ledger", object)

ERROR_STATUS = {
    "swap_not_found": 404,
    "unauthorized": 403,
    "duplicate_swap": 409,
    "already_settled": 409,
}


def _error_response(code: str, message: str, status: int) -> web.Response:
    return web.json_response({"error": code, "message": message}, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Turn swap errors into JSON bodies with a stable error code."""
    try:
        return await handler(request)
    except HTLCError as e:
        status = ERROR_STATUS.get(e.code, 400)
        logger.info(
            "Request rejected", path=request.path, error=e.code, status=status
        )
        return _error_response(e.code, e.message, status)
    except ValueError as e:
        return _error_response("invalid_request", str(e), 400)


async def _run(request: web.Request, func, *args, **kwargs):
    """Run a blocking engine call in the executor, acting as the request's caller."""
    caller = request.headers.get(CALLER_HEADER)
    authorizer = request.app[AUTHORIZER_KEY]

    def call():
        with authorizer.acting_as(caller) if caller else nullcontext():
            return func(*args, **kwargs)

    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, call)


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise ValueError("Request body must be JSON") from None
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


def _as_int(value: Any) -> Any:
    """Accept integers sent as decimal strings; anything else is left to the engine."""
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return value
    return value


def _require(body: dict[str, Any], *fields: str) -> list[Any]:
    missing = [f for f in fields if f not in body]
    if missing:
        raise ValueError(f"Missing fields: {', '.join(missing)}")
    return [body[f] for f in fields]


def _swap_view(engine: HTLCEngine, swap_id: str) -> dict[str, Any]:
    record = engine.get_swap(swap_id)
    return {
        **record.model_dump(mode="json"),
        "escrowed": engine.escrowed_amount(swap_id),
    }


async def health_handler(request: web.Request) -> web.Response:
    """Handle health check requests."""
    return web.json_response({
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "htlc-engine",
    })


async def initiate_handler(request: web.Request) -> web.Response:
    body = await _json_body(request)
    sender, receiver, asset, amount, hashlock, timelock = _require(
        body, "sender", "receiver", "asset", "amount", "hashlock", "timelock"
    )
    for name, value in (("sender", sender), ("receiver", receiver), ("asset", asset)):
        if not isinstance(value, str) or not value:
            raise ValueError(f"{name} must be a non-empty string")
    engine = request.app[ENGINE_KEY]

    swap_id = await _run(
        request,
        engine.initiate,
        sender=sender,
        receiver=receiver,
        asset=asset,
        amount=_as_int(amount),
        hashlock=hashlock,
        timelock=_as_int(timelock),
    )

    view = await _run(request, _swap_view, engine, swap_id.hex())
    return web.json_response(view, status=201)


async def list_handler(request: web.Request) -> web.Response:
    status = request.query.get("status")
    try:
        limit = int(request.query.get("limit", "50"))
    except ValueError:
        raise ValueError("limit must be an integer") from None
    if limit < 1:
        raise ValueError("limit must be at least 1")

    records = await _run(
        request,
        request.app[ENGINE_KEY].list_swaps,
        status=SwapStatus(status) if status else None,
        limit=limit,
    )
    return web.json_response({"swaps": [r.model_dump(mode="json") for r in records]})


async def get_handler(request: web.Request) -> web.Response:
    view = await _run(
        request, _swap_view, request.app[ENGINE_KEY], request.match_info["swap_id"]
    )
    return web.json_response(view)


async def claim_handler(request: web.Request) -> web.Response:
    body = await _json_body(request)
    (preimage_hex,) = _require(body, "preimage")
    try:
        preimage = bytes.fromhex(preimage_hex)
    except (TypeError, ValueError):
        raise ValueError("preimage must be hex") from None

    swap_id = request.match_info["swap_id"]
    engine = request.app[ENGINE_KEY]
    await _run(request, engine.claim, swap_id, preimage)

    return web.json_response(await _run(request, _swap_view, engine, swap_id))


async def refund_handler(request: web.Request) -> web.Response:
    swap_id = request.match_info["swap_id"]
    engine = request.app[ENGINE_KEY]
    await _run(request, engine.refund, swap_id)

    return web.json_response(await _run(request, _swap_view, engine, swap_id))


async def balance_handler(request: web.Request) -> web.Response:
    ledger = request.app[LEDGER_KEY]
    if ledger is None:
        raise web.HTTPNotFound()
    account = request.match_info["account"]
    asset = request.match_info["asset"]
    return web.json_response({
        "account": account,
        "asset": asset,
        "balance": await _run(request, ledger.balance_of, account, asset),
    })


def create_app(
    engine: HTLCEngine, authorizer: CallerAuthorizer, ledger: Optional[Any] = None
) -> web.Application:
    """Build the aiohttp application around an engine."""
    app = web.Application(middlewares=[error_middleware])
    app[ENGINE_KEY] = engine
    app[AUTHORIZER_KEY] = authorizer
    app[LEDGER_KEY] = ledger

    app.router.add_get("/health", health_handler)
    app.router.add_post("/swaps", initiate_handler)
    app.router.add_get("/swaps", list_handler)
    app.router.add_get("/swaps/{swap_id}", get_handler)
    app.router.add_post("/swaps/{swap_id}/claim", claim_handler)
    app.router.add_post("/swaps/{swap_id}/refund", refund_handler)
    app.router.add_get("/balances/{account}/{asset}", balance_handler)
    return app


class SwapServer:
    """Runs the swap HTTP service."""

    def __init__(
        self,
        engine: HTLCEngine,
        authorizer: CallerAuthorizer,
        ledger: Optional[Any] = None,
        host: str = "127.0.0.1",
        port: int = 8080,
    ):
        """Initialize swap server."""
        self.host = host
        self.port = port
        self.app = create_app(engine, authorizer, ledger)
        self.runner = None
        self.site = None

    async def start(self):
        """Start the server."""
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, self.host, self.port)
        await self.site.start()
        logger.info("Swap server started", host=self.host, port=self.port)

    async def stop(self):
        """Stop the server."""
        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()
        logger.info("Swap server stopped")
