"""aiohttp application: /v1/find-country and /healthz behind a rate limit."""

from __future__ import annotations

import ipaddress
import logging
import math
from typing import Any, Awaitable, Callable

from aiohttp import web

from geogate.errors import NotInitializedError
from geogate.service import GeoService, build_service

log = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def client_key(request: web.Request, trust_proxy: bool) -> str:
    """Rate-limit key for a request: first X-Forwarded-For hop or the peer."""
    if trust_proxy:
        xff = request.headers.get("X-Forwarded-For", "")
        if xff:
            first = xff.split(",")[0].strip()
            if first:
                return first
    return request.remote or "unknown"


def _header_number(value: float) -> str:
    return str(int(value)) if value.is_integer() else repr(value)


@web.middleware
async def rate_limit_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    service: GeoService = request.app["service"]
    limiter = service.limiter
    try:
        decision = service.admit(client_key(request, request.app["trust_proxy"]))
    except NotInitializedError:
        if request.path == "/healthz":
            return await handler(request)
        return web.json_response({"error": "Service not ready."}, status=503)

    headers = {
        "X-RateLimit-Limit": _header_number(limiter.refill_rate_per_second),
        "X-RateLimit-Burst": _header_number(limiter.capacity),
    }
    if not decision.allowed:
        headers["Retry-After"] = str(decision.retry_after_seconds)
        return web.json_response(
            {"error": "Rate limit exceeded."}, status=429, headers=headers
        )

    headers["X-RateLimit-Remaining"] = str(math.floor(decision.tokens_remaining))
    response = await handler(request)
    response.headers.update(headers)
    return response


async def healthz(request: web.Request) -> web.Response:
    service: GeoService = request.app["service"]
    return web.json_response({"status": "ok", "ready": service.ready})


async def find_country(request: web.Request) -> web.Response:
    query = request.query
    if len(query) != 1 or "ip" not in query:
        return web.json_response(
            {"error": "Query must contain exactly one 'ip' parameter"}, status=400
        )

    ip = query["ip"]
    try:
        ipaddress.IPv4Address(ip)
    except ValueError:
        return web.json_response({"error": "Must be a valid ipv4 address."}, status=400)

    service: GeoService = request.app["service"]
    try:
        record = service.lookup(ip)
    except Exception:
        log.exception("Lookup failed for %s", ip)
        return web.json_response(
            {"error": "Could not locate IP address, please try again later."}, status=500
        )

    if record is None:
        return web.json_response({"error": "IP not found."}, status=404)
    return web.json_response({"country": record.country, "city": record.city})


def create_app(config: dict[str, Any], service: GeoService | None = None) -> web.Application:
    app = web.Application(middlewares=[rate_limit_middleware])
    app["service"] = service if service is not None else build_service(config)
    app["trust_proxy"] = bool(config["http"]["trust_proxy"])

    async def on_startup(app: web.Application) -> None:
        await app["service"].initialize()
        log.info("Geolocation database ready: %d records", app["service"].index.size)

    async def on_cleanup(app: web.Application) -> None:
        log.info("Shutting down: disposing geolocation index")
        await app["service"].aclose()

    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)

    app.router.add_get("/v1/find-country", find_country)
    app.router.add_get("/healthz", healthz)
    return app
