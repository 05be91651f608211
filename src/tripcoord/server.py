"""HTTP and WebSocket adapter over :class:`TripCoordinator`.

Identity is taken from trusted headers set by the upstream auth provider
(``X-Actor-Id`` / ``X-Actor-Role``); this module never authenticates.
Bodies and responses are camelCase JSON.  Every
:class:`~tripcoord.exceptions.TripCoordError` maps to a status code and a
``{"error", "message", "reason"?}`` body.

Usage::

    app = create_app(coordinator)
    web.run_app(app, host=config.http_host, port=config.http_port)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from aiohttp import WSMsgType, web
from pydantic import BaseModel, ValidationError

from tripcoord._constants import ACTOR_ID_HEADER, ACTOR_ROLE_HEADER
from tripcoord._redact import redact_for_log
from tripcoord.coordinator import TripCoordinator
from tripcoord.exceptions import (
    AlreadyAbsentError,
    AlreadyActiveError,
    NotAtStopError,
    NotEligibleError,
    NotFoundError,
    StoreUnavailableError,
    TripCoordError,
    TripEndedError,
    UnauthorizedError,
)
from tripcoord.models._base import TripCoordModel, UtcDatetime
from tripcoord.models.identity import Actor, Role
from tripcoord.models.route import GeoPoint
from tripcoord.publisher import LiveViewPublisher, Subscription

_logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

COORDINATOR_KEY = web.AppKey("coordinator", TripCoordinator)
PUBLISHER_KEY = web.AppKey("publisher", LiveViewPublisher)

RETRY_AFTER_SECONDS = 1


class BadRequestError(TripCoordError):
    """Malformed request body or query."""

    kind = "bad_request"


class UnauthenticatedError(TripCoordError):
    """Identity headers missing or unusable."""

    kind = "unauthenticated"


_STATUS_BY_ERROR: tuple[tuple[type[TripCoordError], int], ...] = (
    (BadRequestError, 400),
    (UnauthenticatedError, 401),
    (UnauthorizedError, 403),
    (NotFoundError, 404),
    (AlreadyActiveError, 409),
    (TripEndedError, 409),
    (NotAtStopError, 409),
    (AlreadyAbsentError, 409),
    (NotEligibleError, 422),
    (StoreUnavailableError, 503),
)


def status_for(exc: TripCoordError) -> int:
    """HTTP status for a library error; unknown subclasses map to 500."""
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


def error_response(exc: TripCoordError) -> web.Response:
    body: dict[str, Any] = {"error": exc.kind, "message": str(exc)}
    if isinstance(exc, NotEligibleError):
        body["reason"] = exc.reason.value
    headers = {"Retry-After": str(RETRY_AFTER_SECONDS)} if exc.retryable else None
    return web.json_response(body, status=status_for(exc), headers=headers)


# ----------------------------------------------------------------------
# Request bodies
# ----------------------------------------------------------------------


class _StartTripBody(TripCoordModel):
    position: GeoPoint | None = None


class _PositionBody(TripCoordModel):
    position: GeoPoint
    observed_at: UtcDatetime | None = None


class _ArriveBody(TripCoordModel):
    stop_id: str


class _RiderSignalBody(TripCoordModel):
    stop_id: str
    rider_id: str | None = None


def actor_from_request(request: web.Request) -> Actor:
    identity = request.headers.get(ACTOR_ID_HEADER, "").strip()
    role = request.headers.get(ACTOR_ROLE_HEADER, "").strip().lower()
    if not identity or not role:
        raise UnauthenticatedError(f"{ACTOR_ID_HEADER} and {ACTOR_ROLE_HEADER} headers are required")
    try:
        return Actor(identity=identity, role=Role(role))
    except ValueError as exc:
        raise UnauthenticatedError(f"Unknown role {role!r}") from exc


async def _read_body(request: web.Request, model: type[M]) -> M:
    if request.can_read_body:
        try:
            raw = await request.json()
        except ValueError as exc:
            # Covers malformed JSON and bodies that are not valid UTF-8.
            raise BadRequestError(f"Invalid JSON body: {exc}") from exc
    else:
        raw = {}
    if not isinstance(raw, dict):
        raise BadRequestError("JSON body must be an object")
    _logger.debug("%s %s body=%s", request.method, request.path, redact_for_log(raw))
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        raise BadRequestError(f"Invalid request body: {exc.error_count()} error(s)") from exc


def _coordinator(request: web.Request) -> TripCoordinator:
    return request.app[COORDINATOR_KEY]


def _wire(model: TripCoordModel | None) -> dict[str, Any] | None:
    return model.to_wire() if model is not None else None


@web.middleware
async def error_middleware(
    request: web.Request,
    handler: Callable[[web.Request], Awaitable[web.StreamResponse]],
) -> web.StreamResponse:
    try:
        return await handler(request)
    except TripCoordError as exc:
        if isinstance(exc, StoreUnavailableError):
            _logger.warning("%s %s failed: %s", request.method, request.path, exc)
        else:
            _logger.debug("%s %s rejected (%s): %s", request.method, request.path, exc.kind, exc)
        return error_response(exc)


# ----------------------------------------------------------------------
# Handlers
# ----------------------------------------------------------------------


async def start_trip(request: web.Request) -> web.Response:
    actor = actor_from_request(request)
    body = await _read_body(request, _StartTripBody)
    trip = await _coordinator(request).start_trip(actor, request.match_info["carrier_id"], body.position)
    return web.json_response(trip.to_wire(), status=201)


async def get_active_trip(request: web.Request) -> web.Response:
    actor_from_request(request)
    trip = await _coordinator(request).get_active_trip(request.match_info["carrier_id"])
    return web.json_response({"trip": _wire(trip)})


async def get_trip(request: web.Request) -> web.Response:
    actor_from_request(request)
    trip = await _coordinator(request).get_trip(request.match_info["trip_id"])
    return web.json_response(trip.to_wire())


async def update_position(request: web.Request) -> web.Response:
    actor = actor_from_request(request)
    body = await _read_body(request, _PositionBody)
    trip = await _coordinator(request).update_position(
        actor, request.match_info["trip_id"], body.position, body.observed_at
    )
    return web.json_response(trip.to_wire())


async def arrive_at_stop(request: web.Request) -> web.Response:
    actor = actor_from_request(request)
    body = await _read_body(request, _ArriveBody)
    trip = await _coordinator(request).arrive_at_stop(actor, request.match_info["trip_id"], body.stop_id)
    return web.json_response(trip.to_wire())


async def depart_stop(request: web.Request) -> web.Response:
    actor = actor_from_request(request)
    trip = await _coordinator(request).depart_stop(actor, request.match_info["trip_id"])
    return web.json_response(trip.to_wire())


async def end_trip(request: web.Request) -> web.Response:
    actor = actor_from_request(request)
    trip = await _coordinator(request).end_trip(actor, request.match_info["trip_id"])
    return web.json_response(trip.to_wire())


async def request_wait(request: web.Request) -> web.Response:
    actor = actor_from_request(request)
    body = await _read_body(request, _RiderSignalBody)
    signal = await _coordinator(request).request_wait(
        actor, request.match_info["trip_id"], body.rider_id or actor.identity, body.stop_id
    )
    return web.json_response(signal.to_wire())


async def check_wait_eligibility(request: web.Request) -> web.Response:
    actor = actor_from_request(request)
    stop_id = request.query.get("stopId")
    if not stop_id:
        raise BadRequestError("stopId query parameter is required")
    eligibility = await _coordinator(request).check_wait_eligibility(
        actor,
        request.match_info["trip_id"],
        request.query.get("riderId") or actor.identity,
        stop_id,
    )
    return web.json_response(eligibility.to_wire())


async def mark_absent(request: web.Request) -> web.Response:
    actor = actor_from_request(request)
    body = await _read_body(request, _RiderSignalBody)
    absence = await _coordinator(request).mark_absent(
        actor, request.match_info["trip_id"], body.rider_id or actor.identity, body.stop_id
    )
    return web.json_response(absence.to_wire())


async def route_status(request: web.Request) -> web.Response:
    actor_from_request(request)
    trip_id = request.match_info["trip_id"]
    coordinator = _coordinator(request)
    stop_id = request.query.get("stopId")
    if stop_id:
        statuses = [await coordinator.stop_status(trip_id, stop_id)]
    else:
        statuses = await coordinator.route_status(trip_id)
    return web.json_response({"tripId": trip_id, "stops": [status.to_wire() for status in statuses]})


async def _pump(ws: web.WebSocketResponse, subscription: Subscription) -> None:
    try:
        async for update in subscription:
            await ws.send_json(update.to_wire())
    except ConnectionResetError:
        _logger.debug("Live socket for trip %s went away mid-send", subscription.trip_id)
    finally:
        await ws.close()


async def live_feed(request: web.Request) -> web.WebSocketResponse:
    """Stream :class:`~tripcoord.models.status.LiveUpdate` JSON frames.

    Subscription errors surface as plain HTTP errors before the upgrade.
    Client messages are ignored; the socket closes after the trip ends.
    """
    actor = actor_from_request(request)
    subscription = await request.app[PUBLISHER_KEY].subscribe(actor, request.match_info["trip_id"])
    ws = web.WebSocketResponse(heartbeat=30.0)
    try:
        await ws.prepare(request)
    except BaseException:
        await subscription.close()
        raise

    pump = asyncio.create_task(_pump(ws, subscription))
    try:
        async for msg in ws:
            if msg.type == WSMsgType.ERROR:
                _logger.debug("Live socket error for trip %s: %s", subscription.trip_id, ws.exception())
    finally:
        await subscription.close()
        with contextlib.suppress(asyncio.CancelledError):
            await pump
    return ws


# ----------------------------------------------------------------------
# Application
# ----------------------------------------------------------------------


def create_app(coordinator: TripCoordinator, *, publisher: LiveViewPublisher | None = None) -> web.Application:
    """Build the aiohttp application serving *coordinator*."""
    app = web.Application(middlewares=[error_middleware])
    app[COORDINATOR_KEY] = coordinator
    app[PUBLISHER_KEY] = publisher or LiveViewPublisher(coordinator)

    app.router.add_post("/carriers/{carrier_id}/trips", start_trip)
    app.router.add_get("/carriers/{carrier_id}/trips/active", get_active_trip)
    app.router.add_get("/trips/{trip_id}", get_trip)
    app.router.add_post("/trips/{trip_id}/position", update_position)
    app.router.add_post("/trips/{trip_id}/arrive", arrive_at_stop)
    app.router.add_post("/trips/{trip_id}/depart", depart_stop)
    app.router.add_post("/trips/{trip_id}/end", end_trip)
    app.router.add_post("/trips/{trip_id}/wait", request_wait)
    app.router.add_get("/trips/{trip_id}/wait/eligibility", check_wait_eligibility)
    app.router.add_post("/trips/{trip_id}/absent", mark_absent)
    app.router.add_get("/trips/{trip_id}/status", route_status)
    app.router.add_get("/trips/{trip_id}/live", live_feed)

    async def _close_publisher(app: web.Application) -> None:
        await app[PUBLISHER_KEY].close()

    app.on_shutdown.append(_close_publisher)
    return app


def run(coordinator: TripCoordinator) -> None:
    """Serve *coordinator* on ``config.http_host:config.http_port`` until interrupted."""
    config = coordinator.config
    _logger.info("Serving tripcoord on %s:%d", config.http_host, config.http_port)
    web.run_app(create_app(coordinator), host=config.http_host, port=config.http_port, print=None)
