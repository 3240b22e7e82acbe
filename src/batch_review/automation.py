"""Local automation control plane: a loopback HTTP API over the Batch queue.

External tooling may read the queues, add changes to Batch and clear it.
Nothing here can vote or submit: the app is built from AutomationCallbacks
alone and never sees the submission gateway.
"""

from __future__ import annotations

import asyncio
import ipaddress
import json
import logging
import socket
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import Any

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from batch_review.config import AutomationSettings
from batch_review.models import ReviewItem, ServerState, Severity, severity_from_confidence
from batch_review.state import transition

logger = logging.getLogger(__name__)

AVAILABLE_ENDPOINTS = [
    "GET /health",
    "GET /batch",
    "POST /batch",
    "DELETE /batch",
    "GET /incoming",
]

_STARTUP_TIMEOUT_SECONDS = 5.0


class ServerStartError(Exception):
    """The listener could not be bound or failed during startup."""


class ServerAlreadyStartingError(ServerStartError):
    """start() was called while another start() is still binding."""


@dataclass
class AutomationCallbacks:
    get_batch: Callable[[], list[ReviewItem]]
    get_incoming: Callable[[], list[ReviewItem]]
    add_to_batch: Callable[[list[str], dict[str, Severity]], Awaitable[Any]]
    clear_batch: Callable[[], Awaitable[Any]]


def is_loopback(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


# ------------------------------------------------------------------
# Request validation
# ------------------------------------------------------------------


def _reject(reason: str, status_code: int = 400) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"error": "Invalid request", "reason": reason})


def _check_id(value: Any, settings: AutomationSettings, what: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise _reject(f"{what} must be a non-empty string")
    if len(value) > settings.max_id_length:
        raise _reject(f"{what} exceeds {settings.max_id_length} characters")
    return value


def parse_score(value: Any) -> Severity:
    """A severity token, or a legacy integer confidence from 1 to 10."""
    if isinstance(value, bool):
        raise ValueError("score must be a severity or an integer from 1 to 10")
    if isinstance(value, int):
        return severity_from_confidence(value)
    if isinstance(value, str):
        try:
            return Severity(value)
        except ValueError:
            valid = ", ".join(s.value for s in Severity)
            raise ValueError(f"unknown severity {value!r}; expected one of {valid}") from None
    raise ValueError("score must be a severity or an integer from 1 to 10")


def parse_add_request(payload: Any, settings: AutomationSettings) -> tuple[list[str], dict[str, Severity]]:
    """Validate a POST /batch body. Any bad entry rejects the whole request."""
    if not isinstance(payload, dict):
        raise _reject("body must be a JSON object")
    change_ids = payload.get("changeIDs")
    if not isinstance(change_ids, list):
        raise _reject("changeIDs must be an array of strings")
    if len(change_ids) > settings.max_ids:
        raise _reject(f"at most {settings.max_ids} changeIDs per request")
    ids = [_check_id(value, settings, "each changeID") for value in change_ids]

    raw_scores = payload.get("scores")
    if raw_scores is None:
        return ids, {}
    if not isinstance(raw_scores, dict):
        raise _reject("scores must be an object mapping changeID to severity")
    severities: dict[str, Severity] = {}
    for key, value in raw_scores.items():
        _check_id(key, settings, "each score key")
        try:
            severities[key] = parse_score(value)
        except ValueError as e:
            raise _reject(f"score for {key!r}: {e}")
    return ids, severities


async def _read_body(request: Request, limit: int) -> bytes:
    declared = request.headers.get("content-length")
    if declared is not None:
        try:
            declared_length = int(declared)
        except ValueError:
            raise _reject("invalid Content-Length")
        if declared_length > limit:
            raise _reject(f"body exceeds {limit} bytes", status_code=413)
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            raise _reject(f"body exceeds {limit} bytes", status_code=413)
    return bytes(body)


# ------------------------------------------------------------------
# App
# ------------------------------------------------------------------


def _dump(items: list[ReviewItem]) -> list[dict]:
    return [item.model_dump(mode="json") for item in items]


def create_automation_app(callbacks: AutomationCallbacks, settings: AutomationSettings) -> FastAPI:
    """Create the FastAPI app for the automation control plane."""
    app = FastAPI(title="Batch Review Automation", version="0.1.0", docs_url=None, redoc_url=None, openapi_url=None)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code in (404, 405):
            return JSONResponse(
                {"error": "Not found", "availableEndpoints": AVAILABLE_ENDPOINTS},
                status_code=404,
            )
        detail = exc.detail if isinstance(exc.detail, dict) else {"error": str(exc.detail)}
        return JSONResponse(detail, status_code=exc.status_code)

    @app.get("/health")
    async def api_health():
        return JSONResponse({"status": "ok"})

    @app.get("/batch")
    async def api_get_batch():
        return JSONResponse({"batch": _dump(callbacks.get_batch())})

    @app.get("/incoming")
    async def api_get_incoming():
        return JSONResponse({"incoming": _dump(callbacks.get_incoming())})

    @app.post("/batch")
    async def api_add_to_batch(request: Request):
        body = await _read_body(request, settings.max_body_bytes)
        try:
            payload = json.loads(body.decode("utf-8")) if body else None
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise _reject("body is not valid JSON")
        ids, severities = parse_add_request(payload, settings)
        await callbacks.add_to_batch(ids, severities)
        logger.info("Automation added %d change(s) to batch", len(ids))
        return JSONResponse({"success": True, "batch": _dump(callbacks.get_batch())})

    @app.delete("/batch")
    async def api_clear_batch():
        await callbacks.clear_batch()
        logger.info("Automation cleared the batch")
        return JSONResponse({"success": True, "batch": _dump(callbacks.get_batch())})

    return app


# ------------------------------------------------------------------
# Lifecycle
# ------------------------------------------------------------------


class AutomationServer:
    """Single in-process listener with a stopped/starting/running lifecycle."""

    def __init__(
        self,
        callbacks: AutomationCallbacks,
        settings: AutomationSettings,
        on_state_change: Callable[[ServerState, int | None], Any] | None = None,
    ) -> None:
        if not is_loopback(settings.host):
            raise ValueError(
                f"Automation server must bind to a loopback address. Got: {settings.host!r}"
            )
        self.settings = settings
        self.app = create_automation_app(callbacks, settings)
        self.on_state_change = on_state_change
        self.state = ServerState.STOPPED
        self.port: int | None = None
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task | None = None
        self._socket: socket.socket | None = None

    @property
    def running(self) -> bool:
        return self.state == ServerState.RUNNING

    def _set_state(self, to: ServerState) -> None:
        self.state = transition(self.state, to)
        logger.info("Automation server %s%s", to.value, f" on port {self.port}" if self.port else "")
        if self.on_state_change is not None:
            self.on_state_change(self.state, self.port)

    def _bind(self) -> socket.socket:
        host = "127.0.0.1" if self.settings.host == "localhost" else self.settings.host
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, self.settings.port))
        except OSError:
            sock.close()
            raise
        return sock

    async def start(self) -> int:
        """Bind and serve. Returns the bound port."""
        if self.state == ServerState.RUNNING and self.port is not None:
            return self.port
        if self.state == ServerState.STARTING:
            raise ServerAlreadyStartingError("Automation server is already starting")

        self._set_state(ServerState.STARTING)
        try:
            sock = self._bind()
        except OSError as exc:
            self._set_state(ServerState.STOPPED)
            raise ServerStartError(
                f"Could not bind {self.settings.host}:{self.settings.port}: {exc}"
            ) from exc

        config = uvicorn.Config(self.app, log_level="warning", lifespan="off", access_log=False)
        server = uvicorn.Server(config)
        self._socket = sock
        self._server = server
        self._task = asyncio.create_task(server.serve(sockets=[sock]), name="automation-server")
        try:
            await self._wait_started(server, self._task)
        except ServerStartError as exc:
            if self._server is not server:
                raise ServerStartError("Automation server was stopped during startup") from exc
            await self._teardown()
            if self.state != ServerState.STOPPED:
                self._set_state(ServerState.STOPPED)
            raise
        # stop() may have run while uvicorn was finishing its startup.
        if self._server is not server or self.state != ServerState.STARTING:
            raise ServerStartError("Automation server was stopped during startup")

        self.port = sock.getsockname()[1]
        self._set_state(ServerState.RUNNING)
        return self.port

    async def _wait_started(self, server: uvicorn.Server, task: asyncio.Task) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + _STARTUP_TIMEOUT_SECONDS
        while not server.started:
            if task.done():
                raise ServerStartError("Automation server exited during startup")
            if loop.time() >= deadline:
                raise ServerStartError("Automation server did not start in time")
            await asyncio.sleep(0.01)

    async def stop(self) -> None:
        """Close the listener. No-op when not running."""
        if self.state == ServerState.STOPPED:
            return
        await self._teardown()
        self.port = None
        if self.state != ServerState.STOPPED:
            self._set_state(ServerState.STOPPED)

    async def _teardown(self) -> None:
        server, task, sock = self._server, self._task, self._socket
        self._server = self._task = self._socket = None
        if server is not None:
            server.should_exit = True
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Automation server task failed during shutdown")
        if sock is not None:
            with suppress(OSError):
                sock.close()
