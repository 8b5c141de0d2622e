"""
FastAPI control surface for the cuemix orchestrator.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Optional

import yaml
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from .. import DEFAULT_PROFILES_PATH, EngineConfig
from ..errors import (
    GraphError,
    IllegalTransition,
    InvalidConfig,
    InvalidTopology,
    PipelineError,
    PipelineTimeout,
    UnknownConnection,
    UnknownNode,
)
from ..events import GraphEvent
from ..orchestrator import Orchestrator
from ..runtime.adapter import DryRunPipelineAdapter
from . import schemas

LOG = logging.getLogger(__name__)

ERROR_STATUS = (
    (UnknownNode, 404),
    (UnknownConnection, 404),
    (InvalidTopology, 409),
    (IllegalTransition, 409),
    (PipelineTimeout, 502),
    (PipelineError, 502),
    (InvalidConfig, 400),
)


def status_for(exc: GraphError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 400


def error_detail(exc: GraphError) -> Dict[str, str]:
    return {"code": exc.code, "message": str(exc)}


def validation_detail(exc: ValidationError) -> Dict[str, str]:
    return {"code": InvalidConfig.code, "message": str(exc)}


class EventSession:
    """Track one ``/events`` connection and run its send/receive loops."""

    def __init__(self, manager: "EventStreamManager", websocket: WebSocket, *, queue_size: int) -> None:
        self.manager = manager
        self.websocket = websocket
        self.session_id = uuid.uuid4().hex
        self.send_queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self.last_pong = time.monotonic()
        self._stop_event = asyncio.Event()
        self._closing = False
        self.logger = LOG.getChild(f"ws.{self.session_id[:8]}")

    @property
    def is_stopped(self) -> bool:
        return self._stop_event.is_set()

    async def run(self) -> None:
        try:
            await self.websocket.accept()
        except Exception:  # pragma: no cover - defensive
            self.logger.exception("Failed to accept WebSocket connection")
            return

        await self.manager.register(self)
        try:
            snapshot = await asyncio.to_thread(self.manager.orchestrator.inspect)
            await self.send({"type": "snapshot", "payload": snapshot.to_dict()})
            async with asyncio.TaskGroup() as task_group:
                task_group.create_task(self._recv_loop())
                task_group.create_task(self._send_loop())
                task_group.create_task(self._keepalive_loop())
        except asyncio.CancelledError:
            raise
        except WebSocketDisconnect:
            self.logger.debug("WebSocket client disconnected (%s)", self.session_id)
        except Exception:  # pragma: no cover - defensive
            self.logger.exception("Event session crashed")
        finally:
            await self.manager.unregister(self)
            await self.close(code=1000)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        if self._closing:
            return
        self._closing = True
        self._stop_event.set()
        with contextlib.suppress(RuntimeError, WebSocketDisconnect):
            await self.websocket.close(code=code, reason=reason)

    async def send(self, payload: Dict[str, Any]) -> None:
        if self.is_stopped:
            return
        await self.send_queue.put(payload)

    def offer(self, payload: Dict[str, Any]) -> None:
        """Queue ``payload`` without waiting; dropped under backpressure."""

        if self.is_stopped:
            return
        try:
            self.send_queue.put_nowait(payload)
        except asyncio.QueueFull:
            self.logger.debug("Dropping %s message due to backpressure", payload.get("type"))

    async def _recv_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    message = await self.websocket.receive_json()
                except asyncio.CancelledError:
                    raise
                except WebSocketDisconnect:
                    break
                except Exception:  # pragma: no cover - safety net
                    self.logger.exception("Failed to receive message")
                    break

                if not isinstance(message, dict):
                    continue
                msg_type = str(message.get("type") or "").lower()
                if msg_type == "pong":
                    self.last_pong = time.monotonic()
                    continue
                if msg_type == "ping":
                    await self.send({"type": "pong", "ts": time.time()})
                    continue
                if msg_type == "command":
                    await self.send(await self.manager.run_command(message))
                    continue
                self.logger.debug("Ignoring unsupported frame type %r", msg_type)
        finally:
            self._stop_event.set()

    async def _send_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    payload = await asyncio.wait_for(self.send_queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue
                try:
                    await self.websocket.send_json(payload)
                except asyncio.CancelledError:
                    raise
                except (WebSocketDisconnect, RuntimeError) as exc:
                    self.logger.debug("Send failed, closing session: %s", exc)
                    break
                finally:
                    self.send_queue.task_done()
        finally:
            self._stop_event.set()

    async def _keepalive_loop(self) -> None:
        if self.manager.ping_interval <= 0:
            return
        try:
            while not self.is_stopped:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.manager.ping_interval)
                    break
                except asyncio.TimeoutError:
                    pass
                await self.send({"type": "ping", "ts": time.time()})
                if (time.monotonic() - self.last_pong) > self.manager.pong_timeout:
                    self.logger.warning("Ping timeout; closing event session")
                    await self.close(code=1011, reason="ping timeout")
                    break
        finally:
            self._stop_event.set()


class EventStreamManager:
    """Fan graph events out to WebSocket sessions and run their commands."""

    def __init__(
        self,
        orchestrator: Orchestrator,
        *,
        queue_size: int = 256,
        ping_interval: float = 30.0,
        pong_timeout: Optional[float] = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.queue_size = max(1, int(queue_size))
        self.ping_interval = max(0.0, float(ping_interval))
        self.pong_timeout = max(self.ping_interval, float(pong_timeout or self.ping_interval * 2))
        self._sessions: Dict[str, EventSession] = {}
        self._lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._subscription: Optional[int] = None

    async def start(self) -> None:
        if self._loop is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._subscription = self.orchestrator.events.subscribe(self._handle_event)

    async def stop(self) -> None:
        if self._subscription is not None:
            self.orchestrator.events.unsubscribe(self._subscription)
            self._subscription = None
        async with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            await session.close(code=1001, reason="server shutdown")
        self._loop = None

    async def run(self, websocket: WebSocket) -> None:
        session = EventSession(self, websocket, queue_size=self.queue_size)
        await session.run()

    async def register(self, session: EventSession) -> None:
        async with self._lock:
            self._sessions[session.session_id] = session
        LOG.info("Event client connected session=%s", session.session_id)

    async def unregister(self, session: EventSession) -> None:
        async with self._lock:
            self._sessions.pop(session.session_id, None)
        LOG.info("Event client disconnected session=%s", session.session_id)

    async def run_command(self, message: Dict[str, Any]) -> Dict[str, Any]:
        request_id = message.get("id")
        try:
            kwargs = schemas.parse_command(message.get("command") or {})
            result = await asyncio.to_thread(self.orchestrator.dispatch, kwargs)
        except GraphError as exc:
            return {"type": "error", "id": request_id, **error_detail(exc)}
        except ValidationError as exc:
            return {"type": "error", "id": request_id, **validation_detail(exc)}
        return {"type": "result", "id": request_id, "payload": result}

    def _handle_event(self, event: GraphEvent) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        payload = {"type": "event", "payload": event.to_dict()}
        try:
            loop.call_soon_threadsafe(self._broadcast_nowait, payload)
        except RuntimeError:
            LOG.debug("Event broadcast scheduling failed; loop is shutting down.", exc_info=True)

    def _broadcast_nowait(self, payload: Dict[str, Any]) -> None:
        for session in list(self._sessions.values()):
            session.offer(dict(payload))


def create_app(
    orchestrator: Optional[Orchestrator] = None,
    *,
    config: Optional[EngineConfig] = None,
    lifespan: Optional[Callable[..., object]] = None,
) -> FastAPI:
    engine_config = config or (orchestrator.config if orchestrator is not None else EngineConfig(backend="dry-run"))
    if orchestrator is None:
        orchestrator = Orchestrator(DryRunPipelineAdapter(), config=engine_config)

    stream = EventStreamManager(
        orchestrator,
        queue_size=engine_config.event_queue_size,
        ping_interval=engine_config.ping_interval,
    )

    @asynccontextmanager
    async def app_lifespan(app: FastAPI) -> AsyncIterator[None]:
        await stream.start()
        try:
            if lifespan is None:
                yield
            else:
                async with lifespan(app):
                    yield
        finally:
            await stream.stop()

    app = FastAPI(title="cuemix orchestrator API", lifespan=app_lifespan)
    app.state.orchestrator = orchestrator
    app.state.events = stream
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    async def call(method: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(method, *args, **kwargs)
        except GraphError as exc:
            raise HTTPException(status_code=status_for(exc), detail=error_detail(exc)) from exc

    @app.websocket("/events")
    async def events_endpoint(websocket: WebSocket) -> None:
        await stream.run(websocket)

    @app.get("/healthz")
    async def healthz() -> dict:
        return {"status": "ok", "profile": engine_config.profile, "backend": engine_config.backend}

    @app.get("/profiles")
    async def list_profiles() -> dict:
        try:
            with DEFAULT_PROFILES_PATH.open("r", encoding="utf-8") as handle:
                profiles = yaml.safe_load(handle) or {}
        except FileNotFoundError:
            profiles = {}
        return {"profiles": profiles}

    @app.get("/graph")
    async def inspect_graph() -> dict:
        snapshot = await call(orchestrator.inspect)
        return snapshot.to_dict()

    @app.post("/nodes", status_code=201)
    async def create_node(payload: schemas.CreateNodeRequest) -> dict:
        node_id = await call(orchestrator.create_node, **payload.to_kwargs())
        return {"id": node_id}

    @app.delete("/nodes/{node_id}")
    async def remove_node(node_id: str) -> dict:
        await call(orchestrator.remove_node, node_id)
        return {"removed": node_id}

    @app.post("/nodes/{node_id}/state")
    async def request_state(node_id: str, payload: schemas.StateRequest) -> dict:
        state = await call(orchestrator.request_state, node_id, payload.target)
        return {"id": node_id, "state": state}

    @app.post("/nodes/{node_id}/schedule")
    async def schedule_node(node_id: str, payload: schemas.ScheduleRequest) -> dict:
        entries = await call(orchestrator.schedule, node_id, **payload.to_kwargs())
        return {"entries": entries}

    @app.delete("/nodes/{node_id}/schedule")
    async def unschedule_node(node_id: str) -> dict:
        removed = await call(orchestrator.unschedule, node_id)
        return {"removed": removed}

    @app.post("/nodes/{node_id}/control-points", status_code=201)
    async def add_control_point(node_id: str, payload: schemas.ControlPointRequest) -> dict:
        return await call(orchestrator.add_control_point, node_id, **payload.to_kwargs())

    @app.delete("/nodes/{node_id}/control-points/{point_id}")
    async def remove_control_point(node_id: str, point_id: str) -> dict:
        await call(orchestrator.remove_control_point, node_id, point_id)
        return {"removed": point_id}

    @app.post("/connections", status_code=201)
    async def connect(payload: schemas.ConnectRequest) -> dict:
        return await call(orchestrator.connect, **payload.to_kwargs())

    @app.post("/connections/remove")
    async def disconnect(payload: schemas.DisconnectRequest) -> dict:
        return await call(orchestrator.disconnect, **payload.to_kwargs())

    @app.post("/failover", status_code=201)
    async def bind_failover(payload: schemas.BindFailoverRequest) -> dict:
        return await call(orchestrator.bind_failover, **payload.to_kwargs())

    @app.post("/failover/remove")
    async def unbind_failover(payload: schemas.SlotRequest) -> dict:
        return await call(orchestrator.unbind_failover, **payload.to_kwargs())

    @app.post("/failover/rearm")
    async def rearm(payload: schemas.SlotRequest) -> dict:
        return await call(orchestrator.rearm, **payload.to_kwargs())

    @app.post("/command")
    async def command(payload: Dict[str, Any]) -> dict:
        try:
            kwargs = schemas.parse_command(payload)
        except InvalidConfig as exc:
            raise HTTPException(status_code=400, detail=error_detail(exc)) from exc
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=validation_detail(exc)) from exc
        return {"result": await call(orchestrator.dispatch, kwargs)}

    return app
