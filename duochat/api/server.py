"""
FastAPI status surface for the client.

The UI collaborator reads the session snapshot, toggles mute, relays chat and
subscribes to ``/events`` for pushed snapshot/chat updates.  Errors are only
ever reported as snapshot state; nothing here raises into the coordinator.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from typing import Any, Callable, Dict, Optional, Set

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from ..coordinator import NegotiationCoordinator
from ..errors import SignalingUnavailable
from ..rtc.media import MediaSource
from ..session import SessionSnapshot
from ..signaling.link import SignalingLink
from ..signaling.schemas import ChatMessage
from . import schemas

LOG = logging.getLogger(__name__)


class StatusClient:
    """Per-connection send queue and receive loop for ``/events``."""

    def __init__(self, hub: "EventHub", websocket: WebSocket, *, queue_size: int) -> None:
        self.hub = hub
        self.websocket = websocket
        self.client_id = uuid.uuid4().hex
        self.send_queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self._stop_event = asyncio.Event()
        self.logger = LOG.getChild(f"ws.{self.client_id[:8]}")

    @property
    def is_stopped(self) -> bool:
        return self._stop_event.is_set()

    def push(self, payload: Dict[str, Any]) -> None:
        if self.is_stopped:
            return
        try:
            self.send_queue.put_nowait(payload)
        except asyncio.QueueFull:
            self.logger.debug("Dropping %s event due to backpressure", payload.get("type"))

    async def run(self) -> None:
        await self.websocket.accept()
        self.hub.attach(self)
        try:
            async with asyncio.TaskGroup() as task_group:
                task_group.create_task(self._recv_loop())
                task_group.create_task(self._send_loop())
        except* WebSocketDisconnect:
            self.logger.debug("Status client disconnected")
        finally:
            self.hub.detach(self)
            self._stop_event.set()
            with contextlib.suppress(RuntimeError, WebSocketDisconnect):
                await self.websocket.close()

    async def _recv_loop(self) -> None:
        try:
            while not self.is_stopped:
                message = await self.websocket.receive_json()
                if not isinstance(message, dict):
                    continue
                if str(message.get("type") or "").lower() == "ping":
                    self.push({"type": "pong", "ts": time.time()})
        finally:
            self._stop_event.set()

    async def _send_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    payload = await asyncio.wait_for(self.send_queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue
                await self.websocket.send_json(payload)
        finally:
            self._stop_event.set()


class EventHub:
    """Fan snapshot and chat events out to every ``/events`` subscriber."""

    def __init__(self, coordinator: NegotiationCoordinator, *, queue_size: int = 64) -> None:
        self.coordinator = coordinator
        self.queue_size = max(1, int(queue_size))
        self._clients: Set[StatusClient] = set()
        self._subscription: Optional[int] = None

    def start(self) -> None:
        if self._subscription is None:
            self._subscription = self.coordinator.state_machine.subscribe(self._on_snapshot)

    def stop(self) -> None:
        if self._subscription is not None:
            self.coordinator.state_machine.unsubscribe(self._subscription)
            self._subscription = None

    def attach(self, client: StatusClient) -> None:
        self._clients.add(client)
        client.push({"type": "session", "payload": self.coordinator.snapshot().to_dict()})

    def detach(self, client: StatusClient) -> None:
        self._clients.discard(client)

    def broadcast(self, payload: Dict[str, Any]) -> None:
        for client in list(self._clients):
            client.push(payload)

    def _on_snapshot(self, snapshot: SessionSnapshot) -> None:
        self.broadcast({"type": "session", "payload": snapshot.to_dict()})

    def on_chat(self, message: ChatMessage) -> None:
        self.broadcast({"type": "chat", "payload": message.to_dict()})

    async def run(self, websocket: WebSocket) -> None:
        client = StatusClient(self, websocket, queue_size=self.queue_size)
        await client.run()


def create_app(
    coordinator: NegotiationCoordinator,
    *,
    media: Optional[MediaSource] = None,
    link: Optional[SignalingLink] = None,
    lifespan: Optional[Callable[..., object]] = None,
) -> FastAPI:
    hub = EventHub(coordinator)
    hub.start()
    if link is not None:
        link.on_chat(hub.on_chat)

    app = FastAPI(title="duochat client", lifespan=lifespan)
    app.state.hub = hub
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def session_payload() -> dict:
        payload = coordinator.snapshot().to_dict()
        payload["linkConnected"] = bool(link and link.connected)
        return payload

    @app.websocket("/events")
    async def events_endpoint(websocket: WebSocket) -> None:
        await hub.run(websocket)

    @app.get("/healthz")
    async def healthz() -> dict:
        return {"status": "ok", "state": coordinator.state.value}

    @app.get("/api/session")
    async def get_session() -> dict:
        return session_payload()

    @app.post("/api/session/renegotiate")
    async def renegotiate() -> dict:
        await coordinator.negotiate()
        return session_payload()

    @app.post("/api/session/leave")
    async def leave() -> dict:
        if link is not None:
            await link.stop()
        await coordinator.on_local_disconnect()
        return session_payload()

    @app.get("/api/media")
    async def get_media() -> dict:
        if media is None:
            raise HTTPException(status_code=404, detail="Local media is disabled")
        return media.describe()

    @app.post("/api/media/mute")
    async def set_mute(payload: schemas.MuteRequest) -> dict:
        if media is None:
            raise HTTPException(status_code=404, detail="Local media is disabled")
        try:
            muted = media.set_muted(payload.muted, payload.kind)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"muted": muted}

    @app.post("/api/chat")
    async def send_chat(payload: schemas.ChatRequest) -> dict:
        if link is None:
            raise HTTPException(status_code=503, detail="Signalling link is not configured")
        try:
            message = await link.send_chat(payload.text)
        except SignalingUnavailable as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return message.to_dict()

    return app


__all__ = ["EventHub", "StatusClient", "create_app"]
