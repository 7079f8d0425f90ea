"""
socket.io link to the rendezvous relay.

The relay only forwards opaque payloads between the two matched sockets.  The
link translates its events into coordinator calls, owns reconnection (with
exponential backoff) and reports exhaustion as a lost link.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Sequence, Union

import socketio
from pydantic import ValidationError
from socketio.exceptions import ConnectionError as SocketIOConnectionError
from socketio.exceptions import SocketIOError
from socketio.exceptions import TimeoutError as SocketIOTimeoutError

from ..errors import SignalingUnavailable
from ..rtc.candidates import ICECandidate
from ..rtc.transport import SessionDescription
from . import schemas

LOG = logging.getLogger(__name__)

ChatCallback = Callable[[schemas.ChatMessage], Union[Awaitable[None], None]]


class SignalingListener(Protocol):
    async def on_link_connected(self) -> None: ...

    async def on_role_assigned(self, role: str) -> None: ...

    async def on_room_id(self, room_id: str) -> None: ...

    async def on_peer_matched(self, remote_peer_id: str) -> None: ...

    async def on_remote_description(self, description: Any) -> None: ...

    async def on_remote_candidate(self, candidate: Any) -> None: ...

    async def on_peer_lost(self) -> None: ...

    async def on_local_disconnect(self) -> None: ...

    async def on_link_lost(self) -> None: ...


class SignalingLink:
    """
    Bidirectional channel to the relay.

    ``reconnect_attempts`` bounds consecutive failed connection attempts; a
    successful connection resets the count.
    """

    def __init__(
        self,
        url: str,
        *,
        listener: Optional[SignalingListener] = None,
        socketio_path: str = "socket.io",
        transports: Optional[Sequence[str]] = None,
        reconnect_attempts: int = 5,
        reconnect_delay: float = 1.0,
        reconnect_delay_max: float = 30.0,
        reconnect_jitter: float = 0.1,
        handshake_timeout: float = 10.0,
        client: Optional[socketio.AsyncClient] = None,
    ) -> None:
        self.url = url
        self.socketio_path = socketio_path
        self.transports = list(transports) if transports else None
        self.reconnect_attempts = max(0, int(reconnect_attempts))
        self.reconnect_delay = max(0.0, float(reconnect_delay))
        self.reconnect_delay_max = max(self.reconnect_delay, float(reconnect_delay_max))
        self.reconnect_jitter = min(1.0, max(0.0, float(reconnect_jitter)))
        self.handshake_timeout = max(0.1, float(handshake_timeout))
        self.role_token: Optional[str] = None
        self.room_id: Optional[str] = None

        self._listener = listener
        self._client = client or socketio.AsyncClient(reconnection=False, logger=False, engineio_logger=False)
        self._chat_callbacks: List[ChatCallback] = []
        self._stop_event = asyncio.Event()
        self._running = False
        self._handshake_task: Optional[asyncio.Task] = None
        self._register_handlers()

    # ------------------------------------------------------------------ wiring

    def bind(self, listener: SignalingListener) -> None:
        self._listener = listener

    def on_chat(self, callback: ChatCallback) -> None:
        self._chat_callbacks.append(callback)

    @property
    def listener(self) -> SignalingListener:
        if self._listener is None:
            raise RuntimeError("SignalingLink has no listener bound")
        return self._listener

    @property
    def connected(self) -> bool:
        return bool(self._client.connected)

    def _register_handlers(self) -> None:
        self._client.on("connect", self._handle_connect)
        self._client.on("disconnect", self._handle_disconnect)
        self._client.on(schemas.EVENT_ROOM_ID, self._handle_room_id)
        self._client.on(schemas.EVENT_REMOTE_SOCKET, self._handle_remote_socket)
        self._client.on(schemas.EVENT_SDP_REPLY, self._handle_sdp_reply)
        self._client.on(schemas.EVENT_ICE_REPLY, self._handle_ice_reply)
        self._client.on(schemas.EVENT_PEER_DISCONNECTED, self._handle_peer_disconnected)
        self._client.on(schemas.EVENT_GET_MESSAGE, self._handle_get_message)

    # ------------------------------------------------------------------ lifecycle

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""

        base = min(self.reconnect_delay_max, self.reconnect_delay * (2 ** max(0, attempt - 1)))
        if self.reconnect_jitter:
            base *= 1.0 + random.uniform(-self.reconnect_jitter, self.reconnect_jitter)
        return max(0.0, base)

    async def _sleep(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> None:
        """
        Connect and keep reconnecting until :meth:`stop` or until
        ``reconnect_attempts`` consecutive attempts have failed.
        """

        self._running = True
        self._stop_event.clear()
        failures = 0
        try:
            while self._running:
                try:
                    await self._client.connect(
                        self.url,
                        socketio_path=self.socketio_path,
                        transports=self.transports,
                        wait_timeout=self.handshake_timeout,
                    )
                except SocketIOConnectionError as exc:
                    failures += 1
                    if failures > self.reconnect_attempts:
                        LOG.error("Relay unreachable after %d attempts: %s", failures, exc)
                        await self.listener.on_link_lost()
                        return
                    delay = self.backoff_delay(failures)
                    LOG.warning(
                        "Relay connection failed (%s); retry %d/%d in %.1fs",
                        exc,
                        failures,
                        self.reconnect_attempts,
                        delay,
                    )
                    await self._sleep(delay)
                    continue

                failures = 0
                await self._client.wait()
                if self._running:
                    LOG.warning("Relay connection dropped; reconnecting")
        finally:
            self._running = False

    async def stop(self) -> None:
        self._running = False
        self._stop_event.set()
        if self._handshake_task is not None:
            self._handshake_task.cancel()
            self._handshake_task = None
        if self._client.connected:
            await self._client.disconnect()

    # ------------------------------------------------------------------ outbound

    async def _emit(self, event: str, data: Any) -> None:
        if not self._client.connected:
            raise SignalingUnavailable(f"cannot send {event}: relay link is down")
        try:
            await self._client.emit(event, data)
        except SocketIOError as exc:
            raise SignalingUnavailable(f"cannot send {event}: {exc}") from exc

    async def send_description(self, description: SessionDescription) -> None:
        await self._emit(schemas.EVENT_SDP_SEND, schemas.sdp_send_payload(description))

    async def send_candidate(self, candidate: ICECandidate, target_id: str) -> None:
        await self._emit(schemas.EVENT_ICE_SEND, schemas.ice_send_payload(candidate, target_id))

    async def send_chat(self, text: str) -> schemas.ChatMessage:
        message = schemas.ChatMessage(text=text, sender_role=self.role_token, incoming=False)
        if not message.text.strip():
            raise ValueError("chat message is empty")
        await self._emit(schemas.EVENT_SEND_MESSAGE, (message.text, self.role_token, self.room_id))
        await self._dispatch_chat(message)
        return message

    # ------------------------------------------------------------------ inbound

    async def _handshake(self) -> None:
        try:
            token = await self._client.call(schemas.EVENT_START, timeout=self.handshake_timeout)
        except SocketIOTimeoutError:
            LOG.warning("Relay did not assign a role within %.1fs; reconnecting", self.handshake_timeout)
            await self._client.disconnect()
            return
        except SocketIOError as exc:
            LOG.warning("Role handshake failed: %s", exc)
            return
        self.role_token = str(token) if token is not None else None
        await self.listener.on_role_assigned(token)

    async def _handle_connect(self, *args: Any) -> None:
        LOG.info("Connected to relay %s", self.url)
        self.role_token = None
        self.room_id = None
        await self.listener.on_link_connected()
        self._handshake_task = asyncio.get_running_loop().create_task(self._handshake())

    async def _handle_disconnect(self, *args: Any) -> None:
        LOG.info("Disconnected from relay%s", f" ({args[0]})" if args else "")
        await self.listener.on_local_disconnect()

    async def _handle_room_id(self, room_id: Any = None, *args: Any) -> None:
        if room_id is None:
            return
        self.room_id = str(room_id)
        await self.listener.on_room_id(self.room_id)

    async def _handle_remote_socket(self, remote_id: Any = None, *args: Any) -> None:
        if not remote_id:
            LOG.warning("remote-socket event without a peer id")
            return
        await self.listener.on_peer_matched(str(remote_id))

    async def _handle_sdp_reply(self, data: Any = None, *args: Any) -> None:
        try:
            envelope = schemas.SdpReply.model_validate(data)
        except ValidationError as exc:
            LOG.warning("Dropping malformed sdp:reply: %s", exc)
            return
        await self.listener.on_remote_description(envelope.sdp)

    async def _handle_ice_reply(self, data: Any = None, *args: Any) -> None:
        try:
            envelope = schemas.IceReply.model_validate(data)
        except ValidationError as exc:
            LOG.warning("Dropping malformed ice:reply: %s", exc)
            return
        await self.listener.on_remote_candidate(envelope.candidate)

    async def _handle_peer_disconnected(self, *args: Any) -> None:
        await self.listener.on_peer_lost()

    async def _handle_get_message(self, text: Any = None, sender_role: Any = None, *args: Any) -> None:
        message = schemas.ChatMessage(
            text=text,
            sender_role=str(sender_role) if sender_role is not None else None,
            incoming=True,
        )
        await self._dispatch_chat(message)

    async def _dispatch_chat(self, message: schemas.ChatMessage) -> None:
        for callback in list(self._chat_callbacks):
            try:
                result = callback(message)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # pragma: no cover - chat consumers must not break signalling
                LOG.exception("Chat callback failed")


__all__ = ["ChatCallback", "SignalingLink", "SignalingListener"]
