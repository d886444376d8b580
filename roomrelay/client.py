"""Relay client with acknowledged delivery, bounded retry and reconnection replay."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from typing import Any, Union

import aiohttp

from .codec import CODEC_CBOR, FrameError, decode, decode_text, encode, encode_text
from .constants import (
    ACK_TIMEOUT_S,
    F_CHAT,
    F_CHAT_ACK,
    F_ERROR,
    F_JOIN,
    F_JOIN_ACK,
    F_PONG,
    JOIN_TIMEOUT_S,
    MAX_FRAME_SIZE,
    R_BAD_ACK,
    R_INVALID_ROOM,
    R_JOIN_DENIED,
    R_NO_ACK,
    R_NOT_CONNECTED,
    R_ROOM_NOT_ALLOWED,
    R_UNAUTHORIZED,
    RETRY_MAX,
)
from .envelope import ChatAck, Envelope, JoinAck, envelope_from_wire, make_envelope
from .reconciler import DeliveryReconciler, DeliveryState
from .utils import normalize_room_name

logger = logging.getLogger(__name__)

STATUS_CONNECTING = "connecting"
STATUS_CONNECTED = "connected"
STATUS_DISCONNECTED = "disconnected"
STATUS_ERROR = "error"

# Join rejections that will not change on retry; pending traffic for such a
# room fails instead of waiting for the next reconnect.
PERMANENT_JOIN_FAILURES = frozenset({R_INVALID_ROOM, R_ROOM_NOT_ALLOWED})


@dataclass(frozen=True)
class ClientConfig:
    """Configuration for the relay client."""

    sender: str = "python"
    codec: str = CODEC_CBOR
    join_timeout_s: float = JOIN_TIMEOUT_S
    ack_timeout_s: float = ACK_TIMEOUT_S
    retry_max: int = RETRY_MAX
    reconnect_initial_s: float = 0.5
    reconnect_max_s: float = 10.0
    heartbeat_s: float = 25.0


@dataclass(frozen=True)
class JoinUnknown:
    room: str


@dataclass(frozen=True)
class Joining:
    room: str


@dataclass(frozen=True)
class Joined:
    room: str


@dataclass(frozen=True)
class JoinDenied:
    room: str
    reason: str
    allowed_rooms: tuple[str, ...] | None = None


JoinState = Union[JoinUnknown, Joining, Joined, JoinDenied]


class RelayClient:
    """Relay client for one user.

    Keeps the relay's per-connection room membership in step across
    reconnects and drives the delivery reconciler: every submitted envelope
    stays pending until a matching ``chat_ack`` arrives, is resent on
    reconnection or acknowledgment timeout, and gives up after
    ``retry_max`` resubmissions.

    All methods must be called from the event loop the client was started
    on; callbacks run on that loop too and should not block.
    """

    def __init__(
        self,
        url: str,
        token: str | None = None,
        *,
        room: str = "family",
        config: ClientConfig | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            url: WebSocket URL of the relay (``ws://host:port/ws``)
            token: Invite token, sent as a Bearer credential
            room: Room displayed initially
            config: Optional client configuration
            session: Optional aiohttp session (one is created otherwise)

        Raises:
            ValueError: If the initial room name is invalid
        """
        active = normalize_room_name(room)
        if active is None:
            raise ValueError(f"Invalid room name: {room!r}")

        self.url = url
        self.token = token
        self.config = config or ClientConfig()
        self.active_room = active

        self.status = STATUS_DISCONNECTED
        self.status_detail = ""
        self.join_state: JoinState = JoinUnknown(active)

        self.reconciler = DeliveryReconciler(
            retry_max=self.config.retry_max, on_change=self._on_delivery_change
        )

        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._run_task: asyncio.Task | None = None
        self._closing = False
        self._connected = asyncio.Event()

        self._joined: set[str] = set()
        self._join_inflight: dict[str, asyncio.Future[JoinAck]] = {}
        self._join_timers: dict[str, asyncio.TimerHandle] = {}
        self._ack_timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()

        self.on_message: Callable[[Envelope, bool], None] | None = None
        self.on_delivery: Callable[[str, DeliveryState], None] | None = None
        self.on_status: Callable[[str, str], None] | None = None
        self.on_join_state: Callable[[JoinState], None] | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    @property
    def can_send(self) -> bool:
        return self.connected and self.join_state == Joined(self.active_room)

    async def start(self) -> None:
        """Start the connect loop in the background."""
        if self._run_task is not None:
            return
        if self._session is None:
            self._session = aiohttp.ClientSession()
        self._closing = False
        self._run_task = asyncio.create_task(self._run(), name="relay-client")

    async def wait_connected(self, timeout: float | None = None) -> None:
        """Wait until the client holds an open connection.

        Raises:
            asyncio.TimeoutError: If not connected in time
        """
        await asyncio.wait_for(self._connected.wait(), timeout)

    async def force_reconnect(self) -> None:
        """Drop the current connection; the connect loop opens a new one."""
        ws = self._ws
        if ws is not None and not ws.closed:
            await ws.close()

    async def close(self) -> None:
        """Close the connection and stop reconnecting."""
        self._closing = True

        for handle in self._ack_timers.values():
            handle.cancel()
        self._ack_timers.clear()

        ws = self._ws
        if ws is not None and not ws.closed:
            with contextlib.suppress(Exception):
                await ws.close()

        if self._run_task is not None:
            self._run_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._run_task
            self._run_task = None

        for task in list(self._tasks):
            task.cancel()

        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

        self._set_status(STATUS_DISCONNECTED, "closed")

    async def _run(self) -> None:
        """Connect, serve, and reconnect with exponential backoff."""
        session = self._session
        if session is None:
            raise RuntimeError("RelayClient.start() must create a session before connecting")
        delay = self.config.reconnect_initial_s

        while not self._closing:
            self._set_status(STATUS_CONNECTING)
            headers = {"Authorization": f"Bearer {self.token}"} if self.token else None
            try:
                ws = await session.ws_connect(
                    self.url,
                    headers=headers,
                    params={"codec": self.config.codec},
                    heartbeat=self.config.heartbeat_s or None,
                    max_msg_size=MAX_FRAME_SIZE,
                )
            except aiohttp.WSServerHandshakeError as e:
                if e.status == 401:
                    logger.error("Relay refused connection: %s", R_UNAUTHORIZED)
                    self._set_status(STATUS_ERROR, f"{R_UNAUTHORIZED} (bad/missing token)")
                    return
                logger.warning("Handshake failed with status %s", e.status)
                self._set_status(STATUS_ERROR, f"handshake failed ({e.status})")
            except (aiohttp.ClientError, OSError) as e:
                logger.warning("Connection to relay failed: %s", e)
                self._set_status(STATUS_ERROR, str(e))
            else:
                delay = self.config.reconnect_initial_s
                await self._serve(ws)

            if self._closing:
                break
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.config.reconnect_max_s)

    async def _serve(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._ws = ws
        # Relay membership does not survive reconnection.
        self._joined.clear()
        self._join_inflight.clear()
        self._connected.set()
        self._set_status(STATUS_CONNECTED)
        self._spawn(self._on_connected())

        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_raw(msg.data, decode_text)
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    self._handle_raw(msg.data, decode)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning("WebSocket error: %s", ws.exception())
                    break
        finally:
            self._ws = None
            self._connected.clear()
            for handle in self._ack_timers.values():
                handle.cancel()
            self._ack_timers.clear()
            for room, fut in list(self._join_inflight.items()):
                self._settle_join(room, fut, JoinAck(room=room, ok=False, reason=R_NOT_CONNECTED))
            if not self._closing:
                self._set_join_state(JoinUnknown(self.active_room))
                self._set_status(STATUS_DISCONNECTED, f"closed ({ws.close_code})")

    async def _on_connected(self) -> None:
        await asyncio.gather(self.ensure_joined(self.active_room), self.flush_pending())

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    async def join(self, room: str) -> JoinAck:
        """Join a room, sharing one in-flight request per room.

        Returns:
            The relay's JoinAck, or a client-side failure: ``no_ack`` after
            the join timeout, ``not_connected`` while offline, ``bad_ack``
            for an unreadable reply
        """
        r = normalize_room_name(room)
        if r is None:
            return JoinAck(room=room if isinstance(room, str) else "", ok=False, reason=R_INVALID_ROOM)

        if not self.connected:
            return JoinAck(room=r, ok=False, reason=R_NOT_CONNECTED)

        if r in self._joined:
            return JoinAck(room=r, ok=True)

        fut = self._join_inflight.get(r)
        if fut is None:
            loop = asyncio.get_running_loop()
            fut = loop.create_future()
            self._join_inflight[r] = fut
            if r == self.active_room:
                self._set_join_state(Joining(r))
            self._join_timers[r] = loop.call_later(
                self.config.join_timeout_s, self._join_timed_out, r, fut
            )
            if not await self._send_frame({"type": F_JOIN, "room": r}):
                self._settle_join(r, fut, JoinAck(room=r, ok=False, reason=R_NOT_CONNECTED))

        return await asyncio.shield(fut)

    async def ensure_joined(self, room: str) -> bool:
        ack = await self.join(room)
        return ack.ok

    def set_active_room(self, room: str) -> None:
        """Switch the displayed room, joining it if connected.

        Raises:
            ValueError: If the room name is invalid
        """
        r = normalize_room_name(room)
        if r is None:
            raise ValueError(f"Invalid room name: {room!r}")
        self.active_room = r

        if r in self._joined:
            self._set_join_state(Joined(r))
        elif self.connected:
            self._spawn(self.ensure_joined(r))
        else:
            self._set_join_state(JoinUnknown(r))

    def _join_timed_out(self, room: str, fut: asyncio.Future[JoinAck]) -> None:
        if fut.done():
            return
        logger.info("Join timed out room=%s", room)
        self._settle_join(room, fut, JoinAck(room=room, ok=False, reason=R_NO_ACK))

    def _settle_join(self, room: str, fut: asyncio.Future[JoinAck], ack: JoinAck) -> None:
        if self._join_inflight.get(room) is fut:
            del self._join_inflight[room]
            handle = self._join_timers.pop(room, None)
            if handle is not None:
                handle.cancel()
        if fut.done():
            return

        if ack.ok:
            self._joined.add(room)
            if room == self.active_room:
                self._set_join_state(Joined(room))
        elif room == self.active_room:
            self._set_join_state(JoinDenied(room, ack.reason or "join_denied", ack.allowed_rooms))

        fut.set_result(ack)

    def _on_join_ack(self, frame: dict) -> None:
        ack = JoinAck.from_frame(frame)
        if ack is None:
            room = frame.get("room")
            fut = self._join_inflight.get(room) if isinstance(room, str) else None
            if fut is not None:
                self._settle_join(room, fut, JoinAck(room=room, ok=False, reason=R_BAD_ACK))
            else:
                logger.debug("Ignoring unreadable join_ack: %r", frame)
            return

        fut = self._join_inflight.get(ack.room)
        if fut is not None:
            self._settle_join(ack.room, fut, ack)
        elif ack.ok:
            self._joined.add(ack.room)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(self, body: str, room: str | None = None) -> str | None:
        """Submit a message to a room (the active room by default).

        Joins first so the relay does not answer ``not_in_room``.

        Returns:
            Envelope ID, or None if the room could not be joined

        Raises:
            ValueError: If the body is empty or the room name is invalid
        """
        text = body.strip() if isinstance(body, str) else ""
        if not text:
            raise ValueError("Message text cannot be empty.")

        r = normalize_room_name(room if room is not None else self.active_room)
        if r is None:
            raise ValueError(f"Invalid room name: {room!r}")

        if not await self.ensure_joined(r):
            return None

        env = make_envelope(r, text, sender=self.config.sender)
        self.reconciler.submit(env)
        await self._transmit(env)
        return env.id

    async def flush_pending(self) -> None:
        """Replay pending envelopes room by room after (re)connecting."""
        for room, envelopes in self.reconciler.pending_by_room().items():
            ack = await self.join(room)
            if not ack.ok:
                if ack.reason in PERMANENT_JOIN_FAILURES:
                    for env in envelopes:
                        self.reconciler.fail(env.id, R_JOIN_DENIED)
                continue

            for env in envelopes:
                if self.reconciler.next_attempt(env.id):
                    await self._transmit(env)

    async def _transmit(self, env: Envelope) -> None:
        if await self._send_frame({"type": F_CHAT, "envelope": env.to_dict()}):
            self._arm_ack_timer(env.id)

    def _arm_ack_timer(self, mid: str) -> None:
        old = self._ack_timers.pop(mid, None)
        if old is not None:
            old.cancel()
        loop = asyncio.get_running_loop()
        self._ack_timers[mid] = loop.call_later(self.config.ack_timeout_s, self._ack_timed_out, mid)

    def _ack_timed_out(self, mid: str) -> None:
        self._ack_timers.pop(mid, None)
        entry = self.reconciler.get(mid)
        if entry is None:
            return
        logger.info("No ack for id=%s (%s)", mid, R_NO_ACK)
        if not self.connected:
            # Replayed on reconnect.
            return
        if self.reconciler.next_attempt(mid):
            self._spawn(self._transmit(entry.envelope))

    def _on_chat_ack(self, frame: dict) -> None:
        ack = ChatAck.from_frame(frame)
        if ack is None:
            logger.debug("Ignoring unreadable chat_ack: %r", frame)
            return
        handle = self._ack_timers.pop(ack.id, None)
        if handle is not None:
            handle.cancel()
        self.reconciler.acknowledge(ack)

    def _on_chat(self, frame: dict) -> None:
        env = envelope_from_wire(frame.get("envelope"))
        if env is None:
            logger.debug("Ignoring malformed chat frame")
            return
        if not self.reconciler.receive(env):
            return
        if self.on_message:
            try:
                self.on_message(env, self.reconciler.is_local(env.id))
            except Exception as e:
                logger.exception("Error in on_message callback: %s", e)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _send_frame(self, frame: dict[str, Any]) -> bool:
        ws = self._ws
        if ws is None or ws.closed:
            return False
        try:
            if self.config.codec == CODEC_CBOR:
                await ws.send_bytes(encode(frame))
            else:
                await ws.send_str(encode_text(frame))
        except (ConnectionResetError, RuntimeError) as e:
            logger.debug("Send failed: %s", e)
            return False
        return True

    def _handle_raw(self, data: Any, decoder: Callable[[Any], dict]) -> None:
        try:
            frame = decoder(data)
        except FrameError as e:
            logger.debug("Failed to decode frame: %s", e)
            return

        t = frame.get("type")
        if t == F_CHAT:
            self._on_chat(frame)
        elif t == F_CHAT_ACK:
            self._on_chat_ack(frame)
        elif t == F_JOIN_ACK:
            self._on_join_ack(frame)
        elif t == F_ERROR:
            logger.warning("Relay error: %s", frame.get("error"))
        elif t == F_PONG:
            logger.debug("Received pong")
        else:
            logger.debug("Ignoring frame type %r", t)

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any] | Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task failed", exc_info=task.exception())

    def _set_status(self, status: str, detail: str = "") -> None:
        if status == self.status and detail == self.status_detail:
            return
        self.status = status
        self.status_detail = detail
        if self.on_status:
            try:
                self.on_status(status, detail)
            except Exception as e:
                logger.exception("Error in on_status callback: %s", e)

    def _set_join_state(self, state: JoinState) -> None:
        self.join_state = state
        if self.on_join_state:
            try:
                self.on_join_state(state)
            except Exception as e:
                logger.exception("Error in on_join_state callback: %s", e)

    def _on_delivery_change(self, mid: str, state: DeliveryState) -> None:
        if self.on_delivery:
            try:
                self.on_delivery(mid, state)
            except Exception as e:
                logger.exception("Error in on_delivery callback: %s", e)
