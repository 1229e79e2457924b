"""
Streaming session manager.

Pipeline workers put ``PipelineResult`` and ``PipelineEvent`` items on a
shared thread-safe handoff queue. An asyncio distributor drains it and fans
each item out to the sessions of that stream. Every session has its own
bounded outbound queue and sender task, so a slow client only ever loses its
own oldest items.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from enum import Enum
from queue import Empty, Queue
from typing import Any, Callable, Deque, Dict, Iterable, Optional, Protocol, Set, Tuple, Union

from starlette.websockets import WebSocket, WebSocketDisconnect

from cv.types import PipelineEvent, PipelineResult
from streaming.exceptions import ProtocolViolation, TransportError
from streaming.messages import (
    Ack,
    EventMessage,
    StateUpdate,
    StreamKind,
    Subscribe,
    Unsubscribe,
    parse_control,
)
from streaming.publisher import StatePublisher

logger = logging.getLogger(__name__)

Outbound = Union[PipelineResult, PipelineEvent]

DISTRIBUTOR_IDLE_SECONDS = 0.01
MAX_ITEMS_PER_PUMP = 256


class Transport(Protocol):
    async def send_json(self, payload: dict) -> None:
        ...

    async def close(self, code: int = 1000) -> None:
        ...


class WebSocketTransport:
    """Starlette websocket behind the send/close contract; send failures become TransportError."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def send_json(self, payload: dict) -> None:
        try:
            await self.websocket.send_json(payload)
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            raise TransportError(f"Send failed: {exc}") from exc

    async def close(self, code: int = 1000) -> None:
        try:
            await self.websocket.close(code=code)
        except RuntimeError:
            # Already closed by the peer.
            pass


class SessionState(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    DRAINING = "draining"
    CLOSED = "closed"


class ClientSession:
    def __init__(self, session_id: str, transport: Transport, stream_id: str, capacity: int = 8):
        self.session_id = session_id
        self.transport = transport
        self.stream_id = stream_id
        self.capacity = capacity
        self.state = SessionState.CONNECTING
        self.stream_kinds: frozenset = frozenset()
        self.outbound: Deque[Outbound] = deque()
        self.dropped_frames = 0
        self.dropped_events = 0
        self._unreported_drops = 0
        # (generation, sequence_id); a restarted pipeline numbers frames from 1 again.
        self.last_queued: Optional[Tuple[int, int]] = None
        self.generation: Optional[int] = None
        self.last_sent: Optional[int] = None
        self.highest_sent: Optional[int] = None
        self.last_acked: Optional[int] = None
        self.sent = 0
        self._ready = asyncio.Event()

    def subscribe(self, stream_kinds: Iterable[StreamKind]) -> None:
        if self.state not in (SessionState.CONNECTING, SessionState.ACTIVE):
            raise ProtocolViolation(f"Cannot subscribe while {self.state.value}")
        self.stream_kinds = frozenset(stream_kinds)
        self.state = SessionState.ACTIVE

    def wants(self, item: Outbound) -> bool:
        if isinstance(item, PipelineEvent):
            return StreamKind.EVENTS in self.stream_kinds
        return bool(self.stream_kinds & {StreamKind.STATE, StreamKind.ACTIONS})

    def enqueue(self, item: Outbound) -> bool:
        """Queue an item for delivery. Returns False when it was not accepted."""
        if self.state != SessionState.ACTIVE or not self.wants(item):
            return False
        if isinstance(item, PipelineResult):
            position = (item.state.generation, item.state.sequence_id)
            if self.last_queued is not None and position <= self.last_queued:
                return False
            self.last_queued = position
        if len(self.outbound) >= self.capacity:
            evicted = self.outbound.popleft()
            if isinstance(evicted, PipelineResult):
                self.dropped_frames += 1
                self._unreported_drops += 1
            else:
                self.dropped_events += 1
        self.outbound.append(item)
        self._ready.set()
        return True

    def ack(self, sequence_id: int) -> None:
        if self.highest_sent is None or sequence_id > self.highest_sent:
            raise ProtocolViolation(f"Ack for {sequence_id} which was never sent")
        if sequence_id > self.last_sent:
            # Refers to a frame of an earlier pipeline run.
            return
        if self.last_acked is None or sequence_id > self.last_acked:
            self.last_acked = sequence_id

    def _mark_sent(self, result: PipelineResult) -> None:
        state = result.state
        if state.generation != self.generation:
            self.generation = state.generation
            self.last_acked = None
        self.last_sent = state.sequence_id
        if self.highest_sent is None or state.sequence_id > self.highest_sent:
            self.highest_sent = state.sequence_id

    def render(self, item: Outbound) -> dict:
        drops, self._unreported_drops = self._unreported_drops, 0
        if isinstance(item, PipelineEvent):
            return EventMessage.from_event(item, dropped_frames=drops).model_dump(mode="json")
        return StateUpdate.from_result(item, self.stream_kinds, dropped_frames=drops).model_dump(mode="json")

    async def run_sender(self) -> None:
        """Send queued items until drained or closed. Raises TransportError on send failure."""
        while self.state != SessionState.CLOSED:
            if not self.outbound:
                if self.state == SessionState.DRAINING:
                    return
                self._ready.clear()
                await self._ready.wait()
                continue
            item = self.outbound.popleft()
            try:
                await self.transport.send_json(self.render(item))
            except TransportError:
                raise
            except Exception as exc:
                raise TransportError(f"Send failed: {exc}") from exc
            self.sent += 1
            if isinstance(item, PipelineResult):
                self._mark_sent(item)

    def begin_drain(self) -> None:
        if self.state in (SessionState.CONNECTING, SessionState.ACTIVE):
            self.state = SessionState.DRAINING
            self._ready.set()

    def close(self) -> None:
        self.state = SessionState.CLOSED
        self.outbound.clear()
        self._ready.set()

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "stream_id": self.stream_id,
            "state": self.state.value,
            "stream_kinds": sorted(kind.value for kind in self.stream_kinds),
            "queued": len(self.outbound),
            "dropped_frames": self.dropped_frames,
            "dropped_events": self.dropped_events,
            "generation": self.generation,
            "last_sent": self.last_sent,
            "last_acked": self.last_acked,
        }


SessionHook = Callable[[ClientSession], Any]


class SessionManager:
    def __init__(
        self,
        handoff: Queue,
        capacity: int = 8,
        publisher: StatePublisher | None = None,
        on_open: SessionHook | None = None,
        on_close: SessionHook | None = None,
    ):
        self.handoff = handoff
        self.capacity = capacity
        self.publisher = publisher
        self._on_open = on_open
        self._on_close = on_close
        self.sessions: Dict[str, ClientSession] = {}
        self._by_stream: Dict[str, Set[str]] = {}
        self._senders: Dict[str, asyncio.Task] = {}
        self._distributor: Optional[asyncio.Task] = None
        self.distributed = 0

    # ---------- Lifecycle ----------

    def start(self) -> None:
        if self._distributor is None or self._distributor.done():
            self._distributor = asyncio.create_task(self._distribute(), name="session-distributor")

    async def shutdown(self) -> None:
        if self._distributor is not None:
            self._distributor.cancel()
            try:
                await self._distributor
            except asyncio.CancelledError:
                pass
            self._distributor = None
        for session in list(self.sessions.values()):
            await self.disconnect(session, code=1001)
        if self.publisher is not None:
            self.publisher.close()

    # ---------- Sessions ----------

    async def connect(self, transport: Transport, stream_id: str) -> ClientSession:
        session = ClientSession(uuid.uuid4().hex, transport, stream_id, self.capacity)
        self.sessions[session.session_id] = session
        self._by_stream.setdefault(stream_id, set()).add(session.session_id)
        self._senders[session.session_id] = asyncio.create_task(
            self._send_loop(session), name=f"session-{session.session_id}"
        )
        await self._run_hook(self._on_open, session)
        logger.info("Session %s connected to stream '%s'", session.session_id, stream_id)
        return session

    async def handle_control(self, session: ClientSession, raw: Union[str, bytes, dict]) -> None:
        """Apply one client control message. Raises ProtocolViolation when it is malformed."""
        message = parse_control(raw)
        if isinstance(message, Subscribe):
            if session.state not in (SessionState.CONNECTING, SessionState.ACTIVE):
                raise ProtocolViolation(f"Cannot subscribe while {session.state.value}")
            # Confirm before activating so no update can overtake the confirmation.
            await session.transport.send_json({
                "type": "subscribed",
                "session_id": session.session_id,
                "stream_id": session.stream_id,
                "stream_kinds": sorted(kind.value for kind in message.stream_kinds),
            })
            session.subscribe(message.stream_kinds)
        elif isinstance(message, Unsubscribe):
            session.begin_drain()
        elif isinstance(message, Ack):
            session.ack(message.sequence_id)

    async def wait_drained(self, session: ClientSession) -> None:
        """Wait for the session's sender to finish its remaining queue."""
        sender = self._senders.get(session.session_id)
        if sender is None or sender.done():
            return
        try:
            await sender
        except asyncio.CancelledError:
            if not sender.cancelled():
                raise

    async def disconnect(self, session: ClientSession, code: int = 1000) -> None:
        if self.sessions.pop(session.session_id, None) is None:
            return
        self._by_stream.get(session.stream_id, set()).discard(session.session_id)
        if not self._by_stream.get(session.stream_id):
            self._by_stream.pop(session.stream_id, None)
        session.close()
        sender = self._senders.pop(session.session_id, None)
        if sender is not None and sender is not asyncio.current_task():
            sender.cancel()
        await session.transport.close(code=code)
        await self._run_hook(self._on_close, session)
        logger.info(
            "Session %s closed (sent=%d, dropped=%d)", session.session_id, session.sent, session.dropped_frames
        )

    def sessions_for(self, stream_id: str) -> list[ClientSession]:
        return [self.sessions[sid] for sid in sorted(self._by_stream.get(stream_id, ()))]

    async def _send_loop(self, session: ClientSession) -> None:
        try:
            await session.run_sender()
        except TransportError as exc:
            logger.warning("Session %s transport failed: %s", session.session_id, exc)
            await self.disconnect(session, code=1011)
            return
        except asyncio.CancelledError:
            return
        # Drained after unsubscribe.
        await self.disconnect(session)

    @staticmethod
    async def _run_hook(hook: SessionHook | None, session: ClientSession) -> None:
        if hook is None:
            return
        try:
            # Hooks write session metadata to the database; keep that off the event loop.
            await asyncio.to_thread(hook, session)
        except Exception:
            logger.exception("Session hook failed for %s", session.session_id)

    # ---------- Distribution ----------

    def dispatch(self, item: Outbound) -> int:
        """Fan one item out to its stream's sessions. Returns how many accepted it."""
        stream_id = item.stream_id if isinstance(item, PipelineEvent) else item.state.stream_id
        accepted = 0
        for session in self.sessions_for(stream_id):
            if session.enqueue(item):
                accepted += 1
        self.distributed += 1
        return accepted

    def pump(self, limit: int = MAX_ITEMS_PER_PUMP) -> list[Outbound]:
        """Drain up to ``limit`` items from the handoff queue without blocking."""
        items = []
        while len(items) < limit:
            try:
                item = self.handoff.get_nowait()
            except Empty:
                break
            self.dispatch(item)
            items.append(item)
        return items

    def _mirror(self, items: list[Outbound]) -> None:
        for item in items:
            if isinstance(item, PipelineResult):
                update = StateUpdate.from_result(item)
                self.publisher.publish(update.stream_id, update.model_dump(mode="json"))

    async def _distribute(self) -> None:
        while True:
            items = []
            try:
                items = self.pump()
                if items and self.publisher is not None:
                    await asyncio.to_thread(self._mirror, items)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Session distributor iteration failed")
            if not items:
                await asyncio.sleep(DISTRIBUTOR_IDLE_SECONDS)
