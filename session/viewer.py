import asyncio
import enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from constants import REGISTRY_SCHEME
from errors import ConnectivityLost, DiscoveryExhausted, LookupFailed, NegotiationFailed, RelayConnectError
from schemas.signaling import (
    AnswerMessage, CandidateReceived, IceCandidateMessage, JoinRoom, OfferReceived, RelayError, UserJoined, Welcome,
)
from session.discovery import ConnectionDiscovery, ResolvedEndpoint
from session.registry_client import RegistryClient, endpoint_from_lookup
from session.signaling_client import SignalingConnection
from session.transport import PeerTransport, create_transport
from logging_config import get_logger

logger = get_logger(__name__)

HOST_UNREACHABLE = "Connection to host failed. They may be offline or behind a firewall."


class ViewerState(str, enum.Enum):
    IDLE = "idle"
    JOIN_SENT = "join-sent"
    OFFER_RECEIVED = "offer-received"
    ANSWER_SENT = "answer-sent"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


TERMINAL_STATES = (ViewerState.FAILED, ViewerState.CLOSED)


class ViewerSession:
    """Joins one room and holds at most one peer session, with that room's host."""

    def __init__(self, room_code: str, discovery: Optional[ConnectionDiscovery] = None,
                 registry: Optional[RegistryClient] = None,
                 transport_factory: Callable[[], PeerTransport] = create_transport,
                 scheme: str = REGISTRY_SCHEME):
        if not room_code or not room_code.strip():
            raise ValueError("Please enter a room code")
        self.room_code = room_code.strip()
        self.discovery = discovery or ConnectionDiscovery()
        self.registry = registry
        self.transport_factory = transport_factory
        self.scheme = scheme
        self.state = ViewerState.IDLE
        self.error: Optional[Exception] = None
        self.host_id: Optional[str] = None
        self.transport: Optional[PeerTransport] = None
        self.signaling: Optional[SignalingConnection] = None
        self.endpoint: Optional[ResolvedEndpoint] = None
        self._events_task: Optional[asyncio.Task] = None
        self._state_listeners: List[Callable[[ViewerState], None]] = []
        self._error_listeners: List[Callable[[Exception], None]] = []
        self._track_listeners: List[Callable[[Any], None]] = []

    @property
    def active(self) -> bool:
        return self.state not in TERMINAL_STATES

    def on_state_change(self, listener: Callable[[ViewerState], None]):
        self._state_listeners.append(listener)

    def on_error(self, listener: Callable[[Exception], None]):
        self._error_listeners.append(listener)

    def on_track(self, listener: Callable[[Any], None]):
        self._track_listeners.append(listener)

    async def resolve_and_connect(self) -> Tuple[ResolvedEndpoint, SignalingConnection]:
        """Registry lookup first; local discovery when the registry cannot help."""
        if self.registry is not None:
            try:
                endpoint = endpoint_from_lookup(await self.registry.lookup(self.room_code), self.scheme)
                logger.info(f"Using server URL from room lookup: {endpoint.url}")
                return endpoint, await self.discovery.connect_once(endpoint)
            except LookupFailed as e:
                logger.warning(f"Room lookup failed, trying local server: {e}")
            except RelayConnectError as e:
                logger.warning(f"Registered server unreachable, trying local server: {e}")
        return await self.discovery.connect()

    async def join(self):
        if self.state != ViewerState.IDLE:
            raise RuntimeError(f"Viewer already joined (state {self.state.value})")
        try:
            self.endpoint, self.signaling = await self.resolve_and_connect()
        except DiscoveryExhausted as e:
            await self._fail(e)
            raise

        await self.signaling.send(JoinRoom(room_id=self.room_code))
        self._transition(ViewerState.JOIN_SENT)
        logger.info(f"Joined room {self.room_code}, waiting for stream")
        self._events_task = asyncio.create_task(self.run())

    async def run(self):
        async for event in self.signaling.events():
            await self.handle_event(event)
        if self.active and self.state != ViewerState.CONNECTED:
            await self._fail(ConnectivityLost("Lost connection to the signaling server before the stream started"))

    async def handle_event(self, event):
        if isinstance(event, OfferReceived):
            await self._on_offer(event.sender, event.offer)
        elif isinstance(event, CandidateReceived):
            await self._on_candidate(event.sender, event.candidate)
        elif isinstance(event, Welcome):
            logger.debug(f"Relay assigned member id {event.member_id}")
        elif isinstance(event, UserJoined):
            logger.debug(f"Another participant joined the room: {event.member_id}")
        elif isinstance(event, RelayError):
            logger.warning(f"Relay rejected a message: {event.message}")

    async def _on_offer(self, sender: str, offer: Dict[str, Any]):
        if self.state != ViewerState.JOIN_SENT:
            logger.info(f"Ignoring offer from {sender} in state {self.state.value}")
            return
        logger.info(f"Received offer from: {sender}")
        self.host_id = sender
        self._transition(ViewerState.OFFER_RECEIVED)

        transport = self.transport = self.transport_factory()
        transport.on_candidate(self._send_candidate)
        transport.on_state_change(self._on_transport_state)
        transport.on_track(self._on_track)

        try:
            await transport.apply_remote(offer)
            answer = await transport.create_answer()
            await self.signaling.send(AnswerMessage(room_id=self.room_code, answer=answer, target=sender))
            if self.state == ViewerState.OFFER_RECEIVED:
                self._transition(ViewerState.ANSWER_SENT)
            await transport.announce_candidates()
        except Exception as e:
            logger.error(f"Negotiation with host failed: {e}", exc_info=True)
            await self._fail(NegotiationFailed(f"Negotiation with host failed: {e}"))

    async def _send_candidate(self, candidate: Dict[str, Any]):
        if not self.active or self.signaling is None:
            return
        await self.signaling.send(IceCandidateMessage(room_id=self.room_code, candidate=candidate, target=self.host_id))

    async def _on_candidate(self, sender: str, candidate: Optional[Dict[str, Any]]):
        if self.transport is None or not self.active or not candidate or sender != self.host_id:
            logger.debug(f"Discarding ICE candidate from {sender}")
            return
        try:
            await self.transport.add_candidate(candidate)
        except Exception as e:
            logger.error(f"Failed to add ICE candidate: {e}")

    async def _on_transport_state(self, state: str):
        logger.info(f"ICE connection state: {state}")
        if not self.active:
            return
        if state == "connected":
            self._transition(ViewerState.CONNECTED)
        elif state in ("failed", "disconnected"):
            await self._fail(ConnectivityLost(HOST_UNREACHABLE))
        elif state == "closed":
            await self.leave()

    def _on_track(self, track):
        for listener in self._track_listeners:
            listener(track)

    def _transition(self, state: ViewerState):
        if not self.active or self.state == state:
            return
        logger.info(f"Viewer {self.room_code}: {self.state.value} -> {state.value}")
        self.state = state
        for listener in self._state_listeners:
            try:
                listener(state)
            except Exception as e:
                logger.error(f"State listener failed: {e}", exc_info=True)

    async def _fail(self, error: Exception):
        if not self.active:
            return
        self.error = error
        self._transition(ViewerState.FAILED)
        for listener in self._error_listeners:
            try:
                listener(error)
            except Exception as e:
                logger.error(f"Error listener failed: {e}", exc_info=True)
        await self._teardown()

    async def leave(self):
        """Close the peer session and the signaling connection. Safe to call repeatedly."""
        self._transition(ViewerState.CLOSED)
        await self._teardown()

    async def _teardown(self):
        transport, self.transport = self.transport, None
        if transport is not None:
            try:
                await transport.close()
            except Exception as e:
                logger.error(f"Error closing peer connection: {e}")

        if self._events_task is not None and self._events_task is not asyncio.current_task():
            self._events_task.cancel()
            try:
                await self._events_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Signaling event loop ended with error: {e}")
        self._events_task = None

        signaling, self.signaling = self.signaling, None
        if signaling is not None:
            await signaling.close()
