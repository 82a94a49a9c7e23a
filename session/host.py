"""Host side: one capture stream fanned out to one peer session per viewer.

Every viewer gets its own negotiation state machine:

    NEW -> OFFER_SENT -> CONNECTED
      \\         \\           \\
       +---------+-----------+--> FAILED | CLOSED

Sessions live in `HostSession.sessions`, keyed by the viewer's relay member
id. A session is removed from the map when it reaches a terminal state, and
its transport is closed. Each viewer is sent its own relay subscription of
every capture track, so closing a peer connection only stops that
subscription; nothing a single viewer does (failing negotiation,
dropping off the network) touches another session or the capture stream.
"""

import asyncio
import enum
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from aiortc.contrib.media import MediaRelay

from errors import CaptureUnavailable, ConnectivityLost, DiscoveryExhausted, NegotiationFailed, RegistrationFailed
from schemas.signaling import (
    AnswerReceived, CandidateReceived, IceCandidateMessage, JoinRoom, OfferMessage, OfferReceived,
    RelayError, UserJoined, Welcome,
)
from session.discovery import ConnectionDiscovery, ResolvedEndpoint
from session.registry_client import RegistryClient
from session.rooms import generate_room_code
from session.signaling_client import SignalingConnection
from session.transport import PeerTransport, create_transport
from logging_config import get_logger

logger = get_logger(__name__)


class PeerState(str, enum.Enum):
    NEW = "new"
    OFFER_SENT = "offer-sent"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


TERMINAL_STATES = (PeerState.FAILED, PeerState.CLOSED)


@dataclass
class PeerSession:
    viewer_id: str
    transport: PeerTransport
    state: PeerState = PeerState.NEW
    error: Optional[Exception] = None

    @property
    def active(self) -> bool:
        return self.state not in TERMINAL_STATES


StateListener = Callable[[str, PeerState], None]


class HostSession:
    def __init__(self, capture, discovery: Optional[ConnectionDiscovery] = None,
                 registry: Optional[RegistryClient] = None,
                 transport_factory: Callable[[], PeerTransport] = create_transport,
                 room_code: Optional[str] = None):
        if capture is None:
            raise CaptureUnavailable("A host session needs a capture stream")
        self.capture = capture
        self.discovery = discovery or ConnectionDiscovery()
        self.registry = registry
        self.transport_factory = transport_factory
        self.room_code = room_code
        self.sessions: Dict[str, PeerSession] = {}
        # Copies every captured frame to each subscribed viewer
        self.relay = MediaRelay()
        self.signaling: Optional[SignalingConnection] = None
        self.endpoint: Optional[ResolvedEndpoint] = None
        self.registered = False
        self.stopped = False
        self._listeners: List[StateListener] = []
        self._events_task: Optional[asyncio.Task] = None

    def on_state_change(self, listener: StateListener):
        self._listeners.append(listener)

    async def start(self) -> str:
        """Connect to a signaling server, open the room and start serving viewers. Returns the room code."""
        logger.info("Starting stream...")
        try:
            self.endpoint, self.signaling = await self.discovery.connect()
        except DiscoveryExhausted:
            logger.error("Failed to connect to signaling server, releasing capture")
            self.capture.stop()
            raise

        self.room_code = self.room_code or generate_room_code()
        await self.signaling.send(JoinRoom(room_id=self.room_code))
        logger.info(f"Room created: {self.room_code}")

        await self.register()
        self._events_task = asyncio.create_task(self.run())
        return self.room_code

    async def register(self):
        """Publish the room in the registry. Best-effort: failure only costs cross-network discoverability."""
        if self.registry is None or self.endpoint is None:
            return
        try:
            ip, port = await self.registry.registration_address(self.endpoint)
            await self.registry.register(self.room_code, ip, port)
            self.registered = True
        except (RegistrationFailed, ValueError) as e:
            logger.warning(f"Room registration failed, viewers must know the server address: {e}")

    async def run(self):
        async for event in self.signaling.events():
            await self.handle_event(event)
        if not self.stopped:
            logger.warning("Signaling connection closed; connected viewers keep streaming, new viewers cannot join")

    async def handle_event(self, event):
        if isinstance(event, UserJoined):
            await self._on_viewer_joined(event.member_id)
        elif isinstance(event, AnswerReceived):
            await self._on_answer(event.sender, event.answer)
        elif isinstance(event, CandidateReceived):
            await self._on_candidate(event.sender, event.candidate)
        elif isinstance(event, Welcome):
            logger.debug(f"Relay assigned member id {event.member_id}")
        elif isinstance(event, RelayError):
            logger.warning(f"Relay rejected a message: {event.message}")
        elif isinstance(event, OfferReceived):
            logger.debug(f"Ignoring offer from {event.sender}: the host only makes offers")

    async def _on_viewer_joined(self, viewer_id: str):
        logger.info(f"User joined: {viewer_id}")
        previous = self.sessions.get(viewer_id)
        if previous is not None:
            logger.info(f"Viewer {viewer_id} re-joined, replacing its previous session")
            await self._release(previous, PeerState.CLOSED)

        session = PeerSession(viewer_id=viewer_id, transport=self.transport_factory())
        self.sessions[viewer_id] = session
        self._notify(session)

        transport = session.transport
        transport.add_tracks([self.relay.subscribe(track) for track in self.capture.tracks])
        transport.on_candidate(partial(self._send_candidate, viewer_id))
        transport.on_state_change(partial(self._on_transport_state, session))

        try:
            offer = await transport.create_offer()
            if not session.active:
                return
            await self.signaling.send(OfferMessage(room_id=self.room_code, offer=offer, target=viewer_id))
            self._transition(session, PeerState.OFFER_SENT)
            await transport.announce_candidates()
        except Exception as e:
            logger.error(f"Negotiation with viewer {viewer_id} failed: {e}", exc_info=True)
            await self._release(session, PeerState.FAILED, NegotiationFailed(str(e)))

    async def _send_candidate(self, viewer_id: str, candidate: Dict[str, Any]):
        session = self.sessions.get(viewer_id)
        if session is None or not session.active or self.signaling is None:
            return
        await self.signaling.send(IceCandidateMessage(room_id=self.room_code, candidate=candidate, target=viewer_id))

    async def _on_answer(self, viewer_id: str, answer: Dict[str, Any]):
        session = self.sessions.get(viewer_id)
        if session is None or not session.active:
            logger.debug(f"Discarding answer from unknown viewer {viewer_id}")
            return
        if session.state != PeerState.OFFER_SENT:
            logger.warning(f"Ignoring answer from {viewer_id} in state {session.state.value}")
            return
        try:
            await session.transport.apply_remote(answer)
            logger.info(f"Applied answer from viewer {viewer_id}, waiting for connectivity")
        except Exception as e:
            logger.error(f"Failed to apply answer from viewer {viewer_id}: {e}", exc_info=True)
            await self._release(session, PeerState.FAILED, NegotiationFailed(str(e)))

    async def _on_candidate(self, viewer_id: str, candidate: Optional[Dict[str, Any]]):
        session = self.sessions.get(viewer_id)
        if session is None or not session.active or not candidate:
            logger.debug(f"Discarding ICE candidate from {viewer_id}")
            return
        try:
            await session.transport.add_candidate(candidate)
        except Exception as e:
            logger.error(f"Failed to add ICE candidate from {viewer_id}: {e}")

    async def _on_transport_state(self, session: PeerSession, state: str):
        if not session.active:
            return
        if state == "connected":
            self._transition(session, PeerState.CONNECTED)
        elif state == "failed":
            await self._release(session, PeerState.FAILED, ConnectivityLost(f"Connection to viewer {session.viewer_id} failed"))
        elif state in ("disconnected", "closed"):
            await self._release(session, PeerState.CLOSED)

    def _transition(self, session: PeerSession, state: PeerState):
        if not session.active or session.state == state:
            return
        logger.info(f"Viewer {session.viewer_id}: {session.state.value} -> {state.value}")
        session.state = state
        self._notify(session)

    def _notify(self, session: PeerSession):
        for listener in self._listeners:
            try:
                listener(session.viewer_id, session.state)
            except Exception as e:
                logger.error(f"State listener failed: {e}", exc_info=True)

    async def _release(self, session: PeerSession, state: PeerState, error: Optional[Exception] = None):
        """Move a session to a terminal state, drop it from the map and close its transport."""
        if not session.active:
            return
        session.error = error
        self._transition(session, state)
        if self.sessions.get(session.viewer_id) is session:
            del self.sessions[session.viewer_id]
        try:
            await session.transport.close()
        except Exception as e:
            logger.error(f"Error closing transport for viewer {session.viewer_id}: {e}")

    async def close_viewer(self, viewer_id: str):
        session = self.sessions.get(viewer_id)
        if session is not None:
            await self._release(session, PeerState.CLOSED)

    async def stop(self):
        """Stop streaming. Capture is released before any await; safe to call repeatedly."""
        if self.stopped:
            return
        self.stopped = True
        logger.info("Stopping stream...")
        self.capture.stop()

        for session in list(self.sessions.values()):
            await self._release(session, PeerState.CLOSED)

        if self._events_task is not None and self._events_task is not asyncio.current_task():
            self._events_task.cancel()
            try:
                await self._events_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Signaling event loop ended with error: {e}")
        if self.signaling is not None:
            await self.signaling.close()
        logger.info("Stream cleanup completed")
