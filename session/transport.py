"""aiortc peer connection behind the small surface the session state machines use.

aiortc gathers every local candidate before setLocalDescription returns and
embeds them in the SDP. To still trickle them to the remote side (browsers
apply them as they arrive) the adapter extracts them from the local
description; the owning session announces them once its offer or answer has
been sent, so the remote never sees a candidate before the description.
"""

from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from constants import STUN_URL, TURN_URL, TURN_USERNAME, TURN_CREDENTIAL
from logging_config import get_logger

logger = get_logger(__name__)

CandidateCallback = Callable[[Dict[str, Any]], Awaitable[None]]
StateCallback = Callable[[str], Awaitable[None]]


def default_ice_servers() -> List[RTCIceServer]:
    servers = [RTCIceServer(urls=[STUN_URL])]
    if TURN_URL:
        servers.append(RTCIceServer(urls=[TURN_URL], username=TURN_USERNAME, credential=TURN_CREDENTIAL))
    return servers


def candidates_from_description(sdp: str) -> List[Dict[str, Any]]:
    """Pull `a=candidate:` lines out of an SDP blob, tagged with their media section."""
    candidates = []
    mline_index = -1
    mid: Optional[str] = None
    for line in sdp.splitlines():
        if line.startswith("m="):
            mline_index += 1
            mid = None
        elif line.startswith("a=mid:"):
            mid = line[len("a=mid:"):]
        elif line.startswith("a=candidate:") and mline_index >= 0:
            candidates.append({
                "candidate": line[len("a="):],
                "sdpMid": mid,
                "sdpMLineIndex": mline_index,
            })
    return candidates


class PeerTransport:
    """One WebRTC peer connection."""

    def __init__(self, pc: RTCPeerConnection):
        self.pc = pc
        self._on_candidate: Optional[CandidateCallback] = None
        self._on_state: Optional[StateCallback] = None
        self._on_track: Optional[Callable[[Any], None]] = None

        @pc.on("connectionstatechange")
        async def on_connectionstatechange():
            logger.debug(f"Connection state is {pc.connectionState}")
            if self._on_state:
                await self._on_state(pc.connectionState)

        @pc.on("iceconnectionstatechange")
        async def on_iceconnectionstatechange():
            # aiortc reports a dropped path here, not in connectionState
            if pc.iceConnectionState == "disconnected" and self._on_state:
                await self._on_state("disconnected")

        @pc.on("track")
        def on_track(track):
            logger.info(f"Received {track.kind} track")
            if self._on_track:
                self._on_track(track)

    @property
    def track_count(self) -> int:
        return sum(1 for sender in self.pc.getSenders() if sender.track is not None)

    def on_candidate(self, callback: CandidateCallback):
        self._on_candidate = callback

    def on_state_change(self, callback: StateCallback):
        self._on_state = callback

    def on_track(self, callback: Callable[[Any], None]):
        self._on_track = callback

    def add_tracks(self, tracks: Iterable[Any]):
        for track in tracks:
            self.pc.addTrack(track)

    async def create_offer(self) -> Dict[str, str]:
        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        return self._local_description()

    async def create_answer(self) -> Dict[str, str]:
        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)
        return self._local_description()

    async def apply_remote(self, description: Dict[str, Any]):
        await self.pc.setRemoteDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def add_candidate(self, candidate: Dict[str, Any]):
        line = candidate.get("candidate") or ""
        if not line:
            # end-of-candidates marker
            return
        if line.startswith("candidate:"):
            line = line.split(":", 1)[1]
        ice = candidate_from_sdp(line)
        ice.sdpMid = candidate.get("sdpMid")
        ice.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self.pc.addIceCandidate(ice)

    async def announce_candidates(self):
        """Hand every local candidate to the registered callback."""
        if not self._on_candidate or self.pc.localDescription is None:
            return
        for candidate in candidates_from_description(self.pc.localDescription.sdp):
            await self._on_candidate(candidate)

    async def close(self):
        await self.pc.close()

    def _local_description(self) -> Dict[str, str]:
        description = self.pc.localDescription
        return {"type": description.type, "sdp": description.sdp}


def create_transport(ice_servers: Optional[List[RTCIceServer]] = None) -> PeerTransport:
    config = RTCConfiguration(iceServers=ice_servers if ice_servers is not None else default_ice_servers())
    return PeerTransport(RTCPeerConnection(config))
