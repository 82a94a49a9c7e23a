"""Room membership and message fan-out for the signaling relay.

The relay knows nothing about negotiation: it tracks which member is in which
room and copies relayed payloads into the outboxes of the other members of
the same room. Every member owns one FIFO outbox that a single writer drains,
so messages from one sender reach each receiver in the order they were sent.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

from schemas.signaling import RELAYED_KINDS, Welcome, UserJoined, delivered
from logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class Member:
    member_id: str
    outbox: asyncio.Queue = field(default_factory=asyncio.Queue)
    room_code: Optional[str] = None


@dataclass
class Room:
    code: str
    members: Set[str] = field(default_factory=set)
    # Serialises join/relay/leave for this room only
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class Rendezvous:
    """Explicit owner of the relay's room and member tables.

    Rooms exist while they have members: the last member leaving removes the
    room. Mutations of one room happen under that room's lock; rooms never
    share a lock.
    """

    def __init__(self):
        self.rooms: Dict[str, Room] = {}
        self.members: Dict[str, Member] = {}

    def connect(self, member_id: Optional[str] = None) -> Member:
        """Register a new connection and queue its welcome message."""
        member = Member(member_id=member_id or str(uuid.uuid4()))
        self.members[member.member_id] = member
        member.outbox.put_nowait(Welcome(member_id=member.member_id).model_dump(by_alias=True))
        logger.info(f"Member {member.member_id} connected ({len(self.members)} connected)")
        return member

    async def join(self, room_code: str, member_id: str):
        member = self.members.get(member_id)
        if member is None:
            logger.warning(f"Join ignored: unknown member {member_id}")
            return

        if member.room_code == room_code:
            logger.debug(f"Member {member_id} already in room {room_code}")
            return
        if member.room_code is not None:
            await self._leave(member)

        notice = UserJoined(member_id=member_id).model_dump(by_alias=True)
        while True:
            room = self.rooms.get(room_code)
            if room is None:
                room = self.rooms[room_code] = Room(code=room_code)
                logger.info(f"Room {room_code} created")
            async with room.lock:
                # The last member may have left (and removed the room) while we waited
                if self.rooms.get(room_code) is not room:
                    continue
                if member_id not in self.members:
                    logger.debug(f"Member {member_id} disconnected before joining room {room_code}")
                    if not room.members:
                        del self.rooms[room_code]
                    return
                for other_id in room.members:
                    self._deliver(other_id, notice)
                room.members.add(member_id)
                member.room_code = room_code
                break
        logger.info(f"{member_id} joined room {room_code} ({len(room.members)} members)")

    async def relay(self, kind: str, room_code: str, sender_id: str, payload: Any, target: Optional[str] = None) -> int:
        """Fan a negotiation message out to the sender's room. Returns the number of receivers."""
        if kind not in RELAYED_KINDS:
            raise ValueError(f"Cannot relay message kind {kind!r}")

        room = self.rooms.get(room_code)
        if room is None or sender_id not in room.members:
            logger.warning(f"Dropped {kind} from {sender_id}: not a member of room {room_code}")
            return 0

        message = delivered(kind, sender_id, payload)
        receivers = 0
        async with room.lock:
            for other_id in room.members:
                if other_id == sender_id:
                    continue
                if target is not None and other_id != target:
                    continue
                if self._deliver(other_id, message):
                    receivers += 1
        logger.debug(f"Relayed {kind} from {sender_id} in room {room_code} to {receivers} members")
        return receivers

    async def disconnect(self, member_id: str):
        member = self.members.pop(member_id, None)
        if member is None:
            return
        if member.room_code is not None:
            await self._leave(member)
        logger.info(f"Member {member_id} disconnected ({len(self.members)} connected)")

    async def _leave(self, member: Member):
        room_code = member.room_code
        room = self.rooms.get(room_code)
        member.room_code = None
        if room is None:
            return
        async with room.lock:
            room.members.discard(member.member_id)
            if not room.members and self.rooms.get(room_code) is room:
                del self.rooms[room_code]
                logger.info(f"Room {room_code} is empty, removed")

    def _deliver(self, member_id: str, message: Dict[str, Any]) -> bool:
        # A member mid-disconnect is already gone from the table but may still be listed in its room
        member = self.members.get(member_id)
        if member is None:
            return False
        member.outbox.put_nowait(message)
        return True

    def room_members(self, room_code: str) -> Set[str]:
        room = self.rooms.get(room_code)
        return set(room.members) if room else set()
