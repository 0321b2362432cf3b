"""Call session state owned by one coordinator."""

from __future__ import annotations

import enum
import time
from collections import deque
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Deque, Dict, FrozenSet, List, Mapping, Optional, Set

from ..net.protocol import CallError
from .media import LocalStream, RemoteStream
from .peer_link import PeerLink


class IllegalTransition(CallError):
    pass


class CallStatus(str, enum.Enum):
    IDLE = "idle"
    CALLING = "calling"
    RINGING = "ringing"
    CONNECTED = "connected"
    ENDED = "ended"


TRANSITIONS: Dict[CallStatus, FrozenSet[CallStatus]] = {
    CallStatus.IDLE: frozenset({CallStatus.CALLING, CallStatus.RINGING, CallStatus.CONNECTED, CallStatus.ENDED}),
    CallStatus.CALLING: frozenset({CallStatus.CONNECTED, CallStatus.ENDED}),
    CallStatus.RINGING: frozenset({CallStatus.CONNECTED, CallStatus.ENDED}),
    CallStatus.CONNECTED: frozenset({CallStatus.ENDED}),
    CallStatus.ENDED: frozenset(),
}

if set(TRANSITIONS) != set(CallStatus):
    raise IllegalTransition("transition table does not cover every call status")


@dataclass
class ParticipantLink:
    participant_id: str
    display_name: str = ""
    peer_link: Optional[PeerLink] = None
    remote_stream: RemoteStream = field(default_factory=RemoteStream)

    @property
    def label(self) -> str:
        return self.display_name or self.participant_id

    @property
    def connection_state(self) -> str:
        if self.peer_link is None:
            return "pending"
        return self.peer_link.connection_state


class CallSession:
    def __init__(self) -> None:
        self._status = CallStatus.IDLE
        self._participants: Dict[str, ParticipantLink] = {}
        self.local_stream: Optional[LocalStream] = None
        # Monotonic time of the first transport-level connection.
        self.started_at: Optional[float] = None

    @property
    def status(self) -> CallStatus:
        return self._status

    @property
    def participants(self) -> Mapping[str, ParticipantLink]:
        return MappingProxyType(self._participants)

    def advance(self, new: CallStatus) -> bool:
        """Move to `new`; returns False when already there."""
        if new is self._status:
            return False
        if new not in TRANSITIONS[self._status]:
            raise IllegalTransition(f"{self._status.value} -> {new.value}")
        self._status = new
        return True

    def add_participant(self, participant_id: str, display_name: str = "") -> ParticipantLink:
        existing = self._participants.get(participant_id)
        if existing is not None:
            if display_name and not existing.display_name:
                existing.display_name = display_name
            return existing
        link = ParticipantLink(participant_id=participant_id, display_name=display_name)
        self._participants[participant_id] = link
        return link

    def get(self, participant_id: str) -> Optional[ParticipantLink]:
        return self._participants.get(participant_id)

    def remove_participant(self, participant_id: str) -> Optional[ParticipantLink]:
        return self._participants.pop(participant_id, None)

    def remove_all(self) -> List[ParticipantLink]:
        removed = list(self._participants.values())
        self._participants.clear()
        return removed

    def mark_started(self, now: Optional[float] = None) -> bool:
        if self.started_at is not None:
            return False
        self.started_at = time.monotonic() if now is None else now
        return True

    def elapsed(self, now: Optional[float] = None) -> Optional[float]:
        if self.started_at is None:
            return None
        return max(0.0, (time.monotonic() if now is None else now) - self.started_at)


class SeenSignals:
    """Bounded memory of delivered signal ids, for dropping redeliveries."""

    def __init__(self, capacity: int = 512) -> None:
        self._capacity = capacity
        self._order: Deque[str] = deque()
        self._ids: Set[str] = set()

    def add(self, signal_id: str) -> bool:
        """Record an id; False when it was already seen."""
        if signal_id in self._ids:
            return False
        self._ids.add(signal_id)
        self._order.append(signal_id)
        if len(self._order) > self._capacity:
            self._ids.discard(self._order.popleft())
        return True


def format_call_duration(seconds: float) -> str:
    total = max(0, int(seconds))
    minutes, secs = divmod(total, 60)
    if minutes > 0:
        return f"{minutes} min {secs} s"
    return f"{secs} s"
