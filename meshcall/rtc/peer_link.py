"""One negotiated WebRTC connection to one remote participant."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from aiortc import (
    RTCIceCandidate,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.exceptions import InvalidAccessError, InvalidStateError
from aiortc.rtcconfiguration import RTCConfiguration
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..net.protocol import CallError, IceCandidateDict
from .media import LocalStream


logger = logging.getLogger(__name__)


AsyncPeerCallback = Callable[..., Awaitable[None]]
PeerConnectionFactory = Callable[[Optional[RTCConfiguration]], Any]

# Transport states the coordinators treat as the end of a link.
TERMINAL_STATES = frozenset({"failed", "disconnected"})


class InvalidSignalingState(CallError):
    pass


def candidate_to_json(candidate: RTCIceCandidate) -> IceCandidateDict:
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": getattr(candidate, "sdpMid", None),
        "sdpMLineIndex": getattr(candidate, "sdpMLineIndex", None),
    }


def candidate_from_json(obj: Dict[str, Any]) -> RTCIceCandidate:
    cand_sdp = obj.get("candidate")
    if not isinstance(cand_sdp, str) or not cand_sdp:
        raise ValueError("missing candidate")
    # Browsers prefix the attribute name, aiortc's parser does not expect it.
    if cand_sdp.startswith("candidate:"):
        cand_sdp = cand_sdp[len("candidate:"):]
    cand = candidate_from_sdp(cand_sdp)
    cand.sdpMid = obj.get("sdpMid")
    cand.sdpMLineIndex = obj.get("sdpMLineIndex")
    return cand


def _default_pc_factory(rtc_config: Optional[RTCConfiguration]) -> RTCPeerConnection:
    return RTCPeerConnection(configuration=rtc_config)


@dataclass
class PeerCallbacks:
    on_log: Optional[AsyncPeerCallback] = None  # (msg: str)
    on_state_change: Optional[AsyncPeerCallback] = None  # (participant_id: str, state: str)
    on_ice_candidate: Optional[AsyncPeerCallback] = None  # (participant_id: str, candidate: dict)
    on_remote_track: Optional[AsyncPeerCallback] = None  # (participant_id: str, track)


class PeerLink:
    def __init__(
        self,
        participant_id: str,
        local_stream: Optional[LocalStream],
        callbacks: Optional[PeerCallbacks] = None,
        rtc_config: Optional[RTCConfiguration] = None,
        pc_factory: Optional[PeerConnectionFactory] = None,
    ):
        self.participant_id = participant_id
        self._callbacks = callbacks or PeerCallbacks()
        self._pc = (pc_factory or _default_pc_factory)(rtc_config)
        self._closed = False
        self._remote_set = False
        # Remote candidates that arrived before the remote description.
        self._pending_candidates: Deque[Dict[str, Any]] = deque()

        if local_stream is not None:
            # All local tracks go in before the first offer/answer.
            for track in local_stream.all_tracks():
                self._pc.addTrack(track)

        @self._pc.on("icecandidate")
        async def on_icecandidate(event) -> None:
            candidate = getattr(event, "candidate", event)
            if candidate is None or self._closed:
                return
            if self._callbacks.on_ice_candidate:
                await self._callbacks.on_ice_candidate(self.participant_id, candidate_to_json(candidate))

        @self._pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            if self._closed:
                return
            state = self._pc.connectionState
            await self._log(f"pc[{self.participant_id}] connectionState={state}")
            logger.info("peer state participant=%s state=%s", self.participant_id, state)
            if self._callbacks.on_state_change:
                await self._callbacks.on_state_change(self.participant_id, state)

        @self._pc.on("track")
        async def on_track(track) -> None:
            if self._closed:
                return
            await self._log(f"pc[{self.participant_id}] remote track kind={track.kind}")
            if self._callbacks.on_remote_track:
                await self._callbacks.on_remote_track(self.participant_id, track)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def connection_state(self) -> str:
        return "closed" if self._closed else self._pc.connectionState

    @property
    def signaling_state(self) -> str:
        return "closed" if self._closed else self._pc.signalingState

    @property
    def has_remote_description(self) -> bool:
        return self._remote_set

    @property
    def pending_candidate_count(self) -> int:
        return len(self._pending_candidates)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._pending_candidates.clear()
        await self._pc.close()

    async def create_offer(self) -> RTCSessionDescription:
        self._ensure_open()
        try:
            offer = await self._pc.createOffer()
            await self._pc.setLocalDescription(offer)
        except InvalidStateError as e:
            raise InvalidSignalingState(str(e)) from e
        self._ensure_open()
        assert self._pc.localDescription is not None
        return self._pc.localDescription

    async def create_answer(self, remote_offer: RTCSessionDescription) -> RTCSessionDescription:
        await self.set_remote_description(remote_offer)
        self._ensure_open()
        try:
            answer = await self._pc.createAnswer()
            await self._pc.setLocalDescription(answer)
        except InvalidStateError as e:
            raise InvalidSignalingState(str(e)) from e
        self._ensure_open()
        assert self._pc.localDescription is not None
        return self._pc.localDescription

    async def set_remote_description(self, description: RTCSessionDescription) -> None:
        self._ensure_open()
        state = self._pc.signalingState
        if description.type == "offer" and state != "stable":
            raise InvalidSignalingState(f"offer from {self.participant_id} while {state}")
        if description.type == "answer" and state != "have-local-offer":
            raise InvalidSignalingState(f"answer from {self.participant_id} while {state}")
        if description.type not in ("offer", "answer"):
            raise InvalidSignalingState(f"unsupported description type {description.type!r}")
        try:
            await self._pc.setRemoteDescription(description)
        except (InvalidStateError, InvalidAccessError) as e:
            raise InvalidSignalingState(str(e)) from e
        self._remote_set = True
        await self._flush_candidates()

    async def add_remote_ice_candidate(self, candidate_obj: Any) -> None:
        if self._closed or not candidate_obj or not isinstance(candidate_obj, dict):
            return
        if not self._remote_set:
            self._pending_candidates.append(candidate_obj)
            logger.debug("peer ice buffered participant=%s pending=%s", self.participant_id, len(self._pending_candidates))
            return
        await self._apply_candidate(candidate_obj)

    async def _flush_candidates(self) -> None:
        while self._pending_candidates and not self._closed:
            await self._apply_candidate(self._pending_candidates.popleft())

    async def _apply_candidate(self, candidate_obj: Dict[str, Any]) -> None:
        try:
            cand = candidate_from_json(candidate_obj)
        except Exception as e:
            logger.warning("peer ice malformed participant=%s: %s", self.participant_id, e)
            return
        try:
            await self._pc.addIceCandidate(cand)
        except Exception as e:
            # Not fatal: connectivity may still come from other candidates.
            logger.warning("peer ice rejected participant=%s: %s", self.participant_id, e)

    def _ensure_open(self) -> None:
        if self._closed:
            raise InvalidSignalingState(f"peer link {self.participant_id} is closed")

    async def _log(self, msg: str) -> None:
        if self._callbacks.on_log:
            await self._callbacks.on_log(msg)
