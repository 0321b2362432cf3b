"""Shared machinery for the direct and group call coordinators.

A coordinator owns one CallSession. Every mutation of that session runs
under the coordinator lock, from a signal handler, a transport callback or
an intent method; `close()` is the only exception and never waits for it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aiortc import RTCSessionDescription

from ..net import protocol
from ..net.collaborators import Directory, ParticipantIdentity, SignalBus, SubscriptionFilter
from ..net.protocol import CallSignal, PublishError
from .config import CallConfig
from .incoming import IncomingCall
from .media import LocalStream, MediaError, MediaSession, RemoteMediaSink
from .peer_link import InvalidSignalingState, PeerCallbacks, PeerConnectionFactory, PeerLink
from .session import CallSession, CallStatus, ParticipantLink, SeenSignals


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]


@dataclass
class CoordinatorCallbacks:
    on_log: Optional[AsyncCallback] = None  # (message: str)
    on_status: Optional[AsyncCallback] = None  # (status: CallStatus)
    on_participants: Optional[AsyncCallback] = None  # (participants: list[ParticipantLink])
    on_remote_track: Optional[AsyncCallback] = None  # (participant_id: str, track)
    on_alert: Optional[AsyncCallback] = None  # (message: str)
    on_close: Optional[AsyncCallback] = None  # ()


def description_from_payload(payload: Any) -> RTCSessionDescription:
    return RTCSessionDescription(sdp=str(payload["sdp"]), type=str(payload["type"]))


class CallCoordinator:
    group = False

    def __init__(
        self,
        conversation_id: str,
        self_id: str,
        self_name: str,
        bus: SignalBus,
        directory: Directory,
        media: MediaSession,
        config: Optional[CallConfig] = None,
        callbacks: Optional[CoordinatorCallbacks] = None,
        pc_factory: Optional[PeerConnectionFactory] = None,
    ):
        self.conversation_id = conversation_id
        self.self_id = self_id
        self.self_name = self_name
        self.session = CallSession()

        self._bus = bus
        self._directory = directory
        self._media = media
        self._config = config or CallConfig.from_env()
        self._callbacks = callbacks or CoordinatorCallbacks()
        self._pc_factory = pc_factory
        self._rtc_config = self._config.rtc_configuration()

        self._lock = asyncio.Lock()
        self._alive = True
        self._subscription: Optional[Any] = None
        self._seen = SeenSignals()
        self._members: Dict[str, ParticipantIdentity] = {}
        self._sinks: Dict[str, RemoteMediaSink] = {}
        self._ring_timer: Optional[asyncio.Task[None]] = None
        self._close_task: Optional[asyncio.Task[None]] = None

    @property
    def status(self) -> CallStatus:
        return self.session.status

    @property
    def alive(self) -> bool:
        return self._alive

    @property
    def local_stream(self) -> Optional[LocalStream]:
        return self.session.local_stream

    def participants(self) -> List[ParticipantLink]:
        return list(self.session.participants.values())

    # ----------------------
    # Intents
    # ----------------------
    async def open(self, incoming: Optional[IncomingCall] = None) -> None:
        """Subscribe and either start calling or ring for `incoming`."""
        if incoming is not None and incoming.group != self.group:
            raise ValueError("incoming call kind does not match coordinator")
        await self._subscribe()
        if incoming is None:
            await self.start_call()
            return
        async with self._lock:
            if self.status is not CallStatus.IDLE:
                return
            self._seen.add(incoming.signal_id)
            self._on_ringing(incoming)
            self.session.add_participant(incoming.caller_id, incoming.caller_name)
            await self._advance(CallStatus.RINGING)
            await self._emit_participants()

    async def start_call(self) -> None:
        raise NotImplementedError

    async def accept(self) -> None:
        raise NotImplementedError

    async def reject(self) -> None:
        raise NotImplementedError

    async def end_call(self) -> None:
        async with self._lock:
            if not self._alive:
                return
            await self._end_locked(notify_remote=True)

    async def set_video_enabled(self, enabled: bool) -> None:
        stream = self.session.local_stream
        if stream is not None:
            # Applies to every link at once: they all share these tracks.
            self._media.set_video_enabled(stream, enabled)

    async def set_audio_enabled(self, enabled: bool) -> None:
        stream = self.session.local_stream
        if stream is not None:
            self._media.set_audio_enabled(stream, enabled)

    async def close(self) -> None:
        """Tear the session down without waiting for in-flight handlers."""
        if not self._alive:
            return
        self._alive = False
        logger.info("call close conv=%s status=%s", self.conversation_id, self.status.value)
        self._cancel_ring_timer()
        current = asyncio.current_task()
        if self._close_task is not None and self._close_task is not current:
            self._close_task.cancel()
        participants = self.session.remove_all()
        handle, self._subscription = self._subscription, None
        for p in participants:
            await self._close_participant(p)
        self._release_media()
        if handle is not None:
            try:
                await self._bus.unsubscribe(handle)
            except Exception:
                logger.warning("call unsubscribe failed conv=%s", self.conversation_id, exc_info=True)

    # ----------------------
    # Subclass hooks
    # ----------------------
    def _on_ringing(self, incoming: IncomingCall) -> None:
        pass

    async def _dispatch(self, signal: CallSignal) -> None:
        raise NotImplementedError

    async def _on_transport_state(self, participant_id: str, state: str) -> None:
        raise NotImplementedError

    async def _end_locked(self, notify_remote: bool) -> None:
        raise NotImplementedError

    # ----------------------
    # Signal intake
    # ----------------------
    async def _subscribe(self) -> None:
        if self._subscription is not None:
            return
        flt = SubscriptionFilter(recipient_id=self.self_id, conversation_id=self.conversation_id)
        self._subscription = await self._bus.subscribe(flt, self._on_signal)

    async def _on_signal(self, signal: CallSignal) -> None:
        if not self._alive or signal.conversation_id != self.conversation_id:
            return
        if signal.group != self.group:
            logger.debug("call signal for other call kind dropped type=%s group=%s", signal.type, signal.group)
            return
        if not self._seen.add(signal.signal_id):
            logger.info("call duplicate signal dropped type=%s id=%s", signal.type, signal.signal_id)
            return
        async with self._lock:
            if not self._alive:
                return
            logger.info("call signal type=%s from=%s status=%s", signal.type, signal.sender_id, self.status.value)
            try:
                await self._dispatch(signal)
            except InvalidSignalingState as e:
                logger.warning("call signal dropped type=%s from=%s: %s", signal.type, signal.sender_id, e)
            except Exception:
                logger.exception("call signal handler failed type=%s from=%s", signal.type, signal.sender_id)

    # ----------------------
    # Helpers
    # ----------------------
    async def _publish(self, signal: CallSignal) -> bool:
        if not self._alive:
            return False
        try:
            await self._bus.publish(signal)
        except PublishError as e:
            logger.error("call publish failed type=%s to=%s: %s", signal.type, signal.recipient_id, e)
            await self._alert("Could not reach the other side, the call may not connect.")
            return False
        return True

    async def _list_members(self) -> Optional[List[ParticipantIdentity]]:
        """Other members of the conversation, or None after alerting on a lookup failure."""
        try:
            return await self._directory.list_other_members(self.conversation_id, self.self_id)
        except Exception as e:
            logger.error("call member lookup failed conv=%s: %s", self.conversation_id, e)
            await self._alert("Could not load the conversation members.")
            return None

    async def _acquire_media(self) -> bool:
        try:
            stream = await self._media.acquire(self._config.video_enabled, self._config.audio_enabled)
        except MediaError as e:
            logger.error("call media unavailable conv=%s: %s", self.conversation_id, e)
            await self._alert("Cannot access camera/microphone. Please grant permission.")
            return False
        if not self._alive:
            # Closed while the devices were opening.
            self._media.release(stream)
            return False
        self.session.local_stream = stream
        return True

    def _release_media(self) -> None:
        stream, self.session.local_stream = self.session.local_stream, None
        if stream is not None:
            self._media.release(stream)

    def _new_peer_link(self, participant_id: str) -> PeerLink:
        link = PeerLink(
            participant_id,
            self.session.local_stream,
            callbacks=PeerCallbacks(
                on_log=self._log,
                on_state_change=self._on_peer_state,
                on_ice_candidate=self._on_local_ice,
                on_remote_track=self._on_remote_track,
            ),
            rtc_config=self._rtc_config,
            pc_factory=self._pc_factory,
        )
        logger.debug("call created peer link participant=%s", participant_id)
        return link

    async def _close_participant(self, participant: ParticipantLink) -> None:
        link, participant.peer_link = participant.peer_link, None
        if link is not None:
            await link.close()
        sink = self._sinks.pop(participant.participant_id, None)
        if sink is not None:
            await sink.stop()

    async def _advance(self, status: CallStatus) -> None:
        if not self.session.advance(status):
            return
        logger.info("call status conv=%s status=%s", self.conversation_id, status.value)
        if status in (CallStatus.CALLING, CallStatus.RINGING):
            self._start_ring_timer()
        else:
            self._cancel_ring_timer()
        if self._callbacks.on_status:
            await self._callbacks.on_status(status)

    def _schedule_close(self) -> None:
        if self._close_task is None:
            self._close_task = asyncio.create_task(self._close_after_grace(), name="call-close")

    async def _close_after_grace(self) -> None:
        await asyncio.sleep(self._config.end_grace_delay)
        await self.close()
        if self._callbacks.on_close:
            await self._callbacks.on_close()

    def _start_ring_timer(self) -> None:
        if self._config.ring_timeout is None or self._ring_timer is not None:
            return
        self._ring_timer = asyncio.create_task(self._ring_timeout(self._config.ring_timeout), name="call-ring-timeout")

    def _cancel_ring_timer(self) -> None:
        timer, self._ring_timer = self._ring_timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def _ring_timeout(self, delay: float) -> None:
        await asyncio.sleep(delay)
        async with self._lock:
            if not self._alive or self.status not in (CallStatus.CALLING, CallStatus.RINGING):
                return
            logger.info("call ring timeout conv=%s status=%s", self.conversation_id, self.status.value)
            await self._alert("No answer.")
            await self._end_locked(notify_remote=True)

    # ----------------------
    # Peer link callbacks
    # ----------------------
    async def _on_local_ice(self, participant_id: str, candidate: protocol.IceCandidateDict) -> None:
        if not self._alive:
            return
        logger.debug("call local ice participant=%s", participant_id)
        await self._publish(protocol.make_ice(self.conversation_id, self.self_id, participant_id, candidate, group=self.group))

    async def _on_peer_state(self, participant_id: str, state: str) -> None:
        async with self._lock:
            if not self._alive or self.status is CallStatus.ENDED:
                return
            if self.session.get(participant_id) is None:
                return
            try:
                await self._on_transport_state(participant_id, state)
            except Exception:
                logger.exception("call transport handler failed participant=%s state=%s", participant_id, state)
            await self._emit_participants()

    async def _on_remote_track(self, participant_id: str, track: Any) -> None:
        participant = self.session.get(participant_id)
        if participant is None or not self._alive:
            return
        participant.remote_stream.add(track)
        if self._config.remote_sink != "none":
            sink = self._sinks.setdefault(participant_id, RemoteMediaSink(self._config.remote_sink))
            await sink.add_track(track)
        if self._callbacks.on_remote_track:
            await self._callbacks.on_remote_track(participant_id, track)

    # ----------------------
    # Callback plumbing
    # ----------------------
    async def _emit_participants(self) -> None:
        if self._callbacks.on_participants:
            await self._callbacks.on_participants(self.participants())

    async def _alert(self, message: str) -> None:
        await self._log(message)
        if self._callbacks.on_alert:
            await self._callbacks.on_alert(message)

    async def _log(self, message: str) -> None:
        if self._callbacks.on_log:
            await self._callbacks.on_log(message)
