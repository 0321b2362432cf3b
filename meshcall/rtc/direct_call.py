"""One-to-one call coordinator.

The caller always produces the offer: the callee creates its peer link on
accept and waits for it. The caller's status turns `connected` once the
transport does.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, Optional, Tuple

from ..net import protocol
from ..net.protocol import CallSignal
from .coordinator import CallCoordinator, description_from_payload
from .incoming import IncomingCall
from .peer_link import TERMINAL_STATES, PeerLink
from .session import CallStatus, ParticipantLink


logger = logging.getLogger(__name__)


Handler = Callable[["DirectCallCoordinator", CallSignal], Awaitable[None]]


class DirectCallCoordinator(CallCoordinator):
    group = False

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._remote_id: Optional[str] = None

    @property
    def remote_id(self) -> Optional[str]:
        return self._remote_id

    @property
    def peer_link(self) -> Optional[PeerLink]:
        participant = self._remote()
        return participant.peer_link if participant else None

    def _remote(self) -> Optional[ParticipantLink]:
        if self._remote_id is None:
            return None
        return self.session.get(self._remote_id)

    def _on_ringing(self, incoming: IncomingCall) -> None:
        self._remote_id = incoming.caller_id

    # ----------------------
    # Intents
    # ----------------------
    async def start_call(self) -> None:
        async with self._lock:
            if not self._alive or self.status is not CallStatus.IDLE:
                logger.info("call start ignored status=%s", self.status.value)
                return
            members = await self._list_members()
            if not self._alive:
                return
            if members is None:
                await self._end_locked(notify_remote=False)
                return
            if not members:
                await self._alert("No one to call in this conversation.")
                await self._end_locked(notify_remote=False)
                return
            other = members[0]
            self._remote_id = other.participant_id
            self.session.add_participant(other.participant_id, other.display_name)
            await self._advance(CallStatus.CALLING)
            await self._emit_participants()

            if not await self._acquire_media():
                await self._end_locked(notify_remote=False)
                return
            await self._publish(
                protocol.make_call_request(
                    self.conversation_id, self.self_id, other.participant_id, self.self_name, group=False
                )
            )

    async def accept(self) -> None:
        async with self._lock:
            if not self._alive or self.status is not CallStatus.RINGING:
                logger.info("call accept ignored status=%s", self.status.value)
                return
            if not await self._acquire_media():
                await self._end_locked(notify_remote=False)
                return
            participant = self._remote()
            assert participant is not None and self._remote_id is not None
            participant.peer_link = self._new_peer_link(self._remote_id)
            await self._advance(CallStatus.CONNECTED)
            await self._emit_participants()
            await self._publish(
                protocol.make_control(
                    protocol.CALL_ACCEPTED, self.conversation_id, self.self_id, self._remote_id, group=False
                )
            )

    async def reject(self) -> None:
        async with self._lock:
            if not self._alive or self.status is not CallStatus.RINGING:
                logger.info("call reject ignored status=%s", self.status.value)
                return
            assert self._remote_id is not None
            await self._publish(
                protocol.make_control(
                    protocol.CALL_REJECTED, self.conversation_id, self.self_id, self._remote_id, group=False
                )
            )
            await self._end_locked(notify_remote=False)

    async def _end_locked(self, notify_remote: bool) -> None:
        if self.status is CallStatus.ENDED:
            return
        await self._advance(CallStatus.ENDED)
        if notify_remote and self._remote_id is not None:
            await self._publish(
                protocol.make_control(
                    protocol.CALL_ENDED, self.conversation_id, self.self_id, self._remote_id, group=False
                )
            )
        participant = self._remote()
        if participant is not None:
            await self._close_participant(participant)
        self._release_media()
        await self._emit_participants()
        self._schedule_close()

    # ----------------------
    # Signals
    # ----------------------
    async def _dispatch(self, signal: CallSignal) -> None:
        if self._remote_id is not None and signal.sender_id != self._remote_id:
            logger.info("call signal from unexpected sender=%s dropped", signal.sender_id)
            return

        if signal.type == protocol.CALL_ENDED:
            await self._end_locked(notify_remote=False)
            return

        if signal.type == protocol.ICE_CANDIDATE:
            link = self.peer_link
            if link is None:
                logger.info("call ice dropped, no peer link yet from=%s", signal.sender_id)
                return
            await link.add_remote_ice_candidate(dict(signal.payload))
            return

        handler = _HANDLERS.get((self.status, signal.type))
        if handler is None:
            logger.info("call signal type=%s not valid while %s, dropped", signal.type, self.status.value)
            return
        await handler(self, signal)

    async def _on_accepted(self, signal: CallSignal) -> None:
        participant = self._remote()
        assert participant is not None
        if participant.peer_link is not None:
            logger.info("call accepted again from=%s, offer already sent", signal.sender_id)
            return
        participant.peer_link = self._new_peer_link(signal.sender_id)
        await self._emit_participants()
        offer = await participant.peer_link.create_offer()
        logger.info("call creating offer to=%s", signal.sender_id)
        await self._publish(
            protocol.make_description(
                self.conversation_id, self.self_id, signal.sender_id, offer.sdp, offer.type, group=False
            )
        )

    async def _on_rejected(self, signal: CallSignal) -> None:
        await self._alert("Call rejected.")
        await self._end_locked(notify_remote=False)

    async def _on_offer(self, signal: CallSignal) -> None:
        participant = self._remote()
        assert participant is not None
        if participant.peer_link is None:
            participant.peer_link = self._new_peer_link(signal.sender_id)
        answer = await participant.peer_link.create_answer(description_from_payload(signal.payload))
        if not self._alive:
            return
        await self._advance(CallStatus.CONNECTED)
        await self._publish(
            protocol.make_description(
                self.conversation_id, self.self_id, signal.sender_id, answer.sdp, answer.type, group=False
            )
        )

    async def _on_answer(self, signal: CallSignal) -> None:
        link = self.peer_link
        if link is None:
            logger.warning("call answer from=%s without peer link, dropped", signal.sender_id)
            return
        await link.set_remote_description(description_from_payload(signal.payload))

    # ----------------------
    # Transport
    # ----------------------
    async def _on_transport_state(self, participant_id: str, state: str) -> None:
        if state == "connected":
            self.session.mark_started()
            await self._advance(CallStatus.CONNECTED)
        elif state in TERMINAL_STATES:
            await self._log(f"Connection {state}")
            await self._end_locked(notify_remote=True)


_HANDLERS: Dict[Tuple[CallStatus, str], Handler] = {
    (CallStatus.CALLING, protocol.CALL_ACCEPTED): DirectCallCoordinator._on_accepted,
    (CallStatus.CALLING, protocol.CALL_REJECTED): DirectCallCoordinator._on_rejected,
    (CallStatus.CALLING, protocol.OFFER): DirectCallCoordinator._on_offer,
    (CallStatus.CONNECTED, protocol.OFFER): DirectCallCoordinator._on_offer,
    (CallStatus.CALLING, protocol.ANSWER): DirectCallCoordinator._on_answer,
    (CallStatus.CONNECTED, protocol.ANSWER): DirectCallCoordinator._on_answer,
}
