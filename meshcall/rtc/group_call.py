"""Group call coordinator (full mesh).

One peer link per remote participant, all sharing the local stream. Every
signal sent from here carries the group marker.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..net import protocol
from ..net.collaborators import ChatLog
from ..net.protocol import CallSignal
from .coordinator import CallCoordinator, description_from_payload
from .incoming import IncomingCall
from .peer_link import TERMINAL_STATES, PeerLink
from .session import CallStatus, ParticipantLink, format_call_duration


logger = logging.getLogger(__name__)


class GroupCallCoordinator(CallCoordinator):
    group = True

    def __init__(self, *args, chat_log: Optional[ChatLog] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._chat_log = chat_log
        self._caller_id: Optional[str] = None

    @property
    def caller_id(self) -> Optional[str]:
        return self._caller_id

    def peer_link(self, participant_id: str) -> Optional[PeerLink]:
        participant = self.session.get(participant_id)
        return participant.peer_link if participant else None

    def _on_ringing(self, incoming: IncomingCall) -> None:
        self._caller_id = incoming.caller_id

    # ----------------------
    # Intents
    # ----------------------
    async def start_call(self) -> None:
        async with self._lock:
            if not self._alive or self.status is not CallStatus.IDLE:
                logger.info("group start ignored status=%s", self.status.value)
                return
            members = await self._list_members()
            if not self._alive:
                return
            if members is None:
                await self._end_locked(notify_remote=False)
                return
            if not members:
                await self._alert("No one to call in this group.")
                await self._end_locked(notify_remote=False)
                return
            await self._advance(CallStatus.CALLING)
            if not await self._acquire_media():
                await self._end_locked(notify_remote=False)
                return

            self._members = {m.participant_id: m for m in members}
            for m in members:
                self.session.add_participant(m.participant_id, m.display_name)
            await self._emit_participants()
            logger.info("group call request conv=%s members=%s", self.conversation_id, len(members))
            for m in members:
                if not self._alive:
                    return
                await self._publish(
                    protocol.make_call_request(
                        self.conversation_id, self.self_id, m.participant_id, self.self_name, group=True
                    )
                )

    async def accept(self) -> None:
        async with self._lock:
            if not self._alive or self.status is not CallStatus.RINGING:
                logger.info("group accept ignored status=%s", self.status.value)
                return
            if not await self._acquire_media():
                await self._end_locked(notify_remote=False)
                return
            assert self._caller_id is not None
            members = await self._list_members()
            if not self._alive:
                return
            if members is None:
                await self._end_locked(notify_remote=False)
                return
            self._members = {m.participant_id: m for m in members}

            caller = self.session.add_participant(self._caller_id, self._display_name(self._caller_id))
            caller.peer_link = self._new_peer_link(self._caller_id)
            await self._advance(CallStatus.CONNECTED)
            await self._emit_participants()

            await self._publish(
                protocol.make_control(
                    protocol.CALL_ACCEPTED, self.conversation_id, self.self_id, self._caller_id, group=True
                )
            )
            # Members already in the call offer to us when they see this;
            # the others are still ringing or absent and ignore it.
            for pid in self._members:
                if pid == self._caller_id or not self._alive:
                    continue
                await self._publish(
                    protocol.make_control(protocol.CALL_ACCEPTED, self.conversation_id, self.self_id, pid, group=True)
                )

    async def reject(self) -> None:
        async with self._lock:
            if not self._alive or self.status is not CallStatus.RINGING:
                logger.info("group reject ignored status=%s", self.status.value)
                return
            assert self._caller_id is not None
            await self._publish(
                protocol.make_control(
                    protocol.CALL_REJECTED, self.conversation_id, self.self_id, self._caller_id, group=True
                )
            )
            await self._end_locked(notify_remote=False)

    async def add_participant(self, participant_id: str, display_name: str = "") -> ParticipantLink:
        async with self._lock:
            participant = self.session.add_participant(participant_id, display_name)
            await self._emit_participants()
            return participant

    async def remove_participant(self, participant_id: str) -> None:
        async with self._lock:
            if self._alive:
                await self._drop_participant(participant_id)

    async def _end_locked(self, notify_remote: bool) -> None:
        if self.status is CallStatus.ENDED:
            return
        elapsed = self.session.elapsed()
        await self._advance(CallStatus.ENDED)
        participants = self.session.remove_all()
        if notify_remote:
            for p in participants:
                await self._publish(
                    protocol.make_control(
                        protocol.CALL_ENDED, self.conversation_id, self.self_id, p.participant_id, group=True
                    )
                )
        for p in participants:
            await self._close_participant(p)
        self._release_media()
        await self._emit_participants()
        if elapsed is not None:
            await self._log_duration(elapsed)
        self._schedule_close()

    async def _log_duration(self, elapsed: float) -> None:
        if self._chat_log is None:
            return
        text = f"Group video call - {format_call_duration(elapsed)}"
        try:
            await self._chat_log.append_system_message(self.conversation_id, text)
        except Exception:
            logger.exception("group call log failed conv=%s", self.conversation_id)

    # ----------------------
    # Signals
    # ----------------------
    async def _dispatch(self, signal: CallSignal) -> None:
        sender = signal.sender_id
        if signal.type == protocol.CALL_ENDED:
            await self._on_ended(sender)
            return

        if self.status not in (CallStatus.CALLING, CallStatus.CONNECTED):
            logger.info("group signal type=%s from=%s ignored while %s", signal.type, sender, self.status.value)
            return

        if signal.type == protocol.CALL_ACCEPTED:
            await self._on_accepted(sender)
        elif signal.type == protocol.CALL_REJECTED:
            await self._on_rejected(sender)
        elif signal.type == protocol.OFFER:
            await self._on_offer(sender, signal)
        elif signal.type == protocol.ANSWER:
            await self._on_answer(sender, signal)
        elif signal.type == protocol.ICE_CANDIDATE:
            await self._on_ice(sender, signal)
        elif signal.type == protocol.CALL_REQUEST:
            logger.info("group call request from=%s ignored, already in call", sender)
        else:
            raise AssertionError(f"unhandled signal type {signal.type}")

    async def _on_ended(self, sender: str) -> None:
        if self.status is CallStatus.RINGING:
            if sender == self._caller_id:
                await self._log("Caller hung up")
                await self._end_locked(notify_remote=False)
            return
        if self.status in (CallStatus.CALLING, CallStatus.CONNECTED):
            await self._drop_participant(sender)

    async def _on_accepted(self, sender: str) -> None:
        participant = self.session.add_participant(sender, self._display_name(sender))
        link = participant.peer_link
        if link is not None and not link.closed and (link.signaling_state != "stable" or link.has_remote_description):
            logger.info("group accepted from=%s ignored, negotiation in progress", sender)
            return
        if link is None or link.closed:
            link = participant.peer_link = self._new_peer_link(sender)
        await self._emit_participants()
        logger.info("group creating offer to=%s", sender)
        offer = await link.create_offer()
        await self._publish(
            protocol.make_description(self.conversation_id, self.self_id, sender, offer.sdp, offer.type, group=True)
        )

    async def _on_rejected(self, sender: str) -> None:
        participant = self.session.get(sender)
        if participant is None or participant.peer_link is not None:
            return
        await self._log(f"{participant.label} declined")
        await self._drop_participant(sender)

    async def _on_offer(self, sender: str, signal: CallSignal) -> None:
        participant = self.session.add_participant(sender, self._display_name(sender))
        link = participant.peer_link
        if link is not None and link.signaling_state == "have-local-offer":
            # Glare: both sides offered. The lower id keeps its offer.
            if self.self_id < sender:
                logger.info("group glare with=%s, keeping local offer", sender)
                return
            logger.info("group glare with=%s, yielding to remote offer", sender)
            participant.peer_link = None
            await link.close()
            if not self._alive:
                return
            link = None
        if link is None or link.closed:
            link = participant.peer_link = self._new_peer_link(sender)
            await self._emit_participants()
        answer = await link.create_answer(description_from_payload(signal.payload))
        await self._publish(
            protocol.make_description(self.conversation_id, self.self_id, sender, answer.sdp, answer.type, group=True)
        )

    async def _on_answer(self, sender: str, signal: CallSignal) -> None:
        link = self.peer_link(sender)
        if link is None:
            logger.warning("group answer from=%s without peer link, dropped", sender)
            return
        await link.set_remote_description(description_from_payload(signal.payload))

    async def _on_ice(self, sender: str, signal: CallSignal) -> None:
        link = self.peer_link(sender)
        if link is None:
            logger.debug("group ice from=%s without peer link, dropped", sender)
            return
        await link.add_remote_ice_candidate(dict(signal.payload))

    # ----------------------
    # Transport
    # ----------------------
    async def _on_transport_state(self, participant_id: str, state: str) -> None:
        if state == "connected":
            if self.session.mark_started():
                logger.info("group call started conv=%s", self.conversation_id)
            await self._advance(CallStatus.CONNECTED)
        elif state in TERMINAL_STATES:
            await self._log(f"Connection with {participant_id} {state}")
            await self._drop_participant(participant_id)

    async def _drop_participant(self, participant_id: str) -> None:
        participant = self.session.remove_participant(participant_id)
        if participant is None:
            return
        logger.info("group participant left participant=%s remaining=%s", participant_id, len(self.session.participants))
        await self._close_participant(participant)
        await self._emit_participants()
        if not self.session.participants:
            await self._end_locked(notify_remote=False)

    def _display_name(self, participant_id: str) -> str:
        member = self._members.get(participant_id)
        return member.display_name if member else ""
