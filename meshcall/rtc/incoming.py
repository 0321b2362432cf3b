"""Listens for call requests addressed to the signed-in user."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from ..net import protocol
from ..net.collaborators import SignalBus, SubscriptionFilter
from ..net.protocol import CallSignal
from .session import SeenSignals


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IncomingCall:
    conversation_id: str
    caller_id: str
    caller_name: str
    group: bool
    signal_id: str

    @classmethod
    def from_signal(cls, signal: CallSignal) -> "IncomingCall":
        return cls(
            conversation_id=signal.conversation_id,
            caller_id=signal.sender_id,
            caller_name=str(signal.payload.get("callerName") or "Unknown"),
            group=signal.group,
            signal_id=signal.signal_id,
        )


IncomingCallback = Callable[[IncomingCall], Awaitable[None]]


class IncomingCallListener:
    def __init__(self, bus: SignalBus, self_id: str, on_incoming: IncomingCallback):
        self._bus = bus
        self._self_id = self_id
        self._on_incoming = on_incoming
        self._handle: Optional[Any] = None
        self._seen = SeenSignals()

    @property
    def active(self) -> bool:
        return self._handle is not None

    async def start(self) -> None:
        if self._handle is not None:
            return
        self._handle = await self._bus.subscribe(SubscriptionFilter(recipient_id=self._self_id), self._on_signal)
        logger.info("incoming listener started user=%s", self._self_id)

    async def stop(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            await self._bus.unsubscribe(handle)
            logger.info("incoming listener stopped user=%s", self._self_id)

    async def _on_signal(self, signal: CallSignal) -> None:
        if signal.type != protocol.CALL_REQUEST or self._handle is None:
            return
        if not self._seen.add(signal.signal_id):
            logger.debug("incoming duplicate request id=%s", signal.signal_id)
            return
        call = IncomingCall.from_signal(signal)
        logger.info(
            "incoming call conv=%s from=%s group=%s",
            call.conversation_id,
            call.caller_id,
            call.group,
        )
        await self._on_incoming(call)
