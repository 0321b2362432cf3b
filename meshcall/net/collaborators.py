"""Collaborators the call core consumes: signal bus, directory, chat log.

The in-memory implementations deliver on the running event loop and are
used for loopback sessions inside one process and by the test-suite. The
websocket-backed ones live in `realtime_client.py`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set, Tuple

from .protocol import CallSignal, PublishError


logger = logging.getLogger(__name__)


SignalCallback = Callable[[CallSignal], Awaitable[None]]


@dataclass(frozen=True)
class SubscriptionFilter:
	recipient_id: str
	# None matches every conversation (incoming-call listener).
	conversation_id: Optional[str] = None

	def matches(self, signal: CallSignal) -> bool:
		if signal.recipient_id != self.recipient_id:
			return False
		return self.conversation_id is None or signal.conversation_id == self.conversation_id


@dataclass(frozen=True)
class ParticipantIdentity:
	participant_id: str
	display_name: str = ""


class SignalBus(Protocol):
	async def publish(self, signal: CallSignal) -> None: ...

	async def subscribe(self, flt: SubscriptionFilter, on_insert: SignalCallback) -> Any: ...

	async def unsubscribe(self, handle: Any) -> None: ...


class Directory(Protocol):
	async def list_other_members(self, conversation_id: str, self_id: str) -> List[ParticipantIdentity]: ...


class ChatLog(Protocol):
	async def append_system_message(self, conversation_id: str, text: str) -> None: ...


class InMemorySignalBus:
	"""Append-only signal log with filtered subscriptions.

	Each delivery runs as its own task, so subscribers observe the same
	interleaving they would with a networked bus.
	"""

	def __init__(self) -> None:
		self.published: List[CallSignal] = []
		self.connected = True
		self._subs: Dict[int, Tuple[SubscriptionFilter, SignalCallback]] = {}
		self._next_id = 1
		self._pending: Set[asyncio.Task[None]] = set()

	async def publish(self, signal: CallSignal) -> None:
		if not self.connected:
			raise PublishError("signal bus is disconnected")
		self.published.append(signal)
		logger.debug("bus publish type=%s to=%s conv=%s", signal.type, signal.recipient_id, signal.conversation_id)
		loop = asyncio.get_running_loop()
		for flt, callback in list(self._subs.values()):
			if flt.matches(signal):
				task = loop.create_task(self._deliver(callback, signal))
				self._pending.add(task)
				task.add_done_callback(self._pending.discard)

	async def redeliver(self, signal: CallSignal) -> None:
		"""Deliver an already published signal again (at-least-once bus)."""
		for flt, callback in list(self._subs.values()):
			if flt.matches(signal):
				await self._deliver(callback, signal)

	async def subscribe(self, flt: SubscriptionFilter, on_insert: SignalCallback) -> int:
		handle = self._next_id
		self._next_id += 1
		self._subs[handle] = (flt, on_insert)
		logger.debug("bus subscribe handle=%s recipient=%s conv=%s", handle, flt.recipient_id, flt.conversation_id)
		return handle

	async def unsubscribe(self, handle: Any) -> None:
		self._subs.pop(handle, None)

	@property
	def subscription_count(self) -> int:
		return len(self._subs)

	async def drain(self) -> None:
		while self._pending:
			await asyncio.gather(*list(self._pending), return_exceptions=True)

	async def _deliver(self, callback: SignalCallback, signal: CallSignal) -> None:
		try:
			await callback(signal)
		except Exception:
			logger.exception("bus subscriber failed type=%s to=%s", signal.type, signal.recipient_id)


class InMemoryDirectory:
	def __init__(self, members: Optional[Dict[str, List[ParticipantIdentity]]] = None) -> None:
		self._members: Dict[str, List[ParticipantIdentity]] = dict(members or {})

	def set_members(self, conversation_id: str, members: List[ParticipantIdentity]) -> None:
		self._members[conversation_id] = list(members)

	async def list_other_members(self, conversation_id: str, self_id: str) -> List[ParticipantIdentity]:
		return [m for m in self._members.get(conversation_id, []) if m.participant_id != self_id]


class InMemoryChatLog:
	def __init__(self) -> None:
		self.entries: List[Tuple[str, str]] = []

	async def append_system_message(self, conversation_id: str, text: str) -> None:
		self.entries.append((conversation_id, text))
