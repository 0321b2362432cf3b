"""WebSocket client for the realtime table store.

The store exposes insert / query / subscribe-to-inserts over one JSON
websocket. This module is unaware of calls; the adapters at the bottom
map the call collaborators (signal bus, directory, chat log) onto tables.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import websockets

from .collaborators import ParticipantIdentity, SignalCallback, SubscriptionFilter
from .protocol import SIGNALS_TABLE, CallSignal, MalformedSignal, PublishError


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]
ChangeCallback = Callable[[Dict[str, Any]], Awaitable[None]]

# Message type constants
INSERT = "insert"
QUERY = "query"
SUBSCRIBE = "subscribe"
UNSUBSCRIBE = "unsubscribe"
ACK = "ack"
RESULT = "result"
CHANGE = "change"
PING = "ping"
PONG = "pong"
ERROR = "error"


class RealtimeError(Exception):
	pass


@dataclass
class RealtimeCallbacks:
	on_log: Optional[AsyncCallback] = None  # (message: str)
	on_error: Optional[AsyncCallback] = None  # (error: str, payload: dict)


class RealtimeClient:
	def __init__(self, url: str, callbacks: Optional[RealtimeCallbacks] = None, request_timeout: float = 10.0):
		self.url = url
		self.callbacks = callbacks or RealtimeCallbacks()
		self.request_timeout = request_timeout

		# websockets' protocol types moved between versions; keep runtime-safe.
		self._ws: Optional[Any] = None
		self._recv_task: Optional[asyncio.Task[None]] = None
		self._send_lock = asyncio.Lock()
		self._connected_evt = asyncio.Event()
		self._ids = itertools.count(1)
		self._pending: Dict[int, asyncio.Future[Dict[str, Any]]] = {}
		self._subscriptions: Dict[int, ChangeCallback] = {}
		self._dispatch_tasks: Set[asyncio.Task[None]] = set()

	@property
	def is_connected(self) -> bool:
		return self._ws is not None and self._connected_evt.is_set()

	async def connect(self) -> None:
		if self._recv_task and not self._recv_task.done():
			return

		await self._log(f"Connecting to {self.url}")
		logger.info("realtime connect url=%s", self.url)
		try:
			self._ws = await websockets.connect(self.url)
		except Exception:
			logger.exception("realtime connect failed url=%s", self.url)
			await self._emit_error("connect-failed", {"url": self.url})
			raise
		self._connected_evt.set()
		self._recv_task = asyncio.create_task(self._recv_loop(), name="realtime-recv")

	async def disconnect(self) -> None:
		await self._log("Disconnecting")
		logger.info("realtime disconnect")
		self._connected_evt.clear()
		if self._recv_task:
			self._recv_task.cancel()
			try:
				await self._recv_task
			except asyncio.CancelledError:
				pass
			self._recv_task = None

		if self._ws:
			try:
				await self._ws.close()
			except Exception:
				logger.debug("realtime close failed", exc_info=True)
		self._ws = None
		self._subscriptions.clear()
		self._fail_pending("realtime client disconnected")

	async def insert(self, table: str, record: Dict[str, Any]) -> None:
		await self._request({"type": INSERT, "table": table, "record": record})

	async def query(self, table: str, flt: Dict[str, Any]) -> List[Dict[str, Any]]:
		reply = await self._request({"type": QUERY, "table": table, "filter": flt})
		rows = reply.get("rows", [])
		if not isinstance(rows, list):
			raise RealtimeError(f"query on {table} returned {type(rows).__name__}")
		return [r for r in rows if isinstance(r, dict)]

	async def subscribe(self, table: str, flt: Dict[str, Any], on_change: ChangeCallback) -> int:
		sub_id = next(self._ids)
		# Register first so a change racing the ack is not lost.
		self._subscriptions[sub_id] = on_change
		try:
			await self._request({"type": SUBSCRIBE, "table": table, "filter": flt}, request_id=sub_id)
		except BaseException:
			self._subscriptions.pop(sub_id, None)
			raise
		logger.info("realtime subscribed table=%s sub=%s", table, sub_id)
		return sub_id

	async def unsubscribe(self, sub_id: int) -> None:
		if self._subscriptions.pop(sub_id, None) is None:
			return
		if self.is_connected:
			await self._request({"type": UNSUBSCRIBE, "subscription": sub_id})

	async def _request(self, payload: Dict[str, Any], request_id: Optional[int] = None) -> Dict[str, Any]:
		rid = request_id if request_id is not None else next(self._ids)
		fut: asyncio.Future[Dict[str, Any]] = asyncio.get_running_loop().create_future()
		self._pending[rid] = fut
		try:
			await self._send({**payload, "id": rid})
			return await asyncio.wait_for(fut, timeout=self.request_timeout)
		finally:
			self._pending.pop(rid, None)

	async def _send(self, payload: Dict[str, Any]) -> None:
		if not self.is_connected:
			raise ConnectionError("realtime client not connected")
		mtype = payload.get("type")
		if mtype == INSERT:
			logger.debug("realtime send type=insert table=%s", payload.get("table"))
		else:
			logger.debug("realtime send type=%s", mtype)
		raw = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
		async with self._send_lock:
			await self._ws.send(raw)

	async def _recv_loop(self) -> None:
		assert self._ws is not None
		ws = self._ws
		logger.debug("realtime recv loop started")

		try:
			async for raw in ws:
				try:
					msg = json.loads(raw)
				except json.JSONDecodeError:
					await self._emit_error("invalid-json", {"raw": raw})
					continue

				if not isinstance(msg, dict):
					await self._emit_error("invalid-message", {"msg": msg})
					continue

				mtype = msg.get("type")
				if not isinstance(mtype, str):
					await self._emit_error("missing-type", msg)
					continue

				if mtype == PING:
					await self._send({"type": PONG, "ts": msg.get("ts")})
					continue

				if mtype in (ACK, RESULT):
					self._resolve(msg.get("id"), msg)
					continue

				if mtype == CHANGE:
					self._dispatch_change(msg)
					continue

				if mtype == ERROR:
					error = str(msg.get("error", "error"))
					if not self._reject(msg.get("id"), RealtimeError(error)):
						await self._emit_error(error, msg)
					continue

				await self._emit_error("unknown-type", msg)

		except asyncio.CancelledError:
			pass
		except Exception as e:
			logger.exception("realtime recv loop crashed")
			await self._emit_error(f"recv-loop-exception: {e}", {})
		finally:
			self._connected_evt.clear()
			logger.debug("realtime recv loop stopped")
			try:
				await ws.close()
			except Exception:
				logger.debug("realtime close failed", exc_info=True)
			if self._ws is ws:
				self._ws = None
			self._fail_pending("realtime connection closed")

	def _resolve(self, rid: Any, msg: Dict[str, Any]) -> None:
		fut = self._pending.get(rid) if isinstance(rid, int) else None
		if fut is not None and not fut.done():
			fut.set_result(msg)

	def _reject(self, rid: Any, exc: Exception) -> bool:
		fut = self._pending.get(rid) if isinstance(rid, int) else None
		if fut is None or fut.done():
			return False
		fut.set_exception(exc)
		return True

	def _fail_pending(self, reason: str) -> None:
		for fut in list(self._pending.values()):
			if not fut.done():
				fut.set_exception(ConnectionError(reason))

	def _dispatch_change(self, msg: Dict[str, Any]) -> None:
		sub_id = msg.get("subscription")
		record = msg.get("record")
		callback = self._subscriptions.get(sub_id) if isinstance(sub_id, int) else None
		if callback is None or not isinstance(record, dict):
			logger.debug("realtime change dropped sub=%s", sub_id)
			return
		# Subscribers publish from their handlers; running them inline would
		# block this loop from reading their acks.
		task = asyncio.create_task(self._run_change(callback, record))
		self._dispatch_tasks.add(task)
		task.add_done_callback(self._dispatch_tasks.discard)

	async def _run_change(self, callback: ChangeCallback, record: Dict[str, Any]) -> None:
		try:
			await callback(record)
		except Exception:
			logger.exception("realtime subscriber failed")

	async def _emit_error(self, error: str, payload: Dict[str, Any]) -> None:
		await self._log(f"Realtime error: {error}")
		if self.callbacks.on_error:
			await self.callbacks.on_error(error, payload)

	async def _log(self, message: str) -> None:
		if self.callbacks.on_log:
			await self.callbacks.on_log(message)


class RealtimeSignalBus:
	def __init__(self, client: RealtimeClient):
		self._client = client

	async def publish(self, signal: CallSignal) -> None:
		try:
			await self._client.insert(SIGNALS_TABLE, signal.to_record())
		except (ConnectionError, asyncio.TimeoutError, RealtimeError) as e:
			raise PublishError(f"{signal.type} to {signal.recipient_id}: {e}") from e

	async def subscribe(self, flt: SubscriptionFilter, on_insert: SignalCallback) -> int:
		query: Dict[str, Any] = {"recipientId": flt.recipient_id}
		if flt.conversation_id is not None:
			query["conversationId"] = flt.conversation_id

		async def _on_change(record: Dict[str, Any]) -> None:
			try:
				signal = CallSignal.from_record(record)
			except MalformedSignal as e:
				logger.warning("signal rejected reason=%s", e)
				return
			await on_insert(signal)

		return await self._client.subscribe(SIGNALS_TABLE, query, _on_change)

	async def unsubscribe(self, handle: Any) -> None:
		await self._client.unsubscribe(handle)


class RealtimeDirectory:
	def __init__(self, client: RealtimeClient):
		self._client = client

	async def list_other_members(self, conversation_id: str, self_id: str) -> List[ParticipantIdentity]:
		members = await self._client.query("conversation_members", {"conversation_id": conversation_id})
		ids = [str(m.get("user_id")) for m in members if m.get("user_id") is not None]
		ids = [i for i in ids if i != self_id]
		if not ids:
			return []
		users = await self._client.query("users", {"id": ids})
		names = {str(u.get("id")): str(u.get("username") or "") for u in users}
		return [ParticipantIdentity(participant_id=i, display_name=names.get(i, "")) for i in ids]


class RealtimeChatLog:
	def __init__(self, client: RealtimeClient, sender_id: str):
		self._client = client
		self._sender_id = sender_id

	async def append_system_message(self, conversation_id: str, text: str) -> None:
		await self._client.insert(
			"messages",
			{
				"conversation_id": conversation_id,
				"sender_id": self._sender_id,
				"content": text,
				"message_type": "system",
			},
		)
