from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Optional

from concurrent.futures import Future

from PySide6 import QtCore, QtWidgets

from ..net.realtime_client import (
    RealtimeCallbacks,
    RealtimeChatLog,
    RealtimeClient,
    RealtimeDirectory,
    RealtimeSignalBus,
)
from ..rtc.config import CallConfig
from ..rtc.coordinator import CallCoordinator, CoordinatorCallbacks
from ..rtc.direct_call import DirectCallCoordinator
from ..rtc.group_call import GroupCallCoordinator
from ..rtc.incoming import IncomingCall, IncomingCallListener
from ..rtc.media import MediaSession
from ..rtc.session import CallStatus
from .windows import MainWindow


logger = logging.getLogger(__name__)


class AsyncioThread:
    """Runs an asyncio loop in a background thread and schedules coroutines."""

    def __init__(self):
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if not self._loop:
            raise RuntimeError("AsyncioThread not started")
        return self._loop

    @property
    def running(self) -> bool:
        return self._loop is not None and self._loop.is_running()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return

        def _run() -> None:
            self._loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self._loop)
            self._ready.set()
            self._loop.run_forever()

        self._thread = threading.Thread(target=_run, name="asyncio-thread", daemon=True)
        self._thread.start()
        self._ready.wait(timeout=5)

    def stop(self) -> None:
        if not self._loop:
            return
        self._loop.call_soon_threadsafe(self._loop.stop)

    def submit(self, coro) -> Future:
        fut = asyncio.run_coroutine_threadsafe(coro, self.loop)
        fut.add_done_callback(_log_failure)
        return fut


def _log_failure(fut: Future) -> None:
    if fut.cancelled():
        return
    exc = fut.exception()
    if exc is not None:
        logger.error("ui task failed: %s", exc, exc_info=exc)


class UiBridge(QtCore.QObject):
    log = QtCore.Signal(str)
    status = QtCore.Signal(str)
    connection = QtCore.Signal(str)
    call_status = QtCore.Signal(str)
    participants_changed = QtCore.Signal(list)  # list[(label, state)]
    alert = QtCore.Signal(str)
    incoming = QtCore.Signal(str)


@dataclass
class AppConfig:
    server_url: str
    user_id: str
    name: str
    conversation_id: str


class MeshCallApp(QtCore.QObject):
    """Glue between the window (Qt thread) and the call core (asyncio thread).

    Only one coordinator is active at a time. Window actions are submitted to
    the asyncio loop; core callbacks come back through UiBridge signals.
    """

    def __init__(self, cfg: AppConfig):
        super().__init__()
        self.cfg = cfg

        self.window = MainWindow()
        self.bridge = UiBridge()
        self.asyncio_thread = AsyncioThread()

        self.call_config = CallConfig.from_env()
        self.media = MediaSession()

        self.client = RealtimeClient(
            url=cfg.server_url,
            callbacks=RealtimeCallbacks(on_log=self._on_async_log, on_error=self._on_error),
        )
        self.bus = RealtimeSignalBus(self.client)
        self.directory = RealtimeDirectory(self.client)

        self._listener: Optional[IncomingCallListener] = None
        self._coordinator: Optional[CallCoordinator] = None

        self._wire_ui()
        self._wire_bridge()

        self.window.server_url_edit.setText(cfg.server_url)
        self.window.user_id_edit.setText(cfg.user_id)
        self.window.name_edit.setText(cfg.name)
        self.window.conversation_edit.setText(cfg.conversation_id)

    def start(self) -> None:
        self.asyncio_thread.start()
        self.window.show()
        self.bridge.status.emit("Ready")
        logger.info("ui started")

    def shutdown(self) -> None:
        logger.info("ui shutdown")
        if self.asyncio_thread.running:
            fut = self.asyncio_thread.submit(self._teardown())
            try:
                fut.result(timeout=5)
            except Exception:
                logger.warning("ui teardown did not finish cleanly", exc_info=True)
        self.asyncio_thread.stop()

    def _wire_ui(self) -> None:
        self.window.connect_clicked.connect(self._on_connect_clicked)
        self.window.disconnect_clicked.connect(self._on_disconnect_clicked)
        self.window.call_clicked.connect(lambda: self._on_call_clicked(group=False))
        self.window.group_call_clicked.connect(lambda: self._on_call_clicked(group=True))
        self.window.accept_clicked.connect(self._on_accept_clicked)
        self.window.reject_clicked.connect(self._on_reject_clicked)
        self.window.end_clicked.connect(self._on_end_clicked)
        self.window.video_toggled.connect(self._on_video_toggled)
        self.window.audio_toggled.connect(self._on_audio_toggled)

    def _wire_bridge(self) -> None:
        self.bridge.log.connect(self.window.log_panel.append_log)
        self.bridge.status.connect(self.window.set_status)
        self.bridge.connection.connect(self.window.status_card.set_connection_state)
        self.bridge.call_status.connect(self.window.set_call_controls)
        self.bridge.participants_changed.connect(self._update_participant_list)
        self.bridge.alert.connect(self._show_alert)
        self.bridge.incoming.connect(self.window.incoming_label.setText)

    # ----------------------
    # Window actions (Qt thread)
    # ----------------------
    @QtCore.Slot()
    def _on_connect_clicked(self) -> None:
        user_id = self.window.user_id_edit.text().strip()
        if not user_id:
            self.bridge.log.emit("User id is required")
            return
        self.cfg.user_id = user_id
        self.cfg.name = self.window.name_edit.text().strip() or user_id
        self.client.url = self.window.server_url_edit.text().strip()
        self.bridge.status.emit("Connecting...")
        logger.info("ui connect clicked url=%s user=%s", self.client.url, user_id)
        self.asyncio_thread.submit(self._connect())

    @QtCore.Slot()
    def _on_disconnect_clicked(self) -> None:
        self.bridge.status.emit("Disconnecting...")
        logger.info("ui disconnect clicked")
        self.asyncio_thread.submit(self._teardown())

    def _on_call_clicked(self, group: bool) -> None:
        conversation_id = self.window.conversation_edit.text().strip()
        if not conversation_id:
            self.bridge.log.emit("Conversation is required")
            return
        logger.info("ui call clicked conv=%s group=%s", conversation_id, group)
        self.asyncio_thread.submit(self._start_call(conversation_id, group))

    @QtCore.Slot()
    def _on_accept_clicked(self) -> None:
        self._submit_to_call(lambda c: c.accept())

    @QtCore.Slot()
    def _on_reject_clicked(self) -> None:
        self._submit_to_call(lambda c: c.reject())

    @QtCore.Slot()
    def _on_end_clicked(self) -> None:
        self._submit_to_call(lambda c: c.end_call())

    @QtCore.Slot(bool)
    def _on_video_toggled(self, enabled: bool) -> None:
        self._refresh_media_card()
        self._submit_to_call(lambda c: c.set_video_enabled(enabled))

    @QtCore.Slot(bool)
    def _on_audio_toggled(self, enabled: bool) -> None:
        self._refresh_media_card()
        self._submit_to_call(lambda c: c.set_audio_enabled(enabled))

    def _refresh_media_card(self) -> None:
        self.window.status_card.set_media(self.window.video_btn.isChecked(), self.window.audio_btn.isChecked())

    def _submit_to_call(self, action) -> None:
        coordinator = self._coordinator
        if coordinator is None:
            return
        self.asyncio_thread.submit(action(coordinator))

    @QtCore.Slot(list)
    def _update_participant_list(self, rows: list) -> None:
        self.window.participant_list.set_participants(rows)
        self.window.status_card.set_participant_count(len(rows))

    @QtCore.Slot(str)
    def _show_alert(self, message: str) -> None:
        QtWidgets.QMessageBox.warning(self.window, "Call", message)

    # ----------------------
    # Async side (run in asyncio thread)
    # ----------------------
    async def _connect(self) -> None:
        try:
            await self.client.connect()
        except Exception as e:
            self.bridge.connection.emit("Disconnected")
            self.bridge.status.emit(f"Connect failed: {e}")
            return
        self.bridge.connection.emit("Connected")
        self.bridge.status.emit(f"Connected as {self.cfg.user_id}")
        if self._listener is None:
            self._listener = IncomingCallListener(self.bus, self.cfg.user_id, self._on_incoming)
        await self._listener.start()

    async def _teardown(self) -> None:
        coordinator, self._coordinator = self._coordinator, None
        if coordinator is not None:
            await coordinator.end_call()
            await coordinator.close()
        listener, self._listener = self._listener, None
        if listener is not None and self.client.is_connected:
            await listener.stop()
        await self.client.disconnect()
        self.bridge.connection.emit("Disconnected")
        self.bridge.call_status.emit(CallStatus.IDLE.value)
        self.bridge.participants_changed.emit([])
        self.bridge.status.emit("Disconnected")

    async def _start_call(self, conversation_id: str, group: bool) -> None:
        if self._coordinator is not None:
            self.bridge.log.emit("Already in a call")
            return
        coordinator = self._new_coordinator(conversation_id, group)
        await coordinator.open()

    async def _on_incoming(self, call: IncomingCall) -> None:
        if self._coordinator is not None:
            # Busy: the request stays unanswered.
            self.bridge.log.emit(f"Missed call from {call.caller_name} while busy")
            return
        kind = "group call" if call.group else "call"
        self.bridge.incoming.emit(f"Incoming {kind} from {call.caller_name}")
        coordinator = self._new_coordinator(call.conversation_id, call.group)
        await coordinator.open(call)

    def _new_coordinator(self, conversation_id: str, group: bool) -> CallCoordinator:
        callbacks = CoordinatorCallbacks(
            on_log=self._on_async_log,
            on_status=self._on_call_status,
            on_participants=self._on_participants,
            on_alert=self._on_alert,
            on_close=self._on_call_closed,
        )
        kwargs = dict(
            conversation_id=conversation_id,
            self_id=self.cfg.user_id,
            self_name=self.cfg.name,
            bus=self.bus,
            directory=self.directory,
            media=self.media,
            config=self.call_config,
            callbacks=callbacks,
        )
        if group:
            coordinator: CallCoordinator = GroupCallCoordinator(
                chat_log=RealtimeChatLog(self.client, self.cfg.user_id), **kwargs
            )
        else:
            coordinator = DirectCallCoordinator(**kwargs)
        self._coordinator = coordinator
        return coordinator

    async def _on_async_log(self, message: str) -> None:
        self.bridge.log.emit(message)

    async def _on_call_status(self, status: CallStatus) -> None:
        self.bridge.call_status.emit(status.value)

    async def _on_participants(self, participants: list) -> None:
        self.bridge.participants_changed.emit([(p.label, p.connection_state) for p in participants])

    async def _on_alert(self, message: str) -> None:
        self.bridge.alert.emit(message)

    async def _on_call_closed(self) -> None:
        self._coordinator = None
        self.bridge.call_status.emit(CallStatus.IDLE.value)
        self.bridge.participants_changed.emit([])

    async def _on_error(self, error: str, payload: dict) -> None:
        self.bridge.log.emit(f"Error: {error} {payload}")
        self.bridge.status.emit(f"Error: {error}")


def create_qt_app() -> QtWidgets.QApplication:
    app = QtWidgets.QApplication.instance()
    if app is None:
        app = QtWidgets.QApplication([])
    return app  # type: ignore
