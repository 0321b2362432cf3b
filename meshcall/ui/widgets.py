from __future__ import annotations

import time
from typing import Iterable, Optional, Tuple

from PySide6 import QtCore, QtGui, QtWidgets


_STATE_COLORS = {
	"connected": "#2e7d32",
	"connecting": "#f9a825",
	"new": "#f9a825",
	"pending": "#757575",
	"failed": "#c62828",
	"disconnected": "#c62828",
	"closed": "#757575",
}


class LogPanel(QtWidgets.QPlainTextEdit):
	def __init__(self, parent=None):
		super().__init__(parent)
		self.setReadOnly(True)
		self.setMaximumBlockCount(2000)
		self.setFont(QtGui.QFontDatabase.systemFont(QtGui.QFontDatabase.SystemFont.FixedFont))

	@QtCore.Slot(str)
	def append_log(self, message: str) -> None:
		self.appendPlainText(f"{time.strftime('%H:%M:%S')}  {message}")


class ParticipantList(QtWidgets.QListWidget):
	"""One row per remote participant, colored by link state."""

	def __init__(self, parent=None):
		super().__init__(parent)
		self.setSelectionMode(QtWidgets.QAbstractItemView.SelectionMode.NoSelection)

	def set_participants(self, rows: Iterable[Tuple[str, str]]) -> None:
		self.clear()
		for label, state in rows:
			item = QtWidgets.QListWidgetItem(f"{label}  ({state})")
			color = _STATE_COLORS.get(state)
			if color:
				item.setForeground(QtGui.QBrush(QtGui.QColor(color)))
			self.addItem(item)


class StatusCard(QtWidgets.QFrame):
	def __init__(self, parent=None):
		super().__init__(parent)
		self.setFrameShape(QtWidgets.QFrame.Shape.StyledPanel)
		self.setFrameShadow(QtWidgets.QFrame.Shadow.Raised)

		self._connection = QtWidgets.QLabel("Disconnected")
		self._call = QtWidgets.QLabel("idle")
		self._participants = QtWidgets.QLabel("0")
		self._media = QtWidgets.QLabel("camera on, mic on")
		self._duration = QtWidgets.QLabel("—")

		header = QtWidgets.QLabel("Call")
		font = header.font()
		font.setBold(True)
		header.setFont(font)

		form = QtWidgets.QFormLayout()
		form.setContentsMargins(0, 0, 0, 0)
		form.setHorizontalSpacing(12)
		form.setVerticalSpacing(4)
		form.addRow("Server", self._connection)
		form.addRow("Status", self._call)
		form.addRow("Participants", self._participants)
		form.addRow("Media", self._media)
		form.addRow("Duration", self._duration)

		layout = QtWidgets.QVBoxLayout(self)
		layout.setContentsMargins(10, 10, 10, 10)
		layout.setSpacing(6)
		layout.addWidget(header)
		layout.addLayout(form)

		self._connected_since: Optional[float] = None
		self._timer = QtCore.QTimer(self)
		self._timer.setInterval(1000)
		self._timer.timeout.connect(self._tick)

	@QtCore.Slot(str)
	def set_connection_state(self, state: str) -> None:
		self._connection.setText(state.strip() or "—")

	@QtCore.Slot(str)
	def set_call_status(self, status: str) -> None:
		self._call.setText(status.strip() or "—")
		if status == "connected":
			if self._connected_since is None:
				self._connected_since = time.monotonic()
				self._timer.start()
				self._tick()
		elif self._connected_since is not None:
			self._connected_since = None
			self._timer.stop()
			self._duration.setText("—")

	def set_participant_count(self, count: int) -> None:
		self._participants.setText(str(count))

	def set_media(self, video: bool, audio: bool) -> None:
		self._media.setText(f"camera {'on' if video else 'off'}, mic {'on' if audio else 'off'}")

	@QtCore.Slot()
	def _tick(self) -> None:
		if self._connected_since is None:
			return
		minutes, seconds = divmod(int(time.monotonic() - self._connected_since), 60)
		self._duration.setText(f"{minutes:02d}:{seconds:02d}")
