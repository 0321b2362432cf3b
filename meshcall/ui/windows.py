from __future__ import annotations

from PySide6 import QtCore, QtWidgets

from .widgets import LogPanel, ParticipantList, StatusCard


class MainWindow(QtWidgets.QMainWindow):
	connect_clicked = QtCore.Signal()
	disconnect_clicked = QtCore.Signal()
	call_clicked = QtCore.Signal()
	group_call_clicked = QtCore.Signal()
	accept_clicked = QtCore.Signal()
	reject_clicked = QtCore.Signal()
	end_clicked = QtCore.Signal()
	video_toggled = QtCore.Signal(bool)
	audio_toggled = QtCore.Signal(bool)

	def __init__(self):
		super().__init__()
		self.setWindowTitle("meshcall")

		central = QtWidgets.QWidget()
		self.setCentralWidget(central)

		self.server_url_edit = QtWidgets.QLineEdit()
		self.server_url_edit.setPlaceholderText("ws://host:8765/realtime")

		self.user_id_edit = QtWidgets.QLineEdit()
		self.user_id_edit.setPlaceholderText("User id")

		self.name_edit = QtWidgets.QLineEdit()
		self.name_edit.setPlaceholderText("Display name")

		self.conversation_edit = QtWidgets.QLineEdit()
		self.conversation_edit.setPlaceholderText("Conversation id")

		self.connect_btn = QtWidgets.QPushButton("Connect")
		self.disconnect_btn = QtWidgets.QPushButton("Disconnect")
		self.call_btn = QtWidgets.QPushButton("Call")
		self.group_call_btn = QtWidgets.QPushButton("Group call")
		self.accept_btn = QtWidgets.QPushButton("Accept")
		self.reject_btn = QtWidgets.QPushButton("Reject")
		self.end_btn = QtWidgets.QPushButton("Hang up")

		self.video_btn = QtWidgets.QPushButton("Camera")
		self.video_btn.setCheckable(True)
		self.video_btn.setChecked(True)
		self.audio_btn = QtWidgets.QPushButton("Mic")
		self.audio_btn.setCheckable(True)
		self.audio_btn.setChecked(True)

		self.incoming_label = QtWidgets.QLabel("")
		self.participant_list = ParticipantList()
		self.log_panel = LogPanel()
		self.status_card = StatusCard()

		form = QtWidgets.QFormLayout()
		form.addRow("Server", self.server_url_edit)
		form.addRow("User", self.user_id_edit)
		form.addRow("Name", self.name_edit)
		form.addRow("Conversation", self.conversation_edit)

		conn_row = QtWidgets.QHBoxLayout()
		conn_row.addWidget(self.connect_btn)
		conn_row.addWidget(self.disconnect_btn)
		conn_row.addStretch(1)
		conn_row.addWidget(self.call_btn)
		conn_row.addWidget(self.group_call_btn)

		call_row = QtWidgets.QHBoxLayout()
		call_row.addWidget(self.accept_btn)
		call_row.addWidget(self.reject_btn)
		call_row.addStretch(1)
		call_row.addWidget(self.video_btn)
		call_row.addWidget(self.audio_btn)
		call_row.addWidget(self.end_btn)

		left = QtWidgets.QVBoxLayout()
		left.addLayout(form)
		left.addLayout(conn_row)
		left.addWidget(self.incoming_label)
		left.addLayout(call_row)
		left.addWidget(QtWidgets.QLabel("Participants"))
		left.addWidget(self.participant_list, 1)

		right = QtWidgets.QVBoxLayout()
		right.addWidget(QtWidgets.QLabel("Log"))
		right.addWidget(self.log_panel, 1)
		right.addWidget(self.status_card, 0)

		main = QtWidgets.QHBoxLayout(central)
		main.addLayout(left, 1)
		main.addLayout(right, 1)

		self.status = QtWidgets.QStatusBar()
		self.setStatusBar(self.status)
		self.set_status("Idle")
		self.set_call_controls("idle")

		self.connect_btn.clicked.connect(self.connect_clicked.emit)
		self.disconnect_btn.clicked.connect(self.disconnect_clicked.emit)
		self.call_btn.clicked.connect(self.call_clicked.emit)
		self.group_call_btn.clicked.connect(self.group_call_clicked.emit)
		self.accept_btn.clicked.connect(self.accept_clicked.emit)
		self.reject_btn.clicked.connect(self.reject_clicked.emit)
		self.end_btn.clicked.connect(self.end_clicked.emit)
		self.video_btn.toggled.connect(self.video_toggled.emit)
		self.audio_btn.toggled.connect(self.audio_toggled.emit)

	def set_status(self, text: str) -> None:
		self.status.showMessage(text)

	@QtCore.Slot(str)
	def set_call_controls(self, status: str) -> None:
		idle = status in ("idle", "ended")
		self.call_btn.setEnabled(idle)
		self.group_call_btn.setEnabled(idle)
		self.accept_btn.setEnabled(status == "ringing")
		self.reject_btn.setEnabled(status == "ringing")
		self.end_btn.setEnabled(status in ("calling", "connected"))
		self.video_btn.setEnabled(status == "connected")
		self.audio_btn.setEnabled(status == "connected")
		if status != "ringing":
			self.incoming_label.setText("")
		if idle:
			# Every call starts with camera and mic on.
			self.video_btn.setChecked(True)
			self.audio_btn.setChecked(True)
		self.status_card.set_call_status(status)
