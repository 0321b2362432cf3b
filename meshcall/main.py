from __future__ import annotations

import argparse
import os
import sys

from .logging_config import setup_logging


def main(argv: list[str] | None = None) -> int:
	parser = argparse.ArgumentParser(description="meshcall video call client")
	parser.add_argument(
		"--log-level",
		default=None,
		help="Logging level (debug, info, warning, error). Can also use MESHCALL_LOG_LEVEL.",
	)
	parser.add_argument(
		"--server-url",
		default=os.environ.get("MESHCALL_SERVER_URL", "ws://127.0.0.1:8765/realtime"),
		help="Realtime store WebSocket URL",
	)
	parser.add_argument(
		"--user-id",
		default=os.environ.get("MESHCALL_USER_ID", ""),
		help="Signed-in user id",
	)
	parser.add_argument(
		"--name",
		default=os.environ.get("MESHCALL_NAME", os.environ.get("USER", "")),
		help="Display name shown to the people you call",
	)
	parser.add_argument(
		"--conversation",
		default=os.environ.get("MESHCALL_CONVERSATION", ""),
		help="Conversation to call into",
	)
	args = parser.parse_args(argv)

	setup_logging(args.log_level)

	try:
		from .ui.app import AppConfig, MeshCallApp, create_qt_app
	except Exception as e:
		print(f"Failed to import UI dependencies: {e}")
		print("Install the client with: pip install -e .")
		return 2

	qt_app = create_qt_app()
	controller = MeshCallApp(
		AppConfig(
			server_url=args.server_url,
			user_id=args.user_id,
			name=args.name,
			conversation_id=args.conversation,
		)
	)
	controller.start()
	qt_app.aboutToQuit.connect(controller.shutdown)

	return qt_app.exec()


if __name__ == "__main__":
	raise SystemExit(main(sys.argv[1:]))
