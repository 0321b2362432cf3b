from __future__ import annotations

import logging
import os
from typing import Optional


def setup_logging(level: Optional[str] = None) -> None:
    """Configure console logging for the client.

    Call events also reach the window's log panel through the coordinator
    callbacks; this covers everything else, including aiortc and websockets.
    """

    effective_level = (level or os.environ.get("MESHCALL_LOG_LEVEL") or "INFO").upper()

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=effective_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    else:
        root.setLevel(effective_level)

