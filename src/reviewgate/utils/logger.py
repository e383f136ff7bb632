from __future__ import annotations

import logging
import sys


def setup_logging(level: str = "INFO") -> None:
    """Configure the reviewgate logger hierarchy."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger("reviewgate")
    root.setLevel(numeric_level)
    ours = [h for h in root.handlers if getattr(h, "_reviewgate", False)]
    if ours:
        ours[0].setStream(sys.stderr)  # type: ignore[attr-defined]
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        handler._reviewgate = True  # type: ignore[attr-defined]
        root.addHandler(handler)

    # Suppress noisy third-party loggers
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
