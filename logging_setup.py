import logging
import logging.handlers
import os
from pathlib import Path
from typing import Optional

_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> logging.Logger:
    """Configure the root logger once: stderr always, a rotating file when LOG_FILE is set."""
    level_name = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    log_file = log_file or os.getenv("LOG_FILE")

    fmt = logging.Formatter(_FORMAT)
    root = logging.getLogger()
    root.setLevel(level_name)

    handlers = []
    if not any(getattr(h, "_catalog_handler", False) for h in root.handlers):
        stream = logging.StreamHandler()
        stream.setFormatter(fmt)
        stream._catalog_handler = True
        handlers.append(stream)

        if log_file:
            path = Path(log_file).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            rotating = logging.handlers.RotatingFileHandler(
                path, maxBytes=5_000_000, backupCount=3, encoding="utf-8"
            )
            rotating.setFormatter(fmt)
            rotating._catalog_handler = True
            handlers.append(rotating)

        for h in handlers:
            root.addHandler(h)

    # uvicorn installs its own handlers; only align the levels
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
        logging.getLogger(name).setLevel(level_name)

    return root
