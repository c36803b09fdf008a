from __future__ import annotations

import logging
import os
import sys
import json
import threading
import time
from pathlib import Path
from typing import Optional, Union


COMBINED_LOG = "combined.log"
ERROR_LOG = "error.log"


class JsonFormatter(logging.Formatter):
    """
    Minimal JSON log formatter:
      { "t": 169, "lvl": "INFO", "name": "mod", "msg": "text", "extra": {...} }
    """

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload = {
            "t": int(time.time() * 1000),
            "lvl": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        # Include extra dict if present
        if hasattr(record, "extra") and isinstance(record.extra, dict):  # type: ignore[attr-defined]
            payload["extra"] = record.extra  # type: ignore[attr-defined]
        # Include exception info if exists
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging(
    level: Optional[str] = None,
    log_dir: Optional[Union[str, Path]] = None,
    *,
    force: bool = False,
) -> None:
    """
    Configure root logger once with JSON formatting.
    Level precedence:
      - explicit `level` arg
      - env LOG_LEVEL (e.g., DEBUG/INFO/WARN/ERROR)
      - default INFO

    When `log_dir` is given, records are also written to `combined.log`
    (everything) and `error.log` (ERROR and above) inside it. Uncaught
    exceptions in worker threads are routed through the root logger too.
    """
    root = logging.getLogger()
    if getattr(root, "_tileserver_configured", False) and not force:  # idempotent
        return

    # Level
    lvl_name = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    lvl = getattr(logging, lvl_name, None)
    if not isinstance(lvl, int):
        lvl = logging.INFO

    formatter = JsonFormatter()

    # Handlers
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()

    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(formatter)
    root.addHandler(stream)

    dir_error: Optional[OSError] = None
    if log_dir is not None:
        try:
            d = Path(log_dir)
            d.mkdir(parents=True, exist_ok=True)
            combined = logging.FileHandler(d / COMBINED_LOG, encoding="utf-8")
            combined.setFormatter(formatter)
            errors = logging.FileHandler(d / ERROR_LOG, encoding="utf-8")
            errors.setLevel(logging.ERROR)
            errors.setFormatter(formatter)
            root.addHandler(combined)
            root.addHandler(errors)
        except OSError as e:
            dir_error = e

    root.setLevel(lvl)
    root._tileserver_configured = True  # type: ignore[attr-defined]
    threading.excepthook = log_thread_exception

    if dir_error is not None:
        logging.getLogger(__name__).warning(
            "log directory unavailable, logging to stdout only",
            extra={"extra": {"log_dir": str(log_dir), "error": str(dir_error)}},
        )


def log_thread_exception(args: threading.ExceptHookArgs) -> None:
    """threading.excepthook: uncaught worker-thread errors go to the JSON logs."""
    if args.exc_type is SystemExit:
        return
    thread = args.thread.name if args.thread is not None else None
    logging.getLogger("tileserver.threads").error(
        "uncaught exception in thread",
        exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
        extra={"extra": {"thread": thread}},
    )
