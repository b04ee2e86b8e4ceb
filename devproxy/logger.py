"""
devproxy.logger
~~~~~~~~~~~~~~~
Console logging for the bootstrap steps and JSON-lines access logs
(daily rotation) for the certificate distribution server.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

KEYMOJI = "\U0001F510"
LOGGER_NAME = "devproxy"

_ISO = "%Y-%m-%dT%H:%M:%SZ"


def _now() -> str:  # RFC-3339 without microseconds
    return datetime.now(tz=timezone.utc).strftime(_ISO)


class _PlainFormatter(logging.Formatter):
    """ e.g. 🔐 Using existing SSL cert and key... """

    def format(self, record):  # type: ignore[override]
        if isinstance(record.msg, dict):
            d: Dict[str, Any] = record.msg
            parts = [d.get("ts", _now()), d.get("ip", "-")]
            if d.get("event") == "error":
                parts.extend(["ERROR", d.get("reason", "")])
            else:  # end
                parts.extend(
                    [
                        d.get("method", "-"),
                        d.get("url", "-"),
                        str(d.get("status", "-")),
                        f'{d.get("bytes", 0):,}B',
                        f'{d.get("ms", 0)} ms',
                    ]
                )
            return " ".join(parts)
        line = f"{KEYMOJI} {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class _JSONFormatter(logging.Formatter):
    def format(self, record):  # type: ignore[override]
        return json.dumps(record.msg, separators=(",", ":"))


def get_logger(name: str | None = None) -> logging.Logger:
    if not name:
        return logging.getLogger(LOGGER_NAME)
    return logging.getLogger(f"{LOGGER_NAME}.{name}")


def configure_logging(debug: bool = False) -> logging.Logger:
    root = logging.getLogger(LOGGER_NAME)
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    root.propagate = False  # keep our lines out of the host app's root logger

    if not any(getattr(h, "_devproxy_console", False) for h in root.handlers):
        h = logging.StreamHandler(sys.stderr)
        h.setFormatter(_PlainFormatter())
        h._devproxy_console = True  # type: ignore[attr-defined]
        root.addHandler(h)
    return root


class AccessLogger:
    """Request log for the distribution server.

    Events go to the console through the ``devproxy.access`` logger and,
    when *basename* is given, to ``<basename>.jsonl`` rotated at midnight.
    """

    def __init__(self, basename: str | Path | None = None):
        log = get_logger("access")
        log.setLevel(logging.INFO)

        if basename is not None:
            jsonl_file = Path(basename).with_suffix(".jsonl")
            jsonl_file.parent.mkdir(parents=True, exist_ok=True)
            h = logging.handlers.TimedRotatingFileHandler(
                jsonl_file, when="midnight", backupCount=7, encoding="utf-8"
            )
            h.setFormatter(_JSONFormatter())
            log.addHandler(h)

        self.log = log

    def end(
        self,
        ip: str,
        method: str,
        url: str,
        status: int,
        total_bytes: int,
        duration_ms: int,
    ):
        self.log.info(
            {
                "event": "end",
                "ts": _now(),
                "ip": ip,
                "method": method,
                "url": url,
                "status": status,
                "bytes": total_bytes,
                "ms": duration_ms,
            }
        )

    def error(self, ip: str, reason: str):
        self.log.warning(
            {
                "event": "error",
                "ts": _now(),
                "ip": ip,
                "reason": reason,
            }
        )
