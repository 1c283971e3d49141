import collections
import json
import logging
import os
import re
import threading
from typing import Any, Deque, List, Optional

from .settings import Settings

_SECRET_KV = re.compile(r"(pass(word|phrase)?|token|secret|api[_-]?key)\s*[=:]\s*([^\s,;]+)", re.IGNORECASE)
_PEM_PRIV = re.compile(
    r"-----BEGIN (?:RSA |EC |ENCRYPTED )?PRIVATE KEY-----.*?-----END (?:RSA |EC |ENCRYPTED )?PRIVATE KEY-----",
    re.DOTALL | re.IGNORECASE,
)

_TEXT_FORMAT = "%(levelname)s %(name)s: %(message)s"


class _Redact(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            msg = _PEM_PRIV.sub("[REDACTED-PRIVATE-KEY]", record.msg)
            msg = _SECRET_KV.sub(lambda m: f"{m.group(1)}=[REDACTED]", msg)
            record.msg = msg
        return True


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class OperatorLog:
    """Bounded stream of operator-facing log lines.

    Producers never block: once ``maxlen`` lines are buffered the oldest one
    is dropped.
    """

    def __init__(self, maxlen: int = 1000) -> None:
        self._lines: Deque[str] = collections.deque(maxlen=maxlen)
        self._lock = threading.Lock()
        self._dropped = 0

    def push(self, line: str) -> None:
        with self._lock:
            if len(self._lines) == self._lines.maxlen:
                self._dropped += 1
            self._lines.append(line)

    def drain(self) -> List[str]:
        with self._lock:
            out = list(self._lines)
            self._lines.clear()
            return out

    def tail(self, n: int = 50) -> List[str]:
        with self._lock:
            return list(self._lines)[-n:]

    @property
    def dropped(self) -> int:
        return self._dropped

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)


class OperatorLogHandler(logging.Handler):
    def __init__(self, sink: OperatorLog, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.sink = sink

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.sink.push(self.format(record))
        except Exception:
            self.handleError(record)


_operator_log: Optional[OperatorLog] = None


def operator_log() -> OperatorLog:
    global _operator_log
    if _operator_log is None:
        _operator_log = OperatorLog()
    return _operator_log


def setup_logging(settings: Settings, json_mode: bool | None = None) -> OperatorLog:
    global _operator_log
    root = logging.getLogger()
    if getattr(root, "_kubepki_configured", False):
        return operator_log()

    level = getattr(logging, settings.LOG_LEVEL, logging.INFO)
    root.setLevel(level)

    if json_mode is None:
        json_mode = os.getenv("KUBEPKI_LOG_JSON", "false").lower() in ("1", "true", "yes")

    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.addFilter(_Redact())
    handler.setFormatter(_JsonFormatter() if json_mode else logging.Formatter(_TEXT_FORMAT))
    root.addHandler(handler)

    _operator_log = OperatorLog(maxlen=settings.LOG_QUEUE_SIZE)
    op_handler = OperatorLogHandler(_operator_log, level=max(level, logging.INFO))
    op_handler.addFilter(_Redact())
    op_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s", "%H:%M:%S"))
    root.addHandler(op_handler)

    setattr(root, "_kubepki_configured", True)
    return _operator_log
