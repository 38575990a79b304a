import json
import logging
import os
import sys
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

# Context var to carry a request id through the request lifecycle
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# extra= fields copied into structured output when present on a record
REQUEST_FIELDS = ("method", "path", "status", "duration_ms", "client", "user_agent")
GAME_FIELDS = (
    "date",
    "target_sets",
    "board_size",
    "attempts",
    "set_count",
    "session_id",
    "player_id",
    "username",
    "seconds",
    "migration",
    "evicted",
    "url",
    "errors",
    "error",
)


class JsonFormatter(logging.Formatter):
    """JSON log formatter suitable for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "level": record.levelname,
            "time": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S%z"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        rid = request_id_ctx.get()
        if rid:
            payload["request_id"] = rid
        for key in REQUEST_FIELDS + GAME_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                payload[key] = val
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ColorFormatter(logging.Formatter):
    """Human-friendly, colorized formatter that uses structured fields when present."""

    RESET = "\033[0m"
    BOLD = "\033[1m"
    GREY = "\033[90m"
    COLORS = {
        "DEBUG": "\033[36m",   # cyan
        "INFO": "\033[32m",    # green
        "WARNING": "\033[33m", # yellow
        "ERROR": "\033[31m",   # red
        "CRITICAL": "\033[35m",# magenta
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def _color(self, text: str, color: str) -> str:
        if not self.use_color:
            return text
        return f"{color}{text}{self.RESET}"

    def _status_str(self, status: Optional[int]) -> Optional[str]:
        if not isinstance(status, int):
            return None
        if status < 300:
            return self._color(str(status), "\033[32m")
        if status < 400:
            return self._color(str(status), "\033[36m")
        if status < 500:
            return self._color(str(status), "\033[33m")
        return self._color(str(status), "\033[31m")

    def _request_line(self, record: logging.LogRecord) -> Optional[str]:
        method = getattr(record, "method", None)
        path = getattr(record, "path", None)
        duration_ms = getattr(record, "duration_ms", None)
        parts: List[str] = []
        if method:
            parts.append(self._color(method, self.BOLD))
        if path:
            parts.append(self._color(path, "\033[36m"))
        status_str = self._status_str(getattr(record, "status", None))
        if status_str:
            parts.append(status_str)
        if duration_ms is not None:
            parts.append(self._color(f"{duration_ms}ms", self.GREY))
        return " ".join(parts) if parts else None

    def _fields_str(self, record: logging.LogRecord) -> Optional[str]:
        fields = []
        for key in GAME_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                fields.append(f"{key}={val}")
        client = getattr(record, "client", None)
        if client:
            fields.append(f"client={client}")
        ua = getattr(record, "user_agent", None)
        if ua:
            u = ua if len(ua) <= 64 else ua[:61] + "..."
            fields.append(f"ua=\"{u}\"")
        return "[" + " ".join(fields) + "]" if fields else None

    def format(self, record: logging.LogRecord) -> str:
        level = record.levelname
        parts: List[str] = [
            self._color(level, self.COLORS.get(level, "")),
            self.formatTime(record, datefmt="%H:%M:%S"),
        ]
        rid = request_id_ctx.get()
        if rid:
            parts.append(self._color(f"rid={rid}", "\033[35m"))
        parts.append(self._color(record.name, "\033[34m"))

        req_line = self._request_line(record)
        if req_line:
            parts.append(req_line)

        msg = record.getMessage()
        if msg:
            parts.extend(["-", msg])

        fields = self._fields_str(record)
        if fields:
            parts.append(self._color(fields, self.GREY))

        if record.exc_info:
            parts.append("\n" + self.formatException(record.exc_info))

        return " ".join(parts)


def _isatty(stream) -> bool:
    isatty = getattr(stream, "isatty", None)
    if isatty is None:
        return False
    try:
        return bool(isatty())
    except ValueError:
        # closed stream
        return False


def _level_from_env(default: int) -> int:
    name = os.getenv("LOG_LEVEL", "").upper()
    if not name:
        return default
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else default


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """Configure root and uvicorn loggers.

    Chooses JSON (default) or colorized pretty format based on env/TTY:
    - LOG_FORMAT=pretty forces pretty
    - LOG_FORMAT=json forces JSON
    - otherwise: pretty if stdout is a TTY, else JSON
    - LOG_COLOR=0 disables ANSI colors in pretty mode
    - LOG_LEVEL overrides ``level`` (DEBUG, INFO, WARNING, ...)
    """
    level = _level_from_env(level)
    root = logging.getLogger()
    root.setLevel(level)
    # Clear existing handlers to avoid duplicate logs
    for h in root.handlers[:]:
        root.removeHandler(h)

    fmt_env = os.getenv("LOG_FORMAT", "").lower()
    color_env = os.getenv("LOG_COLOR", "1").lower()
    use_pretty = (fmt_env == "pretty") or (fmt_env == "" and _isatty(sys.stdout))
    use_color = use_pretty and color_env not in ("0", "false", "no")

    handler = logging.StreamHandler(sys.stdout)
    if use_pretty:
        handler.setFormatter(ColorFormatter(use_color=use_color))
    else:
        handler.setFormatter(JsonFormatter())
    root.addHandler(handler)

    # Align uvicorn loggers to the same handler/level
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.handlers = [handler]
        lg.setLevel(level)
        lg.propagate = False

    return root


def get_logger(name: str = "daily_set") -> logging.Logger:
    return logging.getLogger(name)
