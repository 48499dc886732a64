# _logging.py
from __future__ import annotations
import sys, datetime, json, threading, re
from collections import deque
from typing import Any, Deque, Dict, List, Mapping, Optional, TextIO

RESET = "\033[0m"
DIM = "\033[90m"
RED = "\033[91m"
GREEN = "\033[92m"
YELLOW = "\033[33m"
BLUE = "\033[94m"

LEVELS = {"silent": 60, "error": 40, "warn": 30, "info": 20, "debug": 10}
LEVEL_TAG = {"debug": "[debug]", "info": "[i]", "warn": "[!]", "error": "[!]", "success": "[✓]"}

MAX_BUFFER_LINES = 3000
_ANSI_STRIP = re.compile(r"\x1b\[[0-9;]*m")


def strip_ansi(s: str) -> str:
    return _ANSI_STRIP.sub("", s)


class _Sinks:
    """Output targets shared by a logger and everything bound from it."""
    def __init__(self, stream: TextIO, max_lines: int) -> None:
        self.stream = stream
        self.json_stream: Optional[TextIO] = None
        self.lock = threading.Lock()
        self.max_lines = max_lines
        self.buffers: Dict[str, Deque[str]] = {}
        self.seq: Dict[str, int] = {}

    def remember(self, tag: str, line: str) -> None:
        buf = self.buffers.get(tag)
        if buf is None:
            buf = self.buffers[tag] = deque(maxlen=self.max_lines)
        buf.append(line)
        self.seq[tag] = self.seq.get(tag, 0) + 1


class Logger:
    """Small stdout logger with context binding, a JSON-lines sink and per-tag line buffers.

    The buffers back the web UI log view: every line is kept (ANSI-stripped) under
    the logger's ``tag`` context value, or ``APP`` when no tag is bound.
    """
    def __init__(
        self,
        stream: TextIO = sys.stdout,
        level: str = "info",
        use_color: bool = True,
        show_time: bool = True,
        time_fmt: str = "%Y-%m-%d %H:%M:%S",
        *,
        max_lines: int = MAX_BUFFER_LINES,
        _context: Optional[Dict[str, Any]] = None,
        _sinks: Optional[_Sinks] = None,
    ):
        self.level_no = LEVELS.get(level, 20)
        self.use_color = use_color
        self.show_time = show_time
        self.time_fmt = time_fmt
        self._context: Dict[str, Any] = dict(_context or {})
        self._sinks = _sinks or _Sinks(stream, max_lines)

    # ----- config
    def set_level(self, level: str) -> None:
        self.level_no = LEVELS.get((level or "").lower(), self.level_no)

    @property
    def level_name(self) -> str:
        for k, v in LEVELS.items():
            if v == self.level_no:
                return k
        return "info"

    def enable_json(self, file_path: str) -> None:
        with self._sinks.lock:
            if self._sinks.json_stream:
                self._sinks.json_stream.close()
            self._sinks.json_stream = open(file_path, "a", encoding="utf-8")

    def close(self) -> None:
        with self._sinks.lock:
            if self._sinks.json_stream:
                self._sinks.json_stream.close()
                self._sinks.json_stream = None

    # ----- context
    def bind(self, **ctx: Any) -> "Logger":
        new_ctx = dict(self._context); new_ctx.update(ctx)
        child = Logger(
            level=self.level_name,
            use_color=self.use_color,
            show_time=self.show_time,
            time_fmt=self.time_fmt,
            _context=new_ctx,
            _sinks=self._sinks,
        )
        return child

    def child(self, name: str) -> "Logger":
        return self.bind(module=name)

    # ----- buffers
    def lines(self, tag: str = "APP") -> List[str]:
        with self._sinks.lock:
            return list(self._sinks.buffers.get(tag.upper(), ()))

    def lines_since(self, tag: str, seen: int) -> "tuple[List[str], int]":
        """Lines appended after ``seen`` (a value previously returned here), and the new mark."""
        tag = tag.upper()
        with self._sinks.lock:
            total = self._sinks.seq.get(tag, 0)
            buf = list(self._sinks.buffers.get(tag, ()))
        fresh = max(0, min(total - seen, len(buf)))
        return (buf[-fresh:] if fresh else []), total

    # ----- formatting
    def _fmt_text(self, level: str, *parts: Any) -> str:
        tag = LEVEL_TAG.get(level, "[i]")
        module = self._context.get("module")
        head = f"{tag} [{module}]" if module else tag
        msg = " ".join(str(p) for p in (head, *parts))
        if self.use_color:
            col = {"debug": YELLOW, "info": BLUE, "success": GREEN}.get(level, RED)
            msg = msg.replace(tag, f"{col}{tag}{RESET}", 1)
        if self.show_time:
            ts = datetime.datetime.now().strftime(self.time_fmt)
            prefix = f"{DIM}[{ts}]{RESET}" if self.use_color else f"[{ts}]"
            return f"{prefix} {msg}"
        return msg

    def _emit(self, level: str, sink_level: str, parts: tuple, extra: Optional[Mapping[str, Any]]) -> None:
        text = self._fmt_text(level, *parts)
        msg = " ".join(str(p) for p in parts)
        buf_tag = str(self._context.get("tag") or "APP").upper()
        s = self._sinks
        with s.lock:
            s.stream.write(text + "\n")
            s.stream.flush()
            s.remember(buf_tag, strip_ansi(text))
            if s.json_stream:
                payload: Dict[str, Any] = {
                    "ts": datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
                    "level": sink_level,
                    "msg": msg,
                    "ctx": self._context or {},
                }
                if extra:
                    payload["extra"] = dict(extra)
                s.json_stream.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
                s.json_stream.flush()

    # ----- public API
    def debug(self, *parts: Any, extra: Optional[Mapping[str, Any]] = None) -> None:
        if self.level_no <= LEVELS["debug"]:
            self._emit("debug", "debug", parts, extra)

    def info(self, *parts: Any, extra: Optional[Mapping[str, Any]] = None) -> None:
        if self.level_no <= LEVELS["info"]:
            self._emit("info", "info", parts, extra)

    def warn(self, *parts: Any, extra: Optional[Mapping[str, Any]] = None) -> None:
        if self.level_no <= LEVELS["warn"]:
            self._emit("warn", "warn", parts, extra)

    def error(self, *parts: Any, extra: Optional[Mapping[str, Any]] = None) -> None:
        if self.level_no <= LEVELS["error"]:
            self._emit("error", "error", parts, extra)

    def success(self, *parts: Any, extra: Optional[Mapping[str, Any]] = None) -> None:
        if self.level_no <= LEVELS["info"]:
            self._emit("success", "info", parts, extra)


# default instance
log = Logger()

__all__ = ["Logger", "log", "LEVELS", "strip_ansi", "RESET", "DIM", "RED", "GREEN", "YELLOW", "BLUE"]
