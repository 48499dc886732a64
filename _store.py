# _store.py
# Persisted reactive store: named JSON slots on a durable string map, with
# synchronous change notification for every subscriber of a slot.

from __future__ import annotations
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple
import copy
import json
import threading

from _base import (
    Logger as LoggerProto,
    WriteResult,
    BingeListError,
    StorageError,
    QuotaExceededError,
    EncodeError,
    DecodeError,
    SchemaError,
    StoreClosedError,
)
from _logging import log as default_log

DEFAULT_QUOTA_BYTES = 5 * 1024 * 1024  # browser localStorage ballpark

ExternalListener = Callable[[str, Optional[str]], None]
Callback = Callable[[Any], None]


# -------- Codec --------
def encode(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False, allow_nan=False, separators=(",", ":"))
    except (TypeError, ValueError, RecursionError) as e:
        raise EncodeError(f"value is not JSON-serializable: {e}") from e


def decode(raw: str) -> Any:
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as e:
        raise DecodeError(f"malformed JSON: {e}") from e


def _units(s: str) -> int:
    """Size in UTF-16 code units, the unit browser storage quotas are counted in."""
    return len(s.encode("utf-16-le")) // 2


def _usage(data: Dict[str, str]) -> int:
    return sum(_units(k) + _units(v) for k, v in data.items())


def _check_quota(data: Dict[str, str], key: str, raw: str, quota: int) -> None:
    if quota <= 0:
        return
    old = data.get(key)
    used = _usage(data) - (_units(key) + _units(old) if old is not None else 0)
    need = used + _units(key) + _units(raw)
    if need > quota:
        raise QuotaExceededError(f"storage quota exceeded writing '{key}' ({need} > {quota} units)")


class Backend(Protocol):
    def get(self, key: str) -> Optional[str]: ...
    def set(self, key: str, raw: str) -> None: ...
    def delete(self, key: str) -> None: ...
    def keys(self) -> List[str]: ...
    def listen(self, callback: ExternalListener) -> Callable[[], None]: ...
    def close(self) -> None: ...


class _Listeners:
    def __init__(self) -> None:
        self._items: List[ExternalListener] = []
        self._lock = threading.Lock()

    def add(self, cb: ExternalListener) -> Callable[[], None]:
        with self._lock:
            self._items.append(cb)
        done = [False]

        def unlisten() -> None:
            if done[0]:
                return
            done[0] = True
            with self._lock:
                if cb in self._items:
                    self._items.remove(cb)
        return unlisten

    def emit(self, events: List[Tuple[str, Optional[str]]]) -> None:
        with self._lock:
            targets = list(self._items)
        for key, raw in events:
            for cb in targets:
                cb(key, raw)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()


# -------- Memory backend --------
class MemoryArea:
    """One origin's worth of storage; every backend attached to it behaves like a tab."""
    def __init__(self, data: Optional[Dict[str, str]] = None) -> None:
        self.data: Dict[str, str] = dict(data or {})
        self.lock = threading.RLock()
        self.backends: List["MemoryBackend"] = []


class MemoryBackend:
    def __init__(self, area: Optional[MemoryArea] = None, quota_bytes: int = DEFAULT_QUOTA_BYTES) -> None:
        self.area = area or MemoryArea()
        self.quota_bytes = int(quota_bytes)
        self._listeners = _Listeners()
        with self.area.lock:
            self.area.backends.append(self)

    def get(self, key: str) -> Optional[str]:
        with self.area.lock:
            return self.area.data.get(key)

    def keys(self) -> List[str]:
        with self.area.lock:
            return sorted(self.area.data)

    def set(self, key: str, raw: str) -> None:
        with self.area.lock:
            _check_quota(self.area.data, key, raw, self.quota_bytes)
            self.area.data[key] = raw
            peers = [b for b in self.area.backends if b is not self]
        for peer in peers:
            peer._listeners.emit([(key, raw)])

    def delete(self, key: str) -> None:
        with self.area.lock:
            existed = self.area.data.pop(key, None) is not None
            peers = [b for b in self.area.backends if b is not self]
        if existed:
            for peer in peers:
                peer._listeners.emit([(key, None)])

    def listen(self, callback: ExternalListener) -> Callable[[], None]:
        return self._listeners.add(callback)

    def close(self) -> None:
        self._listeners.clear()
        with self.area.lock:
            if self in self.area.backends:
                self.area.backends.remove(self)


# -------- JSON file backend --------
class JsonFileBackend:
    """A single JSON object file holding every slot as a string.

    Writes go through a temp file + replace. Changes made by other processes are
    picked up by ``poll()``, which a daemon thread runs every ``poll_interval``
    seconds once somebody listens.
    """
    def __init__(
        self,
        path: Path | str,
        quota_bytes: int = DEFAULT_QUOTA_BYTES,
        poll_interval: float = 1.0,
        logger: Optional[LoggerProto] = None,
    ) -> None:
        self.path = Path(path)
        self.quota_bytes = int(quota_bytes)
        self.poll_interval = float(poll_interval)
        self._log = (logger or default_log).child("storage")
        self._lock = threading.RLock()
        self._listeners = _Listeners()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._sig = self._signature()
        self._data: Dict[str, str] = self._read_file() or {}

    # ---- file helpers ----
    def _signature(self) -> Optional[Tuple[int, int]]:
        try:
            st = self.path.stat()
        except FileNotFoundError:
            return None
        return (st.st_mtime_ns, st.st_size)

    def _read_file(self) -> Optional[Dict[str, str]]:
        """Parsed file contents, {} when missing, None when unreadable or corrupt."""
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            self._log.warn(f"cannot read {self.path}: {e}")
            return None
        try:
            data = json.loads(text) if text.strip() else {}
        except ValueError as e:
            self._log.warn(f"{self.path} is not valid JSON: {e}")
            return None
        if not isinstance(data, dict):
            self._log.warn(f"{self.path} does not hold a JSON object")
            return None
        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _write_atomic(self, data: Dict[str, str]) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            tmp.replace(self.path)
        except OSError as e:
            try:
                tmp.unlink(missing_ok=True)
            except OSError:
                pass
            raise StorageError(f"cannot write {self.path}: {e}") from e
        self._sig = self._signature()

    def _sync_locked(self) -> List[Tuple[str, Optional[str]]]:
        """Reload the file if someone else changed it; return the per-key differences."""
        sig = self._signature()
        if sig == self._sig:
            return []
        self._sig = sig
        fresh = self._read_file()
        if fresh is None:
            return []
        events: List[Tuple[str, Optional[str]]] = []
        for k in sorted(set(self._data) | set(fresh)):
            if self._data.get(k) != fresh.get(k):
                events.append((k, fresh.get(k)))
        self._data = fresh
        return events

    # ---- backend API ----
    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._data)

    def set(self, key: str, raw: str) -> None:
        events: List[Tuple[str, Optional[str]]] = []
        written = False
        try:
            with self._lock:
                events = self._sync_locked()
                _check_quota(self._data, key, raw, self.quota_bytes)
                nxt = dict(self._data)
                nxt[key] = raw
                self._write_atomic(nxt)
                self._data = nxt
                written = True
        finally:
            # keys changed elsewhere still get reported, except one we just overwrote
            self._listeners.emit([e for e in events if not (written and e[0] == key)])

    def delete(self, key: str) -> None:
        events: List[Tuple[str, Optional[str]]] = []
        try:
            with self._lock:
                events = self._sync_locked()
                if key in self._data:
                    nxt = dict(self._data)
                    nxt.pop(key)
                    self._write_atomic(nxt)
                    self._data = nxt
        finally:
            self._listeners.emit([e for e in events if e[0] != key])

    def poll(self) -> int:
        """Check the file once for changes from elsewhere. Returns the number of changed keys."""
        with self._lock:
            events = self._sync_locked()
        self._listeners.emit(events)
        return len(events)

    def listen(self, callback: ExternalListener) -> Callable[[], None]:
        unlisten = self._listeners.add(callback)
        self._start_watcher()
        return unlisten

    def _start_watcher(self) -> None:
        if self.poll_interval <= 0:
            return
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="StoreFileWatcher", daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop.wait(self.poll_interval):
            try:
                self.poll()
            except Exception as e:
                self._log.error(f"watcher poll failed: {e}")

    def close(self) -> None:
        self._stop.set()
        t = self._thread
        if t and t.is_alive() and t is not threading.current_thread():
            t.join(timeout=2.0)
        self._listeners.clear()


# -------- Store --------
class Subscription:
    """Handle returned by ``Store.subscribe``; call it (or ``unsubscribe()``) to detach."""
    __slots__ = ("key", "callback", "active", "_store")

    def __init__(self, store: "Store", key: str, callback: Callback) -> None:
        self._store = store
        self.key = key
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._store._drop(self)

    __call__ = unsubscribe

    def __repr__(self) -> str:
        return f"<Subscription key={self.key!r} active={self.active}>"


class Store:
    """Reactive view over a backend's slots.

    ``read`` loads a slot once per process and caches it; ``write`` persists,
    updates the cache and notifies the slot's subscribers before returning.
    Changes reported by the backend's external feed go through the same path.
    Callers and subscribers always get their own copy of a slot value.
    """
    def __init__(
        self,
        backend: Backend,
        *,
        schemas: Optional[Dict[str, Any]] = None,
        logger: Optional[LoggerProto] = None,
        owns_backend: bool = True,
    ) -> None:
        self.backend = backend
        self._schemas: Dict[str, Any] = dict(schemas or {})
        self._log = (logger or default_log).child("store")
        self._lock = threading.RLock()
        self._cache: Dict[str, Any] = {}
        self._subs: Dict[str, List[Subscription]] = {}
        self._gen: Dict[str, int] = {}
        self._closed = False
        self._owns_backend = owns_backend
        self._unlisten = backend.listen(self._on_external)

    # ---- lifecycle ----
    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._unlisten()
            for subs in self._subs.values():
                for s in subs:
                    s.active = False
            self._subs.clear()
        if self._owns_backend:
            self.backend.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> "Store":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _ensure_open(self) -> None:
        if self._closed:
            raise StoreClosedError("store is closed")

    # ---- schemas ----
    def register_schema(self, key: str, adapter: Any) -> None:
        with self._lock:
            self._schemas[key] = adapter
            if key in self._cache:
                try:
                    self._cache[key] = self._validate(key, self._cache[key])
                except SchemaError as e:
                    self._log.warn(f"cached value of '{key}' does not match its schema, reloading: {e}")
                    self._cache.pop(key, None)

    def _validate(self, key: str, value: Any) -> Any:
        adapter = self._schemas.get(key)
        if adapter is None or value is None:
            return value
        try:
            return adapter.dump_python(adapter.validate_python(value), mode="json", by_alias=True)
        except (TypeError, ValueError) as e:
            raise SchemaError(f"value for '{key}' does not match its schema: {e}") from e

    def _load(self, key: str, raw: str) -> Any:
        return self._validate(key, decode(raw))

    # ---- reads ----
    def read(self, key: str, default: Any = None) -> Any:
        with self._lock:
            self._ensure_open()
            if key in self._cache:
                return copy.deepcopy(self._cache[key])
            value = copy.deepcopy(default)
            try:
                raw = self.backend.get(key)
            except StorageError as e:
                self._log.warn(f"cannot load '{key}', using default: {e}")
                raw = None
            if raw is not None:
                try:
                    value = self._load(key, raw)
                except (DecodeError, SchemaError) as e:
                    self._log.warn(f"stored '{key}' unusable, using default: {e}")
            self._cache[key] = value
            return copy.deepcopy(value)

    def keys(self) -> List[str]:
        with self._lock:
            self._ensure_open()
            return self.backend.keys()

    def subscriber_count(self, key: str) -> int:
        with self._lock:
            return sum(1 for s in self._subs.get(key, ()) if s.active)

    # ---- writes ----
    def write(self, key: str, value: Any) -> WriteResult:
        with self._lock:
            self._ensure_open()
            try:
                checked = self._validate(key, value)
                raw = encode(checked)
                stored = decode(raw)
                self.backend.set(key, raw)
            except BingeListError as e:
                self._log.error(f"write to '{key}' rejected: {e}")
                return WriteResult(ok=False, key=key, error=e)
            self._cache[key] = stored
            self._log.debug(f"wrote '{key}' ({len(raw)} chars)")
            self._notify(key, stored)
        return WriteResult(ok=True, key=key)

    def update(self, key: str, fn: Callable[[Any], Any], default: Any = None) -> WriteResult:
        """Read-modify-write under the store lock."""
        with self._lock:
            current = self.read(key, default)
            return self.write(key, fn(current))

    def remove(self, key: str) -> WriteResult:
        with self._lock:
            self._ensure_open()
            try:
                self.backend.delete(key)
            except StorageError as e:
                self._log.error(f"remove of '{key}' failed: {e}")
                return WriteResult(ok=False, key=key, error=e)
            self._cache.pop(key, None)
            self._notify(key, None)
        return WriteResult(ok=True, key=key)

    # ---- subscriptions ----
    def subscribe(self, key: str, callback: Callback, default: Any = None) -> Subscription:
        with self._lock:
            self._ensure_open()
            sub = Subscription(self, key, callback)
            self._subs.setdefault(key, []).append(sub)
            try:
                callback(self.read(key, default))
            except BaseException:
                sub.unsubscribe()
                raise
            return sub

    def _drop(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subs.get(sub.key)
            if subs and sub in subs:
                subs.remove(sub)
                if not subs:
                    self._subs.pop(sub.key, None)

    def _notify(self, key: str, value: Any) -> None:
        gen = self._gen[key] = self._gen.get(key, 0) + 1
        for sub in list(self._subs.get(key, ())):
            if not sub.active:
                continue
            try:
                sub.callback(copy.deepcopy(value))
            except Exception as e:
                self._log.error(f"subscriber of '{key}' raised: {e!r}")
            # superseded by a nested write of the same key
            if self._gen[key] != gen:
                return

    # ---- external feed ----
    def _on_external(self, key: str, raw: Optional[str]) -> None:
        with self._lock:
            if self._closed:
                return
            if raw is None:
                if key in self._cache:
                    self._cache.pop(key, None)
                    self._notify(key, None)
                return
            try:
                value = self._load(key, raw)
            except (DecodeError, SchemaError) as e:
                self._log.warn(f"ignoring external change to '{key}': {e}")
                return
            if key in self._cache and self._cache[key] == value:
                return
            self._cache[key] = value
            self._log.debug(f"external change to '{key}'")
            self._notify(key, value)


def open_store(
    path: Path | str,
    *,
    quota_bytes: int = DEFAULT_QUOTA_BYTES,
    poll_interval: float = 1.0,
    schemas: Optional[Dict[str, Any]] = None,
    logger: Optional[LoggerProto] = None,
) -> Store:
    backend = JsonFileBackend(path, quota_bytes=quota_bytes, poll_interval=poll_interval, logger=logger)
    return Store(backend, schemas=schemas, logger=logger)


__all__ = [
    "Store", "Subscription", "Backend", "MemoryArea", "MemoryBackend", "JsonFileBackend",
    "open_store", "encode", "decode", "DEFAULT_QUOTA_BYTES",
]
