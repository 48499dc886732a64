# _base.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol

# ---------- Logging

class Logger(Protocol):
    def debug(self, *parts: Any, extra: Optional[Mapping[str, Any]] = None) -> None: ...
    def info(self, *parts: Any, extra: Optional[Mapping[str, Any]] = None) -> None: ...
    def warn(self, *parts: Any, extra: Optional[Mapping[str, Any]] = None) -> None: ...
    def error(self, *parts: Any, extra: Optional[Mapping[str, Any]] = None) -> None: ...
    def bind(self, **ctx: Any) -> "Logger": ...
    def child(self, name: str) -> "Logger": ...

# ---------- Store results

@dataclass(frozen=True)
class WriteResult:
    """Outcome of a store write. Falsy when the write was rejected."""
    ok: bool
    key: str
    error: Optional["BingeListError"] = None

    def __bool__(self) -> bool:
        return self.ok

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": self.ok, "key": self.key}
        if self.error is not None:
            out["error"] = str(self.error)
        return out

# ---------- Errors

class BingeListError(RuntimeError): ...

# store
class StorageError(BingeListError): ...
class QuotaExceededError(StorageError): ...
class EncodeError(StorageError): ...
class DecodeError(BingeListError): ...
class SchemaError(BingeListError): ...
class StoreClosedError(BingeListError): ...

# watchlist
class WatchlistLimitError(BingeListError): ...
class EntryNotFoundError(BingeListError): ...

# collaborators
class UpstreamError(BingeListError): ...
class BillingError(BingeListError): ...
class AuthError(BillingError): ...
class ConfigError(BingeListError): ...

__all__ = [
    "Logger", "WriteResult",
    "BingeListError", "StorageError", "QuotaExceededError", "EncodeError", "DecodeError", "SchemaError",
    "StoreClosedError", "WatchlistLimitError", "EntryNotFoundError",
    "UpstreamError", "BillingError", "AuthError", "ConfigError",
]
