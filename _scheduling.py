#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
_scheduling.py

A tiny background checker that keeps the premium subscription record fresh.
It is driven by a check callback, not by the billing module, so it can be
reused with any source that returns a subscription record.
"""

from __future__ import annotations
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from _base import BingeListError, Logger as LoggerProto
from _logging import log as default_log

SUBSCRIPTION_KEY = "binge-list-subscription"
DEFAULT_INTERVAL = 30.0

DEFAULT_SUBSCRIPTION: Dict[str, Any] = {
    "subscribed": False,
    "subscription_status": "inactive",
    "subscription_tier": None,
    "subscription_end": None,
    "email": None,
    "checked_at": None,
}


def is_active(record: Optional[Mapping[str, Any]]) -> bool:
    return isinstance(record, Mapping) and record.get("subscription_status") == "active"


def merge_defaults(rec: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    out = dict(DEFAULT_SUBSCRIPTION)
    if isinstance(rec, Mapping):
        out.update({k: v for k, v in rec.items() if k in DEFAULT_SUBSCRIPTION})
    if not out.get("checked_at"):
        out["checked_at"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    return out


class SubscriptionChecker:
    """Calls ``check_fn(token)`` on start and every ``interval`` seconds while a session is set."""

    def __init__(
        self,
        check_fn: Callable[[str], Mapping[str, Any]],
        store: Any,
        interval: float = DEFAULT_INTERVAL,
        logger: Optional[LoggerProto] = None,
    ) -> None:
        self.check_fn = check_fn
        self.store = store
        self.interval = max(0.05, float(interval))
        self._log = (logger or default_log).child("subscription")

        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._status: Dict[str, Any] = {
            "running": False,
            "last_tick": 0,
            "last_check_ok": None,
            "last_check_at": 0,
            "next_check_at": 0,
        }

    # ---- session ----
    def set_session(self, token: str) -> None:
        with self._lock:
            self._token = token or None
        self._wake.set()

    def clear_session(self) -> None:
        with self._lock:
            self._token = None
            self._status["next_check_at"] = 0

    def has_session(self) -> bool:
        with self._lock:
            return self._token is not None

    def status(self) -> Dict[str, Any]:
        with self._lock:
            st = dict(self._status)
        st["session"] = self.has_session()
        st["interval"] = self.interval
        return st

    # ---- control ----
    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="SubscriptionChecker", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        self._wake.set()
        t = self._thread
        if t and t.is_alive():
            t.join(timeout=2.0)
        self._thread = None

    def check_now(self) -> bool:
        """Run one check synchronously; returns False when there is no session or the check failed."""
        with self._lock:
            token = self._token
        if not token:
            return False
        ok = False
        try:
            record = merge_defaults(self.check_fn(token))
            res = self.store.write(SUBSCRIPTION_KEY, record)
            ok = bool(res)
            if not ok:
                self._log.warn(f"subscription record not saved: {res.error}")
        except BingeListError as e:
            self._log.warn(f"subscription check failed, keeping previous record: {e}")
        finally:
            with self._lock:
                self._status["last_check_ok"] = ok
                self._status["last_check_at"] = int(time.time())
        return ok

    # ---- internals ----
    def _loop(self) -> None:
        with self._lock:
            self._status["running"] = True
        try:
            while not self._stop.is_set():
                with self._lock:
                    self._status["last_tick"] = int(time.time())
                if self.has_session():
                    self.check_now()
                    with self._lock:
                        self._status["next_check_at"] = int(time.time() + self.interval)
                self._wake.wait(self.interval)
                self._wake.clear()
        finally:
            with self._lock:
                self._status["running"] = False


__all__ = ["SUBSCRIPTION_KEY", "DEFAULT_SUBSCRIPTION", "SubscriptionChecker", "is_active", "merge_defaults"]
