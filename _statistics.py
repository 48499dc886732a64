# _statistics.py
from __future__ import annotations
from typing import Dict, Any, Iterable, List, Mapping, Optional, Tuple, Callable
from collections import Counter
from datetime import datetime, timedelta, timezone
import time

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from _base import Logger as LoggerProto
from _logging import log as default_log
from _store import Store
from _watchlist import ITEMS_KEY, ENTRIES, WatchlistEntry

ACTIVITY_KEY = "binge-list-activity"
STREAK_GAP_DAYS = 7
MAX_EVENTS = 5000
MAX_SAMPLES = 4000

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def _utc(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt.astimezone(timezone.utc)


def _iso(epoch: int) -> str:
    return datetime.fromtimestamp(epoch, timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _entries(items: Iterable[Any]) -> List[WatchlistEntry]:
    items = list(items)
    if all(isinstance(e, WatchlistEntry) for e in items):
        return items
    return ENTRIES.validate_python([e.model_dump() if isinstance(e, WatchlistEntry) else e for e in items])


def _month_start(year: int, month: int) -> datetime:
    while month < 1:
        month += 12
        year -= 1
    while month > 12:
        month -= 12
        year += 1
    return datetime(year, month, 1, tzinfo=timezone.utc)


def streaks(finished_at: Iterable[datetime], now: Optional[datetime] = None, gap_days: int = STREAK_GAP_DAYS) -> Tuple[int, int]:
    """(current, longest) runs of finishes no more than ``gap_days`` apart.

    The current run only counts while its newest finish is within ``gap_days`` of ``now``.
    """
    dates = sorted(_utc(d) for d in finished_at)
    if not dates:
        return 0, 0
    gap = timedelta(days=gap_days)
    longest = run = 1
    for prev, cur in zip(dates, dates[1:]):
        run = run + 1 if cur - prev <= gap else 1
        longest = max(longest, run)
    now = _utc(now or datetime.now(timezone.utc))
    current = run if now - dates[-1] <= gap else 0
    return current, longest


def insights(items: Iterable[Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    now = _utc(now or datetime.now(timezone.utc))
    entries = _entries(items)
    finished = [e for e in entries if e.status == "finished"]
    this_month = _month_start(now.year, now.month)

    genre_count: Counter = Counter()
    for e in finished:
        genre_count.update(e.genres)

    rated = [e.rating for e in finished if e.rating]
    avg = round(sum(rated) / len(rated), 1) if rated else 0

    monthly: List[Dict[str, Any]] = []
    for i in range(5, -1, -1):
        start = _month_start(now.year, now.month - i)
        end = _month_start(now.year, now.month - i + 1)
        hits = [e for e in finished if e.date_finished and start <= _utc(e.date_finished) < end]
        monthly.append({
            "month": _MONTHS[start.month - 1],
            "movies": sum(1 for e in hits if e.type == "movie"),
            "tv": sum(1 for e in hits if e.type == "tv"),
            "total": len(hits),
        })

    top = genre_count.most_common(5)
    current, longest = streaks([e.date_finished for e in finished if e.date_finished], now)
    return {
        "totalWatched": len(finished),
        "totalWatching": sum(1 for e in entries if e.status == "watching"),
        "totalPlanned": sum(1 for e in entries if e.status == "plan-to-watch"),
        "watchedThisMonth": sum(1 for e in finished if e.date_finished and _utc(e.date_finished) >= this_month),
        "averageRating": avg,
        "topGenres": [{"name": g, "value": c} for g, c in top],
        "favoriteGenre": top[0][0] if top else "None",
        "monthlyData": monthly,
        "movieCount": sum(1 for e in finished if e.type == "movie"),
        "tvCount": sum(1 for e in finished if e.type == "tv"),
        "currentStreak": current,
        "longestStreak": longest,
    }


# -------- Activity log --------
class ActivityData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    events: List[Dict[str, Any]] = Field(default_factory=list)
    samples: List[Dict[str, Any]] = Field(default_factory=list)
    current: Optional[Dict[str, Dict[str, Any]]] = None
    counters: Dict[str, int] = Field(default_factory=lambda: {"added": 0, "removed": 0, "finished": 0})
    last_change: Dict[str, int] = Field(default_factory=lambda: {"added": 0, "removed": 0, "ts": 0})


ACTIVITY = TypeAdapter(ActivityData)


def _count_at(samples: List[Mapping[str, Any]], ts_floor: int) -> int:
    if not samples:
        return 0
    ordered = sorted(samples, key=lambda r: int(r.get("ts") or 0))
    best = None
    for r in ordered:
        if int(r.get("ts") or 0) <= ts_floor:
            best = r
        else:
            break
    if best is None:
        best = ordered[0]
    return int(best.get("count") or 0)


class ActivityLog:
    """Records adds, removals and status changes of the watchlist into ``binge-list-activity``."""

    def __init__(self, store: Store, *, clock: Optional[Callable[[], float]] = None, logger: Optional[LoggerProto] = None) -> None:
        self.store = store
        self._clock = clock or time.time
        self._log = (logger or default_log).child("activity")
        store.register_schema(ACTIVITY_KEY, ACTIVITY)
        self._sub = store.subscribe(ITEMS_KEY, self._on_items, default=[])

    def close(self) -> None:
        self._sub.unsubscribe()

    def _data(self) -> Dict[str, Any]:
        d = self.store.read(ACTIVITY_KEY, None)
        return d if isinstance(d, dict) else ACTIVITY.dump_python(ActivityData(), mode="json")

    @staticmethod
    def _snapshot(items: Any) -> Dict[str, Dict[str, Any]]:
        out: Dict[str, Dict[str, Any]] = {}
        for it in items or []:
            if isinstance(it, Mapping) and it.get("id"):
                out[str(it["id"])] = {
                    "title": it.get("title") or "",
                    "type": it.get("type") or "",
                    "status": it.get("status") or "",
                }
        return out

    def _on_items(self, items: Any) -> None:
        now = int(self._clock())
        cur = self._snapshot(items)
        summary: Dict[str, int] = {}

        def apply(d: Dict[str, Any]) -> Dict[str, Any]:
            prev = d.get("current")
            ev = d.get("events") or []
            c = d.get("counters") or {}
            samples = d.get("samples") or []
            if prev is None:
                # first run: take the current list as the baseline
                d["current"] = cur
                samples.append({"ts": now, "count": len(cur)})
                d["samples"] = samples[-MAX_SAMPLES:]
                return d

            added = sorted(set(cur) - set(prev))
            removed = sorted(set(prev) - set(cur))
            changed = sorted(k for k in set(cur) & set(prev) if cur[k]["status"] != prev[k].get("status"))
            if not (added or removed or changed):
                summary["noop"] = 1
                return d

            for k in added:
                ev.append({"ts": now, "action": "add", "id": k, **cur[k]})
            for k in removed:
                ev.append({"ts": now, "action": "remove", "id": k, **prev[k]})
            for k in changed:
                ev.append({"ts": now, "action": "status", "id": k, **cur[k]})
            d["events"] = ev[-MAX_EVENTS:]

            finished = sum(1 for k in added + changed if cur[k]["status"] == "finished")
            c["added"] = int(c.get("added", 0)) + len(added)
            c["removed"] = int(c.get("removed", 0)) + len(removed)
            c["finished"] = int(c.get("finished", 0)) + finished
            d["counters"] = c
            d["last_change"] = {"added": len(added), "removed": len(removed), "ts": now}
            d["current"] = cur

            samples.append({"ts": now, "count": len(cur)})
            d["samples"] = samples[-MAX_SAMPLES:]
            summary.update(added=len(added), removed=len(removed), status=len(changed))
            return d

        res = self.store.update(ACTIVITY_KEY, lambda d: apply(d if isinstance(d, dict) else self._data()), default=None)
        if not res:
            self._log.warn(f"activity not recorded: {res.error}")
        elif summary and "noop" not in summary:
            self._log.debug(f"activity +{summary['added']} -{summary['removed']} ~{summary['status']}")

    def events(self, limit: int = 50) -> List[Dict[str, Any]]:
        ev = list(self._data().get("events") or [])
        return list(reversed(ev[-max(0, limit):])) if limit else []

    def overview(self) -> Dict[str, Any]:
        now_epoch = int(self._clock())
        week_floor = now_epoch - 7 * 86400
        month_floor = now_epoch - 30 * 86400

        d = self._data()
        samples = list(d.get("samples") or [])
        counters = d.get("counters") or {}
        last = d.get("last_change") or {}
        return {
            "ok": True,
            "generated_at": _iso(now_epoch),
            "now": len(d.get("current") or {}),
            "week": _count_at(samples, week_floor),
            "month": _count_at(samples, month_floor),
            "added": int(counters.get("added", 0)),
            "removed": int(counters.get("removed", 0)),
            "finished": int(counters.get("finished", 0)),
            "new": int(last.get("added") or 0),
            "del": int(last.get("removed") or 0),
            "window": {
                "week_start": _iso(week_floor),
                "month_start": _iso(month_floor),
            },
        }


__all__ = ["insights", "streaks", "ActivityLog", "ACTIVITY_KEY", "STREAK_GAP_DAYS"]
