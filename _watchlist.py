# _watchlist.py
# Watchlist logic: entries, limits and status transitions on top of the store slot.

from __future__ import annotations
from datetime import datetime, timezone
from typing import Annotated, Any, Callable, Dict, List, Literal, Mapping, Optional, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from _base import EntryNotFoundError, Logger as LoggerProto, StorageError, WatchlistLimitError
from _logging import log as default_log
from _scheduling import SUBSCRIPTION_KEY, is_active
from _store import Store, Subscription
from _TMDB import GENRES, poster_url

ITEMS_KEY = "binge-list-items"
FREE_LIMIT = 10

MediaType = Literal["movie", "tv"]
WatchStatus = Literal["watching", "plan-to-watch", "finished"]
STATUSES = ("watching", "plan-to-watch", "finished")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clean_genres(v: Any) -> List[str]:
    out: List[str] = []
    for g in v or []:
        s = str(g).strip()
        if s and s not in out:
            out.append(s)
    return out


# -------- Models --------
class EntryDraft(BaseModel):
    """What a caller supplies when adding an entry."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str = Field(min_length=1)
    type: MediaType = "movie"
    status: WatchStatus = "plan-to-watch"
    rating: Optional[int] = Field(default=None, ge=1, le=10)
    genres: List[str] = Field(default_factory=list)
    year: Optional[int] = None
    poster: Optional[str] = None
    notes: Optional[str] = None
    date_finished: Optional[datetime] = Field(default=None, alias="dateFinished")

    @field_validator("title", mode="before")
    @classmethod
    def _strip_title(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    @field_validator("notes", mode="before")
    @classmethod
    def _blank_notes(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    @field_validator("genres", mode="before")
    @classmethod
    def _genres(cls, v: Any) -> Any:
        return _clean_genres(v)


class WatchlistEntry(EntryDraft):
    id: str = Field(min_length=1)
    date_added: datetime = Field(alias="dateAdded")


class EntryPatch(BaseModel):
    """Partial update; only the fields actually sent are applied."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: Optional[str] = Field(default=None, min_length=1)
    type: Optional[MediaType] = None
    status: Optional[WatchStatus] = None
    rating: Optional[int] = Field(default=None, ge=1, le=10)
    genres: Optional[List[str]] = None
    year: Optional[int] = None
    poster: Optional[str] = None
    notes: Optional[str] = None
    date_finished: Optional[datetime] = Field(default=None, alias="dateFinished")


class UserStats(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_watched: int = Field(alias="totalWatched")
    total_watching: int = Field(alias="totalWatching")
    total_planned: int = Field(alias="totalPlanned")
    average_rating: float = Field(alias="averageRating")


def _unique_ids(entries: List[WatchlistEntry]) -> List[WatchlistEntry]:
    seen = set()
    for e in entries:
        if e.id in seen:
            raise ValueError(f"duplicate entry id {e.id!r}")
        seen.add(e.id)
    return entries


EntryList = Annotated[List[WatchlistEntry], AfterValidator(_unique_ids)]
ENTRIES: TypeAdapter = TypeAdapter(EntryList)


def user_stats(entries: List[WatchlistEntry]) -> UserStats:
    finished = [e for e in entries if e.status == "finished"]
    ratings = [e.rating for e in finished if e.rating]
    avg = round(sum(ratings) / len(ratings), 1) if ratings else 0
    return UserStats(
        total_watched=len(finished),
        total_watching=sum(1 for e in entries if e.status == "watching"),
        total_planned=sum(1 for e in entries if e.status == "plan-to-watch"),
        average_rating=avg,
    )


def draft_from_tmdb(item: Mapping[str, Any], media_type: Optional[str] = None) -> EntryDraft:
    """Turn a TMDB listing or detail payload into a plan-to-watch draft."""
    typ = (media_type or item.get("media_type") or ("movie" if item.get("title") else "tv")).lower()
    if typ not in ("movie", "tv"):
        typ = "movie"
    title = (item.get("title") or item.get("name") or "").strip()
    date = item.get("release_date") or item.get("first_air_date") or ""
    year = int(date[:4]) if len(date) >= 4 and date[:4].isdigit() else None

    if isinstance(item.get("genres"), list):
        genres = [g.get("name", "") for g in item["genres"] if isinstance(g, dict)]
    else:
        genres = [GENRES[g] for g in (item.get("genre_ids") or []) if g in GENRES]

    poster = item.get("poster_path")
    return EntryDraft(
        title=title,
        type=typ,
        status="plan-to-watch",
        genres=genres,
        year=year,
        poster=poster_url(poster) if poster else None,
        notes=item.get("overview") or None,
    )


# -------- Service --------
class Watchlist:
    """The user's list, persisted in the store slot ``binge-list-items`` (newest first)."""

    def __init__(
        self,
        store: Store,
        *,
        is_premium: Optional[Callable[[], bool]] = None,
        free_limit: int = FREE_LIMIT,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None,
        logger: Optional[LoggerProto] = None,
    ) -> None:
        self.store = store
        self.free_limit = int(free_limit)
        self._is_premium = is_premium or (lambda: is_active(self.store.read(SUBSCRIPTION_KEY, {})))
        self._clock = clock or _utcnow
        self._id_factory = id_factory
        self._log = (logger or default_log).child("watchlist")
        store.register_schema(ITEMS_KEY, ENTRIES)

    # ---- helpers ----
    @staticmethod
    def _parse(raw: Any) -> List[WatchlistEntry]:
        return ENTRIES.validate_python(raw or [])

    @staticmethod
    def _dump(entries: List[WatchlistEntry]) -> List[Dict[str, Any]]:
        return ENTRIES.dump_python(entries, mode="json", by_alias=True)

    def _new_id(self, entries: List[WatchlistEntry]) -> str:
        taken = {e.id for e in entries}
        if self._id_factory:
            ident = self._id_factory()
            if ident in taken:
                raise StorageError(f"id factory produced a duplicate id {ident!r}")
            return ident
        n = int(self._clock().timestamp() * 1000)
        while str(n) in taken:
            n += 1
        return str(n)

    def _apply(self, fn: Callable[[List[WatchlistEntry]], List[WatchlistEntry]]) -> None:
        res = self.store.update(ITEMS_KEY, lambda raw: self._dump(fn(self._parse(raw))), default=[])
        if not res:
            raise res.error or StorageError(f"write to '{ITEMS_KEY}' failed")

    @staticmethod
    def _index(entries: List[WatchlistEntry], entry_id: str) -> int:
        for i, e in enumerate(entries):
            if e.id == entry_id:
                return i
        raise EntryNotFoundError(f"no watchlist entry with id {entry_id!r}")

    # ---- queries ----
    def premium(self) -> bool:
        return bool(self._is_premium())

    def items(self) -> List[WatchlistEntry]:
        return self._parse(self.store.read(ITEMS_KEY, []))

    def get(self, entry_id: str) -> WatchlistEntry:
        entries = self.items()
        return entries[self._index(entries, entry_id)]

    def filter(self, query: str = "", media_type: str = "all") -> List[WatchlistEntry]:
        q = (query or "").strip().lower()
        kind = (media_type or "all").lower()
        out = []
        for e in self.items():
            if kind != "all" and e.type != kind:
                continue
            if q and q not in e.title.lower() and not any(q in g.lower() for g in e.genres):
                continue
            out.append(e)
        return out

    def by_status(self, entries: Optional[List[WatchlistEntry]] = None) -> Dict[str, List[WatchlistEntry]]:
        entries = self.items() if entries is None else entries
        return {s: [e for e in entries if e.status == s] for s in STATUSES}

    def stats(self) -> UserStats:
        return user_stats(self.items())

    def remaining(self) -> Optional[int]:
        if self.premium():
            return None
        return max(0, self.free_limit - len(self.items()))

    # ---- mutations ----
    def add(self, draft: Union[EntryDraft, Mapping[str, Any]]) -> WatchlistEntry:
        d = draft if isinstance(draft, EntryDraft) else EntryDraft.model_validate(draft)
        premium = self.premium()
        created: List[WatchlistEntry] = []

        def apply(entries: List[WatchlistEntry]) -> List[WatchlistEntry]:
            if not premium and len(entries) >= self.free_limit:
                raise WatchlistLimitError(
                    f"free plan is limited to {self.free_limit} items; upgrade to premium for unlimited lists"
                )
            now = self._clock()
            entry = WatchlistEntry(id=self._new_id(entries), date_added=now, **d.model_dump())
            if entry.status == "finished" and entry.date_finished is None:
                entry.date_finished = now
            created.append(entry)
            return [entry] + entries

        self._apply(apply)
        entry = created[0]
        self._log.info(f"added '{entry.title}' to {entry.status}")
        return entry

    def add_from_tmdb(self, item: Mapping[str, Any], media_type: Optional[str] = None) -> WatchlistEntry:
        return self.add(draft_from_tmdb(item, media_type))

    def update(self, entry_id: str, changes: Union[EntryPatch, Mapping[str, Any]]) -> WatchlistEntry:
        patch = changes if isinstance(changes, EntryPatch) else EntryPatch.model_validate(changes)
        fields = patch.model_dump(exclude_unset=True)
        updated: List[WatchlistEntry] = []

        def apply(entries: List[WatchlistEntry]) -> List[WatchlistEntry]:
            i = self._index(entries, entry_id)
            data = entries[i].model_dump()
            data.update(fields)
            data["id"], data["date_added"] = entries[i].id, entries[i].date_added
            entry = WatchlistEntry.model_validate(data)
            if entry.status == "finished" and entry.date_finished is None:
                entry.date_finished = self._clock()
            updated.append(entry)
            return entries[:i] + [entry] + entries[i + 1:]

        self._apply(apply)
        return updated[0]

    def set_status(self, entry_id: str, status: str) -> WatchlistEntry:
        return self.update(entry_id, {"status": status})

    def rate(self, entry_id: str, rating: Optional[int]) -> WatchlistEntry:
        return self.update(entry_id, {"rating": rating})

    def remove(self, entry_id: str) -> WatchlistEntry:
        removed: List[WatchlistEntry] = []

        def apply(entries: List[WatchlistEntry]) -> List[WatchlistEntry]:
            i = self._index(entries, entry_id)
            removed.append(entries[i])
            return entries[:i] + entries[i + 1:]

        self._apply(apply)
        self._log.info(f"removed '{removed[0].title}'")
        return removed[0]

    def subscribe(self, callback: Callable[[List[WatchlistEntry]], None]) -> Subscription:
        return self.store.subscribe(ITEMS_KEY, lambda raw: callback(self._parse(raw)), default=[])
