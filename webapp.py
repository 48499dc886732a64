#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Web backend (FastAPI)

Owns the persisted store and serves the watchlist, insights, TMDB browsing and
premium billing over JSON. Store changes are pushed to browsers over SSE at
``/api/events``; ``/api/logs/stream`` follows the in-memory log buffer.
"""
import asyncio
import json
import socket
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import uvicorn
from fastapi import APIRouter, Body, FastAPI, Header, Query, Request, Path as FPath
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ValidationError

from _base import (
    AuthError,
    BillingError,
    BingeListError,
    ConfigError,
    DecodeError,
    EntryNotFoundError,
    QuotaExceededError,
    SchemaError,
    StorageError,
    StoreClosedError,
    UpstreamError,
    WatchlistLimitError,
)
from _billing import Billing
from _config import CONFIG_PATH, configure_logging, deep_merge, load_config, read_config_file, save_config
from _logging import log
from _scheduling import DEFAULT_SUBSCRIPTION, SUBSCRIPTION_KEY, SubscriptionChecker, merge_defaults
from _statistics import ActivityLog, insights
from _store import Store, open_store
from _TMDB import GENRES, MOODS, MOVIE_GENRES, TV_GENRES, TMDBClient
from _watchlist import EntryDraft, EntryPatch, Watchlist, WatchStatus

ROOT = Path(__file__).resolve().parent

# most specific class first
ERROR_STATUS = [
    (WatchlistLimitError, 402),
    (EntryNotFoundError, 404),
    (QuotaExceededError, 507),
    (StorageError, 500),
    (SchemaError, 422),
    (DecodeError, 422),
    (StoreClosedError, 503),
    (UpstreamError, 502),
    (AuthError, 401),
    (BillingError, 400),
    (ConfigError, 400),
]

SECRET_FIELDS = {("tmdb", "api_key"), ("stripe", "secret_key"), ("supabase", "service_role_key")}

router = APIRouter()


def status_for(err: BaseException) -> int:
    for cls, code in ERROR_STATUS:
        if isinstance(err, cls):
            return code
    return 500


def _err(e: BaseException) -> JSONResponse:
    return JSONResponse({"ok": False, "error": str(e)}, status_code=status_for(e))


# ---------- request bodies ----------
class StatusBody(BaseModel):
    status: WatchStatus


class FromTmdbBody(BaseModel):
    media_type: Optional[Literal["movie", "tv"]] = None
    tmdb_id: Optional[int] = None
    item: Optional[Dict[str, Any]] = None


class ProfileBody(BaseModel):
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None


# ---------- app factory ----------
def create_app(
    cfg: Optional[Dict[str, Any]] = None,
    *,
    store: Optional[Store] = None,
    tmdb: Optional[TMDBClient] = None,
    billing: Optional[Billing] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    cfg = cfg if cfg is not None else load_config(config_path)
    configure_logging(cfg, log)
    weblog = log.child("web")

    owns_store = store is None
    if store is None:
        st = cfg.get("storage") or {}
        store = open_store(
            st.get("path") or str(ROOT / "binge_list_store.json"),
            quota_bytes=int(st.get("quota_bytes") or 5 * 1024 * 1024),
            poll_interval=float(st.get("poll_interval") or 1.0),
        )
    if tmdb is None:
        t = cfg.get("tmdb") or {}
        tmdb = TMDBClient(t.get("api_key") or "", cache_dir=t.get("cache_dir") or None, ttl_days=int(t.get("ttl_days") or 14))
    if billing is None:
        b = cfg.get("billing") or {}
        billing = Billing(
            (cfg.get("stripe") or {}).get("secret_key"),
            (cfg.get("supabase") or {}).get("url"),
            (cfg.get("supabase") or {}).get("service_role_key"),
            price_cents=int(b.get("price_cents") or 999),
            currency=b.get("currency") or "usd",
        )

    watchlist = Watchlist(store, free_limit=int((cfg.get("billing") or {}).get("free_limit") or 10))
    activity = ActivityLog(store)
    checker = SubscriptionChecker(
        billing.check_subscription,
        store,
        interval=float((cfg.get("subscription") or {}).get("check_interval") or 30.0),
    )

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        checker.start()
        weblog.success("backend started")
        try:
            yield
        finally:
            checker.stop()
            activity.close()
            if owns_store:
                store.close()
            weblog.info("backend stopped")

    app = FastAPI(title="Binge List", lifespan=_lifespan)
    app.state.cfg = cfg
    app.state.config_path = Path(config_path) if config_path else CONFIG_PATH
    app.state.store = store
    app.state.watchlist = watchlist
    app.state.activity = activity
    app.state.tmdb = tmdb
    app.state.billing = billing
    app.state.checker = checker

    @app.middleware("http")
    async def cache_headers_for_api(request: Request, call_next):
        resp = await call_next(request)
        # Never cache JSON/API responses in the browser
        if request.url.path.startswith("/api/"):
            resp.headers["Cache-Control"] = "no-store"
            resp.headers["Pragma"] = "no-cache"
            resp.headers["Expires"] = "0"
        return resp

    @app.exception_handler(BingeListError)
    async def _on_app_error(request: Request, exc: BingeListError):
        code = status_for(exc)
        if code >= 500:
            weblog.error(f"{request.method} {request.url.path}: {exc}")
        else:
            weblog.debug(f"{request.method} {request.url.path} -> {code}: {exc}")
        return _err(exc)

    @app.exception_handler(ValidationError)
    async def _on_validation(request: Request, exc: ValidationError):
        return JSONResponse({"ok": False, "error": str(exc)}, status_code=422)

    app.include_router(router)
    return app


def _state(request: Request) -> Any:
    return request.app.state


def _dump(entries) -> List[Dict[str, Any]]:
    return [e.model_dump(mode="json", by_alias=True) for e in entries]


# ---------- Store (raw slots) ----------
@router.get("/api/store")
def api_store_keys(request: Request) -> Dict[str, Any]:
    return {"ok": True, "keys": sorted(_state(request).store.keys())}


@router.get("/api/store/{key}")
def api_store_get(request: Request, key: str = FPath(...)) -> Dict[str, Any]:
    return {"ok": True, "key": key, "value": _state(request).store.read(key, None)}


@router.put("/api/store/{key}")
def api_store_put(request: Request, key: str = FPath(...), value: Any = Body(None)) -> JSONResponse:
    res = _state(request).store.write(key, value)
    return JSONResponse(res.as_dict(), status_code=200 if res else status_for(res.error))


@router.delete("/api/store/{key}")
def api_store_delete(request: Request, key: str = FPath(...)) -> JSONResponse:
    res = _state(request).store.remove(key)
    return JSONResponse(res.as_dict(), status_code=200 if res else status_for(res.error))


@router.get("/api/events")
async def api_events(request: Request, key: str = Query(...), limit: Optional[int] = Query(None, ge=1)):
    """SSE feed of one slot: the current value first, then every change."""
    store = _state(request).store
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def push(value: Any) -> None:
        if not loop.is_closed():
            loop.call_soon_threadsafe(queue.put_nowait, value)

    async def gen():
        # store calls take a threading lock; run them off the event loop
        sub = await asyncio.to_thread(store.subscribe, key, push, None)
        sent = 0
        try:
            while limit is None or sent < limit:
                try:
                    value = await asyncio.wait_for(queue.get(), timeout=15.0)
                except asyncio.TimeoutError:
                    if await request.is_disconnected():
                        break
                    yield ": keep-alive\n\n"
                    continue
                yield f"data: {json.dumps(value, separators=(',', ':'), ensure_ascii=False)}\n\n"
                sent += 1
        finally:
            await asyncio.to_thread(sub.unsubscribe)

    return StreamingResponse(gen(), media_type="text/event-stream", headers={"Cache-Control": "no-store"})


# ---------- Watchlist ----------
@router.get("/api/watchlist")
def api_watchlist(
    request: Request,
    q: str = Query(""),
    type: Literal["all", "movie", "tv"] = Query("all"),
    status: Optional[WatchStatus] = Query(None),
) -> Dict[str, Any]:
    wl: Watchlist = _state(request).watchlist
    items = wl.filter(q, type)
    if status:
        items = [e for e in items if e.status == status]
    return {
        "ok": True,
        "items": _dump(items),
        "stats": wl.stats().model_dump(by_alias=True),
        "premium": wl.premium(),
        "remaining": wl.remaining(),
    }


@router.post("/api/watchlist")
def api_watchlist_add(request: Request, draft: EntryDraft) -> Dict[str, Any]:
    entry = _state(request).watchlist.add(draft)
    return {"ok": True, "item": entry.model_dump(mode="json", by_alias=True)}


@router.post("/api/watchlist/from-tmdb")
def api_watchlist_from_tmdb(request: Request, body: FromTmdbBody) -> JSONResponse:
    s = _state(request)
    if body.item is None and body.tmdb_id is None:
        return JSONResponse({"ok": False, "error": "item or tmdb_id required"}, status_code=400)
    if body.item is not None:
        item = body.item
    else:
        if not body.media_type:
            return JSONResponse({"ok": False, "error": "media_type required with tmdb_id"}, status_code=400)
        item = s.tmdb.details(body.media_type, body.tmdb_id)["details"]
    entry = s.watchlist.add_from_tmdb(item, body.media_type)
    return JSONResponse({"ok": True, "item": entry.model_dump(mode="json", by_alias=True)})


@router.patch("/api/watchlist/{entry_id}")
def api_watchlist_update(request: Request, patch: EntryPatch, entry_id: str = FPath(...)) -> Dict[str, Any]:
    entry = _state(request).watchlist.update(entry_id, patch)
    return {"ok": True, "item": entry.model_dump(mode="json", by_alias=True)}


@router.post("/api/watchlist/{entry_id}/status")
def api_watchlist_status(request: Request, body: StatusBody, entry_id: str = FPath(...)) -> Dict[str, Any]:
    entry = _state(request).watchlist.set_status(entry_id, body.status)
    return {"ok": True, "item": entry.model_dump(mode="json", by_alias=True)}


@router.delete("/api/watchlist/{entry_id}")
def api_watchlist_delete(request: Request, entry_id: str = FPath(...)) -> Dict[str, Any]:
    entry = _state(request).watchlist.remove(entry_id)
    return {"ok": True, "removed": entry.id}


# ---------- Stats ----------
@router.get("/api/stats")
def api_stats(request: Request) -> Dict[str, Any]:
    wl: Watchlist = _state(request).watchlist
    return {"ok": True, **wl.stats().model_dump(by_alias=True), "remaining": wl.remaining()}


@router.get("/api/insights")
def api_insights(request: Request) -> Dict[str, Any]:
    return {"ok": True, **insights(_state(request).watchlist.items())}


@router.get("/api/activity")
def api_activity(request: Request, limit: int = Query(50, ge=0, le=5000)) -> Dict[str, Any]:
    act: ActivityLog = _state(request).activity
    return {**act.overview(), "events": act.events(limit)}


# ---------- TMDB ----------
@router.get("/api/tmdb/genres")
def api_tmdb_genres() -> Dict[str, Any]:
    return {
        "ok": True,
        "movie": [{"id": g, "name": GENRES[g]} for g in MOVIE_GENRES],
        "tv": [{"id": g, "name": GENRES[g]} for g in TV_GENRES],
    }


@router.get("/api/tmdb/moods")
def api_tmdb_moods() -> Dict[str, Any]:
    return {"ok": True, "moods": [{"id": k, **v} for k, v in MOODS.items()]}


@router.get("/api/tmdb/trending")
def api_tmdb_trending(
    request: Request,
    media: Literal["all", "movie", "tv"] = Query("all"),
    window: Literal["day", "week"] = Query("week"),
    page: int = Query(1, ge=1, le=500),
    pages: Optional[int] = Query(None, ge=1, le=10),
) -> Dict[str, Any]:
    tmdb: TMDBClient = _state(request).tmdb
    if pages and media != "all":
        return {"ok": True, "results": tmdb.trending_pages(media, pages)}
    return {"ok": True, "results": tmdb.trending(media, window, page)}


@router.get("/api/tmdb/popular")
def api_tmdb_popular(
    request: Request,
    media: Literal["movie", "tv"] = Query("movie"),
    region: Optional[str] = Query(None, min_length=2, max_length=2),
) -> Dict[str, Any]:
    s = _state(request)
    region = (region or (s.cfg.get("tmdb") or {}).get("region") or "US").upper()
    return {"ok": True, "region": region, "results": s.tmdb.popular(media, region)}


@router.get("/api/tmdb/discover")
def api_tmdb_discover(
    request: Request,
    media: Literal["movie", "tv"] = Query("movie"),
    genres: str = Query(""),
    sort_by: str = Query("popularity.desc"),
    page: int = Query(1, ge=1, le=500),
    vote_count_gte: Optional[int] = Query(None, ge=0),
) -> Dict[str, Any]:
    ids = [int(g) for g in genres.split(",") if g.strip().isdigit()]
    results = _state(request).tmdb.discover(media, genres=ids, sort_by=sort_by, page=page, vote_count_gte=vote_count_gte)
    return {"ok": True, "results": results}


@router.get("/api/tmdb/genre/{media}/{genre_id}")
def api_tmdb_genre(
    request: Request,
    media: Literal["movie", "tv"] = FPath(...),
    genre_id: int = FPath(...),
    sort: Literal["popularity", "rating", "release_date"] = Query("popularity"),
) -> Dict[str, Any]:
    return {"ok": True, "genre": GENRES.get(genre_id), "results": _state(request).tmdb.by_genre(media, genre_id, sort)}


@router.get("/api/tmdb/recent")
def api_tmdb_recent(
    request: Request,
    media: Literal["movie", "tv"] = Query("movie"),
    genre: Optional[int] = Query(None),
    page: int = Query(1, ge=1, le=20),
) -> Dict[str, Any]:
    return {"ok": True, **_state(request).tmdb.recently_released(media, genre, page)}


@router.get("/api/tmdb/search")
def api_tmdb_search(
    request: Request,
    media: Literal["movie", "tv"] = Query("movie"),
    q: str = Query(""),
    page: int = Query(1, ge=1, le=500),
) -> Dict[str, Any]:
    return {"ok": True, "results": _state(request).tmdb.search(media, q, page)}


@router.get("/api/tmdb/{media}/{tmdb_id}")
def api_tmdb_details(
    request: Request,
    media: Literal["movie", "tv"] = FPath(...),
    tmdb_id: int = FPath(...),
    region: Optional[str] = Query(None, min_length=2, max_length=2),
) -> Dict[str, Any]:
    s = _state(request)
    region = (region or (s.cfg.get("tmdb") or {}).get("region") or "US").upper()
    return {"ok": True, **s.tmdb.details(media, tmdb_id, region)}


# ---------- Recommendations ----------
@router.get("/api/recommendations/smart")
def api_reco_smart(request: Request) -> Dict[str, Any]:
    s = _state(request)
    return {"ok": True, "results": s.tmdb.smart_recommendations(s.watchlist.items())}


@router.get("/api/recommendations/random")
def api_reco_random(request: Request) -> Dict[str, Any]:
    return {"ok": True, "result": _state(request).tmdb.random_pick()}


@router.get("/api/recommendations/mood/{mood}")
def api_reco_mood(request: Request, mood: str = FPath(...), media: Literal["movie", "tv"] = Query("movie")) -> JSONResponse:
    if mood not in MOODS:
        return JSONResponse({"ok": False, "error": f"unknown mood '{mood}'"}, status_code=404)
    return JSONResponse({"ok": True, "mood": mood, "results": _state(request).tmdb.mood(mood, media)})


# ---------- Billing ----------
def _origin(request: Request, origin: Optional[str]) -> str:
    return (origin or str(request.base_url)).rstrip("/")


@router.post("/api/create-checkout")
def api_create_checkout(
    request: Request,
    authorization: Optional[str] = Header(None),
    origin: Optional[str] = Header(None),
) -> Dict[str, Any]:
    return _state(request).billing.create_checkout(authorization, _origin(request, origin))


@router.post("/api/customer-portal")
def api_customer_portal(
    request: Request,
    authorization: Optional[str] = Header(None),
    origin: Optional[str] = Header(None),
) -> Dict[str, Any]:
    return _state(request).billing.customer_portal(authorization, _origin(request, origin))


@router.post("/api/check-subscription")
def api_check_subscription(request: Request, authorization: Optional[str] = Header(None)) -> JSONResponse:
    s = _state(request)
    record = merge_defaults(s.billing.check_subscription(authorization))
    res = s.store.write(SUBSCRIPTION_KEY, record)
    if not res:
        return _err(res.error)
    # keep it fresh in the background for this session
    s.checker.set_session(authorization)
    return JSONResponse({"ok": True, **record})


@router.get("/api/subscription")
def api_subscription(request: Request) -> Dict[str, Any]:
    s = _state(request)
    record = s.store.read(SUBSCRIPTION_KEY, dict(DEFAULT_SUBSCRIPTION))
    return {"ok": True, "subscription": record, "premium": s.watchlist.premium(), "checker": s.checker.status()}


@router.delete("/api/subscription/session")
def api_subscription_signout(request: Request) -> Dict[str, Any]:
    _state(request).checker.clear_session()
    return {"ok": True}


@router.post("/api/profile")
def api_profile(request: Request, body: ProfileBody, authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
    return _state(request).billing.update_profile(authorization, body.full_name, body.avatar_url)


# ---------- Config ----------
def _redacted(cfg: Dict[str, Any]) -> Dict[str, Any]:
    out = json.loads(json.dumps(cfg))
    for section, key in SECRET_FIELDS:
        sec = out.get(section)
        if isinstance(sec, dict) and sec.get(key):
            sec[key] = "********"
    return out


@router.get("/api/config")
def api_config(request: Request) -> Dict[str, Any]:
    return _redacted(_state(request).cfg)


@router.post("/api/config")
def api_config_save(request: Request, patch: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
    s = _state(request)
    # redacted placeholders coming back from the UI keep the stored secret
    for section, key in SECRET_FIELDS:
        sec = patch.get(section)
        if isinstance(sec, dict) and sec.get(key) == "********":
            sec.pop(key)
    # env overrides stay in memory only
    save_config(deep_merge(read_config_file(s.config_path), patch), s.config_path)
    merged = deep_merge(s.cfg, patch)
    s.cfg.clear()
    s.cfg.update(merged)
    configure_logging(merged, log)
    return {"ok": True}


# ---------- Logs ----------
@router.get("/api/logs/stream")
async def api_logs_stream(request: Request, tag: str = Query("APP"), follow: int = Query(1)):
    tag = (tag or "APP").upper()

    async def gen():
        # dump existing lines first
        buf = log.lines(tag)
        for line in buf:
            yield f"data: {line}\n\n"
        if not follow:
            return
        _, seen = log.lines_since(tag, 0)
        while not await request.is_disconnected():
            fresh, seen = log.lines_since(tag, seen)
            for line in fresh:
                yield f"data: {line}\n\n"
            await asyncio.sleep(0.25)

    return StreamingResponse(gen(), media_type="text/event-stream", headers={"Cache-Control": "no-store"})


@router.get("/api/health")
def api_health(request: Request) -> Dict[str, Any]:
    s = _state(request)
    return {
        "ok": True,
        "tmdb_configured": bool(s.tmdb.api_key),
        "billing_configured": bool(s.billing.stripe_key),
        "store_keys": len(s.store.keys()),
        "ts": int(time.time()),
    }


# ---- Main ----
def get_primary_ip() -> str:
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        s.connect(("8.8.8.8", 80)); return s.getsockname()[0]
    except OSError:
        return "127.0.0.1"
    finally:
        s.close()


def main(host: str = "0.0.0.0", port: int = 8787) -> None:
    cfg = load_config()
    ip = get_primary_ip()
    print("\nBinge List backend running:")
    print(f"  Local:   http://127.0.0.1:{port}")
    print(f"  Docker:  http://{ip}:{port}")
    print(f"  Bind:    {host}:{port}")
    print(f"  Config:  {CONFIG_PATH} (JSON)")
    print(f"  Store:   {(cfg.get('storage') or {}).get('path')}\n")
    uvicorn.run("webapp:create_app", factory=True, host=host, port=port)


if __name__ == "__main__":
    main()
