# _TMDB.py
from __future__ import annotations

from collections import Counter
import calendar
from datetime import date
from pathlib import Path
from typing import Optional, Dict, Any, Iterable, List, Mapping
import json
import random
import time

import requests

from _base import UpstreamError, Logger as LoggerProto
from _logging import log as default_log

TMDB_IMG = "https://image.tmdb.org/t/p"
TMDB_API = "https://api.themoviedb.org/3"
UA = "Binge-List/TMDB"

GENRES: Dict[int, str] = {
    28: "Action", 12: "Adventure", 16: "Animation", 35: "Comedy", 80: "Crime",
    99: "Documentary", 18: "Drama", 10751: "Family", 14: "Fantasy", 36: "History",
    27: "Horror", 10402: "Music", 9648: "Mystery", 10749: "Romance", 878: "Sci-Fi",
    10770: "TV Movie", 53: "Thriller", 10752: "War", 37: "Western",
    10759: "Action & Adventure", 10762: "Kids", 10763: "News", 10764: "Reality",
    10765: "Sci-Fi & Fantasy", 10766: "Soap", 10767: "Talk", 10768: "War & Politics",
}

MOVIE_GENRES = [28, 12, 16, 35, 80, 99, 18, 10751, 14, 36, 27, 10402, 9648, 10749, 878, 10770, 53, 10752, 37]
TV_GENRES = [10759, 16, 35, 80, 99, 18, 10751, 10762, 9648, 10763, 10764, 10765, 10766, 10767, 10768, 37]

# label -> id; detail payloads use TMDB's own spelling
_GENRE_IDS: Dict[str, int] = {v.lower(): k for k, v in GENRES.items()}
_GENRE_IDS["science fiction"] = 878

MOODS: Dict[str, Dict[str, Any]] = {
    "feel-good":   {"name": "Feel-Good", "description": "Uplifting and heartwarming content", "genres": [35, 10751, 10749, 16]},
    "thrilling":   {"name": "Thrilling", "description": "Action-packed and suspenseful", "genres": [28, 53, 80, 9648]},
    "chill":       {"name": "Chill", "description": "Relaxing and easy-going", "genres": [18, 99, 10402, 36]},
    "dark":        {"name": "Dark & Mysterious", "description": "Dark themes and mysterious plots", "genres": [27, 9648, 53, 80]},
    "romantic":    {"name": "Romantic", "description": "Love stories and romantic dramas", "genres": [10749, 18, 35]},
    "mindblowing": {"name": "Mind-Blowing", "description": "Thought-provoking and complex", "genres": [878, 9648, 53, 18]},
    "scary":       {"name": "Scary", "description": "Horror and supernatural thrills", "genres": [27, 53]},
}

GENRE_SORTS = {"popularity": "popularity.desc", "rating": "vote_average.desc", "release_date": "release_date.desc"}
RANDOM_SORTS = ["popularity.desc", "vote_average.desc", "release_date.desc", "revenue.desc"]


def poster_url(path: Optional[str], size: str = "w500") -> Optional[str]:
    if not path:
        return None
    if path.startswith("http"):
        return path
    safe_size = size if size.startswith("w") or size == "original" else "w500"
    return f"{TMDB_IMG}/{safe_size}{path}"


def genre_id(label: str) -> Optional[int]:
    return _GENRE_IDS.get((label or "").strip().lower())


def _kind(media: str) -> str:
    m = (media or "").strip().lower()
    if m in ("movie", "movies"):
        return "movie"
    if m in ("tv", "show", "shows", "series"):
        return "tv"
    raise ValueError(f"unknown media type '{media}'")


def _title(item: Mapping[str, Any]) -> str:
    return (item.get("title") or item.get("name") or "").strip()


def _months_ago(today: date, months: int) -> date:
    y, m = today.year, today.month - months
    while m < 1:
        m += 12
        y -= 1
    return date(y, m, min(today.day, calendar.monthrange(y, m)[1]))


class TMDBClient:
    """Thin TMDB v3 client. Every failed request raises ``UpstreamError``."""

    def __init__(
        self,
        api_key: str,
        *,
        session: Optional[requests.Session] = None,
        cache_dir: Optional[Path] = None,
        ttl_days: int = 14,
        timeout: int = 15,
        logger: Optional[LoggerProto] = None,
    ) -> None:
        self.api_key = (api_key or "").strip()
        self.session = session or requests.Session()
        self.cache_dir = Path(cache_dir) if cache_dir else None
        self.ttl_days = ttl_days
        self.timeout = timeout
        self._log = (logger or default_log).child("tmdb")

    # ---- http ----
    def _auth(self) -> tuple:
        # v4 read tokens are JWTs
        if self.api_key.startswith("eyJ"):
            return {"Authorization": f"Bearer {self.api_key}"}, {}
        return {}, {"api_key": self.api_key}

    def _get(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        if not self.api_key:
            raise UpstreamError("TMDB API key is not configured")
        headers, auth_params = self._auth()
        headers.update({"User-Agent": UA, "Accept": "application/json"})
        q = {"language": "en-US", **auth_params, **{k: v for k, v in (params or {}).items() if v is not None}}
        url = f"{TMDB_API}/{path.lstrip('/')}"
        try:
            r = self.session.get(url, headers=headers, params=q, timeout=self.timeout)
        except requests.RequestException as e:
            raise UpstreamError(f"TMDB GET /{path} failed: {e}") from e
        if not r.ok:
            raise UpstreamError(f"TMDB GET /{path} → HTTP {r.status_code}: {r.text[:300]}")
        try:
            data = r.json()
        except ValueError as e:
            raise UpstreamError(f"TMDB GET /{path} returned invalid JSON") from e
        if not isinstance(data, dict):
            raise UpstreamError(f"TMDB GET /{path} returned an unexpected payload")
        return data

    def _results(self, path: str, params: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        return list(self._get(path, params).get("results") or [])

    # ---- listings ----
    def trending(self, media: str = "all", window: str = "week", page: int = 1) -> List[Dict[str, Any]]:
        m = "all" if media == "all" else _kind(media)
        w = "day" if window == "day" else "week"
        return self._results(f"trending/{m}/{w}", {"page": page})

    def trending_pages(self, media: str, pages: int = 5) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for p in range(1, max(1, pages) + 1):
            out.extend(self.trending(media, "week", p))
        return out

    def popular(self, media: str, region: str = "US", page: int = 1) -> List[Dict[str, Any]]:
        return self._results(f"{_kind(media)}/popular", {"region": (region or "US").upper(), "page": page})[:20]

    def discover(
        self,
        media: str,
        *,
        genres: Optional[Iterable[int]] = None,
        sort_by: str = "popularity.desc",
        page: int = 1,
        vote_count_gte: Optional[int] = None,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"sort_by": sort_by, "page": page}
        if genres:
            params["with_genres"] = ",".join(str(int(g)) for g in genres)
        if vote_count_gte is not None:
            params["vote_count.gte"] = vote_count_gte
        params.update(extra or {})
        return self._results(f"discover/{_kind(media)}", params)

    def by_genre(self, media: str, genre: int, sort: str = "popularity") -> List[Dict[str, Any]]:
        kind = _kind(media)
        sort_by = GENRE_SORTS.get(sort, "popularity.desc")
        if kind == "tv" and sort == "release_date":
            sort_by = "first_air_date.desc"
        out: List[Dict[str, Any]] = []
        for page in (1, 2, 3):
            out.extend(self.discover(kind, genres=[genre], sort_by=sort_by, page=page, vote_count_gte=10))
        return out[:60]

    def recently_released(
        self, media: str, genre: Optional[int] = None, page: int = 1, months: int = 6, today: Optional[date] = None
    ) -> Dict[str, Any]:
        kind = _kind(media)
        since = _months_ago(today or date.today(), months).isoformat()
        date_key = "release_date.gte" if kind == "movie" else "first_air_date.gte"
        results = self.discover(
            kind,
            genres=[genre] if genre else None,
            sort_by="release_date.desc",
            page=page,
            extra={date_key: since},
        )
        return {"results": results, "page": page, "has_more": len(results) == 20 and page < 20}

    def search(self, media: str, query: str, page: int = 1) -> List[Dict[str, Any]]:
        q = (query or "").strip()
        if not q:
            return []
        return self._results(f"search/{_kind(media)}", {"query": q, "page": page})

    # ---- details ----
    def _cache_file(self, kind: str, tmdb_id: int) -> Optional[Path]:
        if not self.cache_dir:
            return None
        return self.cache_dir / "tmdb_meta" / f"{kind}-{int(tmdb_id)}.json"

    def _read_cache(self, f: Optional[Path]) -> Optional[Dict[str, Any]]:
        if f is None or not f.exists():
            return None
        if (time.time() - f.stat().st_mtime) >= self.ttl_days * 86400:
            return None
        try:
            maybe = json.loads(f.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        return maybe if isinstance(maybe, dict) else None

    def _write_cache(self, f: Optional[Path], data: Dict[str, Any]) -> None:
        if f is None:
            return
        try:
            f.parent.mkdir(parents=True, exist_ok=True)
            tmp = f.with_suffix(".tmp")
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp.replace(f)
        except OSError as e:
            self._log.warn(f"cannot cache {f.name}: {e}")

    def details(self, media: str, tmdb_id: int, region: str = "US") -> Dict[str, Any]:
        """Details plus top cast, YouTube trailers and watch providers for ``region``."""
        kind = _kind(media)
        f = self._cache_file(kind, tmdb_id)
        data = self._read_cache(f)
        if data is None:
            base = f"{kind}/{int(tmdb_id)}"
            d = self._get(base)
            credits = self._get(f"{base}/credits")
            videos = self._get(f"{base}/videos")
            providers = self._get(f"{base}/watch/providers")
            data = {
                "details": d,
                "cast": list(credits.get("cast") or [])[:12],
                "trailers": [
                    v for v in (videos.get("results") or [])
                    if v.get("type") == "Trailer" and v.get("site") == "YouTube"
                ],
                "providers": providers.get("results") or {},
            }
            self._write_cache(f, data)
        return {
            "type": kind,
            "details": data.get("details") or {},
            "cast": data.get("cast") or [],
            "trailers": data.get("trailers") or [],
            "providers": (data.get("providers") or {}).get((region or "US").upper()),
        }

    # ---- recommendations ----
    def mood(self, mood: str, media: str, rng: Optional[random.Random] = None) -> List[Dict[str, Any]]:
        spec = MOODS.get(mood)
        if spec is None:
            raise ValueError(f"unknown mood '{mood}'")
        out: List[Dict[str, Any]] = []
        for page in (1, 2, 3):
            out.extend(self.discover(media, genres=spec["genres"], sort_by="vote_average.desc", page=page, vote_count_gte=100))
        (rng or random).shuffle(out)
        return out[:12]

    def smart_recommendations(self, entries: Iterable[Any], rng: Optional[random.Random] = None) -> List[Dict[str, Any]]:
        """Suggestions from the user's most frequent genres plus unwatched trending titles."""
        items = [e if isinstance(e, Mapping) else e.model_dump() for e in entries]
        if not items:
            return []
        counts: Counter = Counter()
        for it in items:
            counts.update(it.get("genres") or [])
        top = [g for g, _ in counts.most_common(3)]
        watched = {str(it.get("title") or "").lower() for it in items}

        recs: List[Dict[str, Any]] = []
        for label in top[:2]:
            gid = genre_id(label)
            if gid is None:
                continue
            movies = self.discover("movie", genres=[gid], sort_by="vote_average.desc", vote_count_gte=100)
            for m in [m for m in movies if _title(m).lower() not in watched][:3]:
                recs.append({**m, "media_type": "movie", "reason": f"Because you enjoy {label} movies"})
            shows = self.discover("tv", genres=[gid], sort_by="vote_average.desc", vote_count_gte=100)
            for s in [s for s in shows if _title(s).lower() not in watched][:2]:
                recs.append({**s, "title": _title(s), "media_type": "tv", "reason": f"Because you love {label} TV series"})

        trending = self.trending("all", "week")
        for t in [t for t in trending if _title(t) and _title(t).lower() not in watched][:4]:
            recs.append({**t, "title": _title(t), "reason": "Trending now and matches your taste"})

        (rng or random).shuffle(recs)
        return recs[:12]

    def random_pick(self, rng: Optional[random.Random] = None) -> Dict[str, Any]:
        r = rng or random
        page = r.randint(1, 20)
        kind = "movie" if r.random() > 0.5 else "tv"
        sort_by = r.choice(RANDOM_SORTS)
        results = self.discover(kind, sort_by=sort_by, page=page, vote_count_gte=100)
        if not results:
            raise UpstreamError("No recommendations found")
        return {**r.choice(results), "media_type": kind}


__all__ = [
    "TMDBClient", "GENRES", "MOVIE_GENRES", "TV_GENRES", "MOODS", "poster_url", "genre_id",
    "TMDB_API", "TMDB_IMG",
]
