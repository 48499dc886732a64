import io
import json
import random
import sys
import tempfile
import unittest
from datetime import date
from pathlib import Path

_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

import requests

from _base import UpstreamError
from _logging import Logger
from _TMDB import TMDB_API, TMDBClient, _months_ago, genre_id, poster_url


class _Resp:
    def __init__(self, payload=None, status_code=200, text=None):
        self._payload = payload
        self.status_code = status_code
        self.ok = 200 <= status_code < 400
        self.text = text if text is not None else json.dumps(payload)

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    """Answers by URL path; records every call."""

    def __init__(self, routes=None, default=None):
        self.routes = routes or {}
        self.default = default if default is not None else {"results": []}
        self.calls = []

    def get(self, url, headers=None, params=None, timeout=None):
        path = url[len(TMDB_API) + 1:]
        self.calls.append({"path": path, "headers": dict(headers or {}), "params": dict(params or {})})
        answer = self.routes.get(path, self.default)
        if isinstance(answer, Exception):
            raise answer
        if isinstance(answer, _Resp):
            return answer
        if callable(answer):
            return _Resp(answer(params or {}))
        return _Resp(answer)


def _client(session, **kw):
    return TMDBClient(kw.pop("api_key", "k123"), session=session, logger=Logger(stream=io.StringIO(), use_color=False), **kw)


class TestHelpers(unittest.TestCase):
    def test_poster_url(self) -> None:
        self.assertEqual(poster_url("/a.jpg"), "https://image.tmdb.org/t/p/w500/a.jpg")
        self.assertEqual(poster_url("/a.jpg", "original"), "https://image.tmdb.org/t/p/original/a.jpg")
        self.assertIsNone(poster_url(None))

    def test_genre_id_accepts_tmdb_spelling(self) -> None:
        self.assertEqual(genre_id("Sci-Fi"), 878)
        self.assertEqual(genre_id("Science Fiction"), 878)
        self.assertIsNone(genre_id("Nope"))

    def test_months_ago_clamps_day(self) -> None:
        self.assertEqual(_months_ago(date(2024, 8, 31), 6), date(2024, 2, 29))
        self.assertEqual(_months_ago(date(2024, 3, 15), 6), date(2023, 9, 15))


class TestRequests(unittest.TestCase):
    def test_plain_key_goes_in_query(self) -> None:
        s = FakeSession()
        _client(s).popular("movie")
        call = s.calls[0]
        self.assertEqual(call["path"], "movie/popular")
        self.assertEqual(call["params"]["api_key"], "k123")
        self.assertNotIn("Authorization", call["headers"])

    def test_read_token_goes_in_header(self) -> None:
        s = FakeSession()
        _client(s, api_key="eyJhbGciOi.token").trending("tv", "day")
        call = s.calls[0]
        self.assertEqual(call["path"], "trending/tv/day")
        self.assertEqual(call["headers"]["Authorization"], "Bearer eyJhbGciOi.token")
        self.assertNotIn("api_key", call["params"])

    def test_missing_key(self) -> None:
        with self.assertRaises(UpstreamError):
            _client(FakeSession(), api_key="").trending()

    def test_http_error(self) -> None:
        s = FakeSession({"movie/popular": _Resp({"status_message": "bad key"}, status_code=401)})
        with self.assertRaises(UpstreamError):
            _client(s).popular("movie")

    def test_network_error(self) -> None:
        s = FakeSession({"search/movie": requests.ConnectionError("offline")})
        with self.assertRaises(UpstreamError):
            _client(s).search("movie", "dune")

    def test_invalid_json(self) -> None:
        s = FakeSession({"trending/all/week": _Resp(None, text="<html>")})
        with self.assertRaises(UpstreamError):
            _client(s).trending()

    def test_unknown_media_type(self) -> None:
        with self.assertRaises(ValueError):
            _client(FakeSession()).popular("podcast")

    def test_empty_search_skips_request(self) -> None:
        s = FakeSession()
        self.assertEqual(_client(s).search("tv", "   "), [])
        self.assertEqual(s.calls, [])


class TestListings(unittest.TestCase):
    def test_by_genre_reads_three_pages(self) -> None:
        s = FakeSession(default=lambda p: {"results": [{"id": p["page"] * 100 + i} for i in range(25)]})
        out = _client(s).by_genre("tv", 18, "release_date")
        self.assertEqual(len(out), 60)
        self.assertEqual([c["params"]["page"] for c in s.calls], [1, 2, 3])
        self.assertEqual(s.calls[0]["params"]["sort_by"], "first_air_date.desc")
        self.assertEqual(s.calls[0]["params"]["with_genres"], "18")
        self.assertEqual(s.calls[0]["params"]["vote_count.gte"], 10)

    def test_recently_released(self) -> None:
        s = FakeSession(default={"results": [{"id": i} for i in range(20)]})
        out = _client(s).recently_released("movie", page=2, today=date(2024, 6, 15))
        self.assertTrue(out["has_more"])
        self.assertEqual(out["page"], 2)
        self.assertEqual(s.calls[0]["params"]["release_date.gte"], "2023-12-15")
        self.assertNotIn("with_genres", s.calls[0]["params"])


class TestDetails(unittest.TestCase):
    def _routes(self):
        return {
            "movie/603": {"id": 603, "title": "The Matrix"},
            "movie/603/credits": {"cast": [{"name": f"actor {i}"} for i in range(20)]},
            "movie/603/videos": {"results": [
                {"key": "a", "type": "Trailer", "site": "YouTube"},
                {"key": "b", "type": "Teaser", "site": "YouTube"},
                {"key": "c", "type": "Trailer", "site": "Vimeo"},
            ]},
            "movie/603/watch/providers": {"results": {"US": {"flatrate": [{"provider_name": "Max"}]}}},
        }

    def test_details_bundle(self) -> None:
        s = FakeSession(self._routes())
        out = _client(s).details("movie", 603, region="us")
        self.assertEqual(out["type"], "movie")
        self.assertEqual(out["details"]["title"], "The Matrix")
        self.assertEqual(len(out["cast"]), 12)
        self.assertEqual([t["key"] for t in out["trailers"]], ["a"])
        self.assertEqual(out["providers"]["flatrate"][0]["provider_name"], "Max")

    def test_details_are_cached_on_disk(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            s = FakeSession(self._routes())
            client = _client(s, cache_dir=Path(tmp))
            client.details("movie", 603)
            self.assertEqual(len(s.calls), 4)
            self.assertTrue((Path(tmp) / "tmdb_meta" / "movie-603.json").exists())

            again = client.details("movie", 603, region="GB")
            self.assertEqual(len(s.calls), 4)
            self.assertIsNone(again["providers"])


class TestRecommendations(unittest.TestCase):
    def test_unknown_mood(self) -> None:
        with self.assertRaises(ValueError):
            _client(FakeSession()).mood("sleepy", "movie")

    def test_mood_shuffles_and_caps(self) -> None:
        s = FakeSession(default=lambda p: {"results": [{"id": p["page"] * 100 + i} for i in range(10)]})
        out = _client(s).mood("scary", "movie", rng=random.Random(3))
        self.assertEqual(len(out), 12)
        self.assertEqual(s.calls[0]["params"]["with_genres"], "27,53")
        self.assertEqual(s.calls[0]["params"]["vote_count.gte"], 100)

    def test_smart_recommendations_skip_watched_titles(self) -> None:
        routes = {
            "discover/movie": {"results": [{"id": 1, "title": "Heat"}, {"id": 2, "title": "Ronin"}]},
            "discover/tv": {"results": [{"id": 3, "name": "The Wire"}]},
            "trending/all/week": {"results": [{"id": 4, "title": "Heat"}, {"id": 5, "name": "Shogun"}]},
        }
        s = FakeSession(routes)
        entries = [
            {"title": "Heat", "genres": ["Crime", "Drama"]},
            {"title": "Collateral", "genres": ["Crime"]},
        ]
        out = _client(s).smart_recommendations(entries, rng=random.Random(1))
        titles = [r["title"] for r in out]
        self.assertNotIn("Heat", titles)
        self.assertIn("Ronin", titles)
        self.assertIn("The Wire", titles)
        self.assertIn("Shogun", titles)
        reasons = {r["reason"] for r in out}
        self.assertIn("Because you enjoy Crime movies", reasons)
        self.assertIn("Because you love Crime TV series", reasons)
        self.assertIn("Trending now and matches your taste", reasons)
        first_discover = next(c for c in s.calls if c["path"] == "discover/movie")
        self.assertEqual(first_discover["params"]["with_genres"], "80")

    def test_smart_recommendations_for_empty_list(self) -> None:
        s = FakeSession()
        self.assertEqual(_client(s).smart_recommendations([]), [])
        self.assertEqual(s.calls, [])

    def test_random_pick(self) -> None:
        s = FakeSession(default={"results": [{"id": 7, "title": "Up"}]})
        pick = _client(s).random_pick(random.Random(42))
        self.assertEqual(pick["id"], 7)
        self.assertIn(pick["media_type"], ("movie", "tv"))
        self.assertTrue(1 <= s.calls[0]["params"]["page"] <= 20)

    def test_random_pick_without_results(self) -> None:
        with self.assertRaises(UpstreamError):
            _client(FakeSession()).random_pick(random.Random(0))


if __name__ == "__main__":
    unittest.main()
