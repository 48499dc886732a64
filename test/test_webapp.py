import asyncio
import io
import json
import sys
import tempfile
import unittest
from pathlib import Path

_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from fastapi.testclient import TestClient

from _base import AuthError, QuotaExceededError, StorageError, UpstreamError, WatchlistLimitError
from _config import load_config, save_config
from _logging import Logger
from _scheduling import SUBSCRIPTION_KEY
from _store import MemoryBackend, Store
from _watchlist import ITEMS_KEY
from webapp import api_events, api_logs_stream, create_app, status_for


class FakeTMDB:
    api_key = "k"

    def __init__(self):
        self.fail = False

    def _maybe_fail(self):
        if self.fail:
            raise UpstreamError("TMDB GET /trending/all/week → HTTP 503")

    def trending(self, media="all", window="week", page=1):
        self._maybe_fail()
        return [{"id": 1, "title": "Dune", "media_type": "movie"}]

    def details(self, media, tmdb_id, region="US"):
        self._maybe_fail()
        return {
            "type": media,
            "details": {"id": tmdb_id, "title": "Arrival", "release_date": "2016-11-11", "genres": [{"id": 878, "name": "Science Fiction"}]},
            "cast": [],
            "trailers": [],
            "providers": None,
        }

    def mood(self, mood, media, rng=None):
        return [{"id": 9, "title": "Paddington"}]

    def smart_recommendations(self, entries, rng=None):
        return [{"title": e.title + " 2"} for e in entries][:12]


class FakeBilling:
    stripe_key = "sk_test"

    def __init__(self):
        self.active = True

    def _user(self, authorization):
        if not authorization:
            raise AuthError("No authorization header provided")
        return "ana@example.com"

    def check_subscription(self, authorization):
        email = self._user(authorization)
        return {
            "subscribed": self.active,
            "subscription_status": "active" if self.active else "inactive",
            "subscription_tier": "Premium" if self.active else None,
            "email": email,
        }

    def create_checkout(self, authorization, origin):
        self._user(authorization)
        return {"url": f"https://checkout.stripe.test/?back={origin}"}

    def customer_portal(self, authorization, origin):
        self._user(authorization)
        return {"url": "https://billing.stripe.test/p_1"}

    def update_profile(self, authorization, full_name=None, avatar_url=None):
        self._user(authorization)
        return {"ok": True, "profile": {"full_name": full_name}}


class _DroppedRequest:
    """Request whose client has already gone away."""

    def __init__(self, app):
        self.app = app

    async def is_disconnected(self) -> bool:
        return True


class WebappTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.cfg_path = Path(self.tmp.name) / "config.json"
        save_config({
            "billing": {"free_limit": 2},
            "stripe": {"secret_key": "sk_live_secret"},
            "runtime": {"log_level": "warn"},
        }, self.cfg_path)
        cfg = load_config(self.cfg_path, env={})
        self.store = Store(MemoryBackend(), logger=Logger(stream=io.StringIO(), use_color=False))
        self.tmdb = FakeTMDB()
        self.billing = FakeBilling()
        self.app = create_app(cfg, store=self.store, tmdb=self.tmdb, billing=self.billing, config_path=self.cfg_path)
        self.client = TestClient(self.app)

    def tearDown(self) -> None:
        self.app.state.activity.close()
        self.store.close()
        self.tmp.cleanup()


class TestStatusMapping(unittest.TestCase):
    def test_codes(self) -> None:
        self.assertEqual(status_for(WatchlistLimitError("x")), 402)
        self.assertEqual(status_for(QuotaExceededError("x")), 507)
        self.assertEqual(status_for(StorageError("x")), 500)
        self.assertEqual(status_for(UpstreamError("x")), 502)
        self.assertEqual(status_for(AuthError("x")), 401)
        self.assertEqual(status_for(KeyError("x")), 500)


class TestBasics(WebappTestCase):
    def test_health_and_no_store_header(self) -> None:
        r = self.client.get("/api/health")
        self.assertEqual(r.status_code, 200)
        self.assertTrue(r.json()["ok"])
        self.assertEqual(r.headers["cache-control"], "no-store")

    def test_config_is_redacted(self) -> None:
        data = self.client.get("/api/config").json()
        self.assertEqual(data["stripe"]["secret_key"], "********")
        self.assertEqual(data["billing"]["free_limit"], 2)

    def test_config_save_keeps_secret_behind_placeholder(self) -> None:
        r = self.client.post("/api/config", json={"stripe": {"secret_key": "********"}, "tmdb": {"region": "GB"}})
        self.assertEqual(r.status_code, 200)
        saved = json.loads(self.cfg_path.read_text(encoding="utf-8"))
        self.assertEqual(saved["stripe"]["secret_key"], "sk_live_secret")
        self.assertEqual(saved["tmdb"]["region"], "GB")

    def test_config_save_does_not_persist_environment_secrets(self) -> None:
        cfg = load_config(self.cfg_path, env={"STRIPE_SECRET_KEY": "sk_env_only"})
        app = create_app(cfg, store=self.store, tmdb=self.tmdb, billing=self.billing, config_path=self.cfg_path)
        client = TestClient(app)
        try:
            r = client.post("/api/config", json={"billing": {"free_limit": 12}})
            self.assertEqual(r.status_code, 200)
            saved = json.loads(self.cfg_path.read_text(encoding="utf-8"))
            self.assertEqual(saved["stripe"]["secret_key"], "sk_live_secret")
            self.assertEqual(saved["billing"]["free_limit"], 12)
            self.assertEqual(app.state.cfg["stripe"]["secret_key"], "sk_env_only")
            self.assertEqual(app.state.cfg["billing"]["free_limit"], 12)
        finally:
            app.state.activity.close()

    def test_logs_snapshot(self) -> None:
        r = self.client.get("/api/logs/stream", params={"follow": 0})
        self.assertEqual(r.status_code, 200)
        self.assertTrue(r.headers["content-type"].startswith("text/event-stream"))

    def test_followed_log_stream_ends_when_client_leaves(self) -> None:
        async def drain():
            resp = await api_logs_stream(_DroppedRequest(self.app), tag="APP", follow=1)
            return [chunk async for chunk in resp.body_iterator]

        chunks = asyncio.run(drain())
        self.assertTrue(all(c.startswith("data: ") for c in chunks))


class TestStoreApi(WebappTestCase):
    def test_put_get_delete(self) -> None:
        self.assertTrue(self.client.put("/api/store/theme", json={"dark": True}).json()["ok"])
        self.assertEqual(self.client.get("/api/store/theme").json()["value"], {"dark": True})
        self.assertIn("theme", self.client.get("/api/store").json()["keys"])
        self.assertTrue(self.client.delete("/api/store/theme").json()["ok"])
        self.assertIsNone(self.client.get("/api/store/theme").json()["value"])

    def test_schema_violation_is_rejected(self) -> None:
        r = self.client.put(f"/api/store/{ITEMS_KEY}", json=[{"title": "no id"}])
        self.assertEqual(r.status_code, 422)
        self.assertFalse(r.json()["ok"])

    def test_events_start_with_current_value(self) -> None:
        self.store.write("theme", {"dark": True})
        r = self.client.get("/api/events", params={"key": "theme", "limit": 1})
        self.assertEqual(r.status_code, 200)
        self.assertIn('data: {"dark":true}', r.text)
        self.assertEqual(self.store.subscriber_count("theme"), 0)

    def test_events_subscribe_only_once_streaming_starts(self) -> None:
        asyncio.run(api_events(_DroppedRequest(self.app), key="theme", limit=None))
        self.assertEqual(self.store.subscriber_count("theme"), 0)


class TestWatchlistApi(WebappTestCase):
    def test_add_list_and_limit(self) -> None:
        self.billing.active = False
        r = self.client.post("/api/watchlist", json={"title": "Dune", "type": "movie", "genres": ["Sci-Fi"]})
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["item"]["status"], "plan-to-watch")
        self.client.post("/api/watchlist", json={"title": "Dark", "type": "tv"})

        r = self.client.post("/api/watchlist", json={"title": "Heat"})
        self.assertEqual(r.status_code, 402)
        self.assertFalse(r.json()["ok"])

        data = self.client.get("/api/watchlist", params={"type": "tv"}).json()
        self.assertEqual([i["title"] for i in data["items"]], ["Dark"])
        self.assertEqual(data["remaining"], 0)
        self.assertFalse(data["premium"])
        self.assertEqual(data["stats"]["totalPlanned"], 2)

    def test_status_flow(self) -> None:
        item = self.client.post("/api/watchlist", json={"title": "Dune"}).json()["item"]
        r = self.client.post(f"/api/watchlist/{item['id']}/status", json={"status": "finished"})
        self.assertEqual(r.status_code, 200)
        self.assertIsNotNone(r.json()["item"]["dateFinished"])

        r = self.client.patch(f"/api/watchlist/{item['id']}", json={"rating": 9})
        self.assertEqual(r.json()["item"]["rating"], 9)

        stats = self.client.get("/api/stats").json()
        self.assertEqual(stats["totalWatched"], 1)
        self.assertEqual(stats["averageRating"], 9)

        ins = self.client.get("/api/insights").json()
        self.assertEqual(ins["favoriteGenre"], "None")
        self.assertEqual(ins["currentStreak"], 1)

        activity = self.client.get("/api/activity").json()
        self.assertEqual([e["action"] for e in activity["events"]], ["status", "add"])

    def test_bad_input(self) -> None:
        self.assertEqual(self.client.post("/api/watchlist", json={"title": "x", "rating": 42}).status_code, 422)
        item = self.client.post("/api/watchlist", json={"title": "Dune"}).json()["item"]
        r = self.client.post(f"/api/watchlist/{item['id']}/status", json={"status": "abandoned"})
        self.assertEqual(r.status_code, 422)

    def test_unknown_entry(self) -> None:
        self.assertEqual(self.client.patch("/api/watchlist/nope", json={"notes": "x"}).status_code, 404)
        r = self.client.delete("/api/watchlist/nope")
        self.assertEqual(r.status_code, 404)
        self.assertEqual(r.json(), {"ok": False, "error": "no watchlist entry with id 'nope'"})

    def test_delete(self) -> None:
        item = self.client.post("/api/watchlist", json={"title": "Dune"}).json()["item"]
        self.assertEqual(self.client.delete(f"/api/watchlist/{item['id']}").json()["removed"], item["id"])
        self.assertEqual(self.client.get("/api/watchlist").json()["items"], [])

    def test_add_from_tmdb_details(self) -> None:
        r = self.client.post("/api/watchlist/from-tmdb", json={"media_type": "movie", "tmdb_id": 329865})
        self.assertEqual(r.status_code, 200)
        item = r.json()["item"]
        self.assertEqual(item["title"], "Arrival")
        self.assertEqual(item["year"], 2016)
        self.assertEqual(item["genres"], ["Science Fiction"])

    def test_add_from_tmdb_needs_a_source(self) -> None:
        self.assertEqual(self.client.post("/api/watchlist/from-tmdb", json={}).status_code, 400)


class TestTmdbApi(WebappTestCase):
    def test_trending(self) -> None:
        self.assertEqual(self.client.get("/api/tmdb/trending").json()["results"][0]["title"], "Dune")

    def test_upstream_failure_is_502(self) -> None:
        self.tmdb.fail = True
        r = self.client.get("/api/tmdb/trending")
        self.assertEqual(r.status_code, 502)
        self.assertFalse(r.json()["ok"])

    def test_unknown_mood(self) -> None:
        self.assertEqual(self.client.get("/api/recommendations/mood/sleepy").status_code, 404)
        self.assertEqual(self.client.get("/api/recommendations/mood/feel-good").json()["results"][0]["title"], "Paddington")

    def test_genres_and_moods(self) -> None:
        genres = self.client.get("/api/tmdb/genres").json()
        self.assertIn({"id": 878, "name": "Sci-Fi"}, genres["movie"])
        moods = self.client.get("/api/tmdb/moods").json()["moods"]
        self.assertIn("scary", [m["id"] for m in moods])

    def test_smart_recommendations_use_watchlist(self) -> None:
        self.client.post("/api/watchlist", json={"title": "Dune"})
        self.assertEqual(self.client.get("/api/recommendations/smart").json()["results"], [{"title": "Dune 2"}])


class TestBillingApi(WebappTestCase):
    def test_check_subscription_requires_auth(self) -> None:
        r = self.client.post("/api/check-subscription")
        self.assertEqual(r.status_code, 401)
        self.assertFalse(self.app.state.checker.has_session())

    def test_check_subscription_unlocks_premium(self) -> None:
        r = self.client.post("/api/check-subscription", headers={"Authorization": "Bearer tok"})
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["subscription_status"], "active")
        self.assertEqual(self.store.read(SUBSCRIPTION_KEY)["email"], "ana@example.com")
        self.assertTrue(self.app.state.checker.has_session())

        for title in ("a", "b", "c"):
            self.assertEqual(self.client.post("/api/watchlist", json={"title": title}).status_code, 200)
        sub = self.client.get("/api/subscription").json()
        self.assertTrue(sub["premium"])
        self.assertTrue(sub["checker"]["session"])

        self.client.delete("/api/subscription/session")
        self.assertFalse(self.app.state.checker.has_session())

    def test_checkout_uses_origin(self) -> None:
        r = self.client.post(
            "/api/create-checkout",
            headers={"Authorization": "Bearer tok", "Origin": "https://app.test"},
        )
        self.assertEqual(r.json()["url"], "https://checkout.stripe.test/?back=https://app.test")

    def test_profile(self) -> None:
        r = self.client.post("/api/profile", json={"full_name": "Ana"}, headers={"Authorization": "Bearer tok"})
        self.assertEqual(r.json()["profile"], {"full_name": "Ana"})


if __name__ == "__main__":
    unittest.main()
