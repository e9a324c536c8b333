import json
import unittest
from unittest.mock import AsyncMock, patch

import httpx
from fastapi.testclient import TestClient

from api.guard import main
from api.guard.llm import LLMResponseError, LLMUnavailableError
from api.guard.settings import Settings

REPORT = {
    "title": "Risk outlook",
    "summary": "Stable with pockets of volatility.",
    "sections": [{"title": "Trade", "content": "Flows are up.", "chart_type": "bar", "chart_data": {"labels": []}}],
    "insights": [{"type": "trend", "message": "Exports rising", "confidence": 0.8}],
    "recommendations": ["Watch tariffs"],
}

USER = {"X-User-Email": "u@x.com"}


def make_settings(**overrides) -> Settings:
    values = {"admin_token": "secret", "log_json": False, "llm_api_key": "test-key"}
    values.update(overrides)
    return Settings(**values)


class ReportEndpointTests(unittest.TestCase):
    def test_report_is_generated_then_cached(self):
        fake = AsyncMock(return_value=REPORT)
        with patch.object(main.llm, "generate_report", fake):
            with TestClient(main.create_app(make_settings())) as client:
                first = client.post("/reports", json={"request": "risk outlook"}, headers=USER)
                second = client.post("/reports", json={"request": "risk outlook"}, headers=USER)

        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()["title"], "Risk outlook")
        self.assertFalse(first.json()["cached"])
        self.assertEqual(first.headers["X-RateLimit-Limit"], "10")
        self.assertEqual(first.headers["X-RateLimit-Remaining"], "9")
        self.assertIn("X-RateLimit-Reset", first.headers)

        self.assertEqual(second.status_code, 200)
        self.assertTrue(second.json()["cached"])
        self.assertEqual(second.headers["X-RateLimit-Remaining"], "8")
        fake.assert_awaited_once()
        self.assertEqual(fake.await_args.args, ("risk outlook", []))

    def test_cache_is_per_identity(self):
        fake = AsyncMock(return_value=REPORT)
        app = main.create_app(make_settings())
        with patch.object(main.llm, "generate_report", fake):
            with TestClient(app) as client:
                client.post("/reports", json={"request": "risk outlook"}, headers=USER)
                client.post("/reports", json={"request": "risk outlook"}, headers={"X-User-Email": "other@x.com"})

        self.assertEqual(fake.await_count, 2)
        self.assertEqual(
            sorted(app.state.result_cache.stats()["keys"]),
            ['report:["other@x.com","risk outlook",[]]', 'report:["u@x.com","risk outlook",[]]'],
        )

    def test_rate_limit_returns_429_with_retry_after(self):
        fake = AsyncMock(return_value=REPORT)
        with patch.object(main.llm, "generate_report", fake):
            with TestClient(main.create_app(make_settings(rate_limit_max_requests=2))) as client:
                codes = [client.post("/reports", json={"request": "q"}, headers=USER).status_code for _ in range(2)]
                denied = client.post("/reports", json={"request": "q"}, headers=USER)
                other = client.post("/reports", json={"request": "q"}, headers={"X-User-Email": "b@x.com"})

        self.assertEqual(codes, [200, 200])
        self.assertEqual(denied.status_code, 429)
        self.assertEqual(denied.headers["Retry-After"], "60")
        self.assertEqual(denied.headers["X-RateLimit-Remaining"], "0")
        self.assertIn("Too many requests", denied.json()["detail"])
        self.assertEqual(other.status_code, 200)

    def test_rate_limiting_can_be_disabled(self):
        fake = AsyncMock(return_value=REPORT)
        with patch.object(main.llm, "generate_report", fake):
            with TestClient(main.create_app(make_settings(rate_limit_max_requests=1, enable_rate_limiting=False))) as client:
                responses = [client.post("/reports", json={"request": f"q{i}"}, headers=USER) for i in range(3)]

        self.assertEqual([r.status_code for r in responses], [200, 200, 200])
        self.assertNotIn("X-RateLimit-Limit", responses[0].headers)

    def test_identity_falls_back_to_client_host(self):
        fake = AsyncMock(return_value=REPORT)
        app = main.create_app(make_settings())
        with patch.object(main.llm, "generate_report", fake):
            with TestClient(app) as client:
                res = client.post("/reports", json={"request": "q"})

        self.assertEqual(res.status_code, 200)
        self.assertEqual(app.state.result_cache.stats()["keys"], ['report:["testclient","q",[]]'])

    def test_invalid_identity_header(self):
        with TestClient(main.create_app(make_settings())) as client:
            res = client.post("/reports", json={"request": "q"}, headers={"X-User-Email": "nope"})
        self.assertEqual(res.status_code, 400)

    def test_invalid_input_rejected(self):
        with TestClient(main.create_app(make_settings())) as client:
            res = client.post("/reports", json={"request": "<script>alert(1)</script>"}, headers=USER)
        self.assertEqual(res.status_code, 422)

    def test_llm_failures_map_to_gateway_errors(self):
        cases = [
            (AsyncMock(side_effect=LLMUnavailableError("down")), 503),
            (AsyncMock(side_effect=LLMResponseError("junk")), 502),
            (AsyncMock(return_value={"unexpected": True}), 502),
            (AsyncMock(side_effect=KeyError("boom")), 500),
        ]
        for fake, status in cases:
            app = main.create_app(make_settings())
            with patch.object(main.llm, "generate_report", fake):
                with TestClient(app) as client:
                    res = client.post("/reports", json={"request": "q"}, headers=USER)
            self.assertEqual(res.status_code, status)
            self.assertEqual(len(app.state.result_cache), 0)

    def test_entities_are_part_of_the_cache_key(self):
        fake = AsyncMock(return_value=REPORT)
        app = main.create_app(make_settings())
        with patch.object(main.llm, "generate_report", fake):
            with TestClient(app) as client:
                client.post("/reports", json={"request": "trade", "entities": ["KeyActor", "Article"]}, headers=USER)
                again = client.post("/reports", json={"request": "trade", "entities": ["Article", "KeyActor"]}, headers=USER)

        self.assertTrue(again.json()["cached"])
        self.assertEqual(fake.await_count, 1)
        self.assertEqual(fake.await_args.args, ("trade", ["KeyActor", "Article"]))
        self.assertEqual(
            app.state.result_cache.stats()["keys"],
            ['report:["u@x.com","trade",["Article","KeyActor"]]'],
        )

    def test_separator_in_request_does_not_share_entity_report(self):
        fake = AsyncMock(side_effect=[dict(REPORT, title="A"), dict(REPORT, title="B")])
        app = main.create_app(make_settings())
        with patch.object(main.llm, "generate_report", fake):
            with TestClient(app) as client:
                one = client.post("/reports", json={"request": "trade:Fact"}, headers=USER)
                two = client.post("/reports", json={"request": "trade", "entities": ["Fact"]}, headers=USER)

        self.assertEqual(one.json()["title"], "A")
        self.assertEqual(two.json()["title"], "B")
        self.assertFalse(two.json()["cached"])
        self.assertEqual(fake.await_count, 2)
        self.assertEqual(len(app.state.result_cache), 2)


def completion(payload) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": json.dumps(payload)}}]}


class ConfiguredLLMTests(unittest.TestCase):
    """The real LLM client runs with the settings given to create_app."""

    URL = "https://llm.internal/v1/chat/completions"

    def make_app(self, handler):
        cfg = make_settings(llm_api_key="configured", llm_api_url=self.URL, llm_model="internal-model")
        return main.create_app(cfg, llm_transport=httpx.MockTransport(handler))

    def test_report_uses_app_settings(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=completion({"title": "T", "summary": "S"}))

        with patch.object(main.llm.settings, "llm_api_key", None):
            with TestClient(self.make_app(handler)) as client:
                res = client.post("/reports", json={"request": "risk outlook"}, headers=USER)

        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["title"], "T")
        self.assertEqual([str(r.url) for r in seen], [self.URL])
        self.assertEqual(seen[0].headers["Authorization"], "Bearer configured")
        self.assertEqual(json.loads(seen[0].content)["model"], "internal-model")

    def test_tags_use_app_settings(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=completion({"suggested_tags": ["brics"]}))

        with patch.object(main.llm.settings, "llm_api_key", None):
            with TestClient(self.make_app(handler)) as client:
                res = client.post("/tags", json={"title": "t", "content": "c"}, headers=USER)

        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json(), {"suggested_tags": ["brics"]})
        self.assertEqual([str(r.url) for r in seen], [self.URL])
        self.assertEqual(seen[0].headers["Authorization"], "Bearer configured")


class TagEndpointTests(unittest.TestCase):
    def test_tags_are_memoized(self):
        calls = []

        async def fake_suggest(title, content, content_type="article", max_tags=10, existing_tags=(), **kwargs):
            calls.append(title)
            return ["brics", "trade"]

        app = main.create_app(make_settings())
        payload = {"title": "BRICS summit", "content": "Leaders met.", "max_tags": 2}
        with patch.object(main.llm, "suggest_tags", fake_suggest):
            with TestClient(app) as client:
                first = client.post("/tags", json=payload, headers=USER)
                second = client.post("/tags", json=payload, headers={"X-User-Email": "b@x.com"})

        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json(), {"suggested_tags": ["brics", "trade"]})
        self.assertEqual(second.json(), first.json())
        self.assertEqual(calls, ["BRICS summit"])
        self.assertTrue(app.state.result_cache.stats()["keys"][0].startswith("tags:"))

    def test_tag_llm_unavailable(self):
        async def fake_suggest(*args, **kwargs):
            raise LLMUnavailableError("down")

        app = main.create_app(make_settings())
        with patch.object(main.llm, "suggest_tags", fake_suggest):
            with TestClient(app) as client:
                res = client.post("/tags", json={"title": "t", "content": "c"}, headers=USER)
        self.assertEqual(res.status_code, 503)


class AdminEndpointTests(unittest.TestCase):
    ADMIN = {"X-Admin-Token": "secret"}

    def setUp(self):
        self.app = main.create_app(make_settings())
        cache = self.app.state.result_cache
        cache.set("report:a", 1)
        cache.set("report:b", 2)
        cache.set("other:c", 3)

    def test_requires_token(self):
        with TestClient(self.app) as client:
            self.assertEqual(client.get("/admin/cache").status_code, 403)
            self.assertEqual(client.get("/admin/cache", headers={"X-Admin-Token": "wrong"}).status_code, 403)

    def test_disabled_without_configured_token(self):
        with TestClient(main.create_app(make_settings(admin_token=None))) as client:
            self.assertEqual(client.get("/admin/cache", headers=self.ADMIN).status_code, 403)

    def test_stats_and_pattern_clear(self):
        with TestClient(self.app) as client:
            stats = client.get("/admin/cache", headers=self.ADMIN).json()
            cleared = client.delete("/admin/cache", params={"pattern": "^report:"}, headers=self.ADMIN)
            after = client.get("/admin/cache", headers=self.ADMIN).json()

        self.assertEqual(stats["size"], 3)
        self.assertEqual(stats["keys"], ["report:a", "report:b", "other:c"])
        self.assertEqual(cleared.json(), {"removed": 2})
        self.assertEqual(after["keys"], ["other:c"])

    def test_invalid_pattern(self):
        with TestClient(self.app) as client:
            res = client.delete("/admin/cache", params={"pattern": "("}, headers=self.ADMIN)
        self.assertEqual(res.status_code, 400)
        self.assertEqual(len(self.app.state.result_cache), 3)

    def test_delete_single_key(self):
        with TestClient(self.app) as client:
            res = client.delete("/admin/cache/report:a", headers=self.ADMIN)
        self.assertEqual(res.status_code, 204)
        self.assertIsNone(self.app.state.result_cache.get("report:a"))
        self.assertEqual(self.app.state.result_cache.get("report:b"), 2)

    def test_sweep(self):
        self.app.state.rate_limiter.check_limit("u@x.com", "ai_operations")
        with TestClient(self.app) as client:
            res = client.post("/admin/rate-limits/sweep", headers=self.ADMIN)
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json(), {"removed_keys": 0, "tracked_keys": 1})


class LifecycleTests(unittest.TestCase):
    def test_sweeper_runs_for_app_lifetime(self):
        app = main.create_app(make_settings())
        with TestClient(app) as client:
            self.assertTrue(app.state.sweeper.running)
            self.assertEqual(client.get("/health").json(), {"ok": True})
        self.assertFalse(app.state.sweeper.running)


if __name__ == "__main__":
    unittest.main()
