import json
import tempfile
import unittest
from pathlib import Path

import httpx

from _helpers import skill_md, write_tree
from skillport.client import SkillportClient, SkillportError
from skillport.search import DirectoryClient, SearchResult, UrlMarkdown, search_local_skills

API = "https://api.test"

MARKDOWN = {
    "markdown": "# Hello",
    "title": "Hello",
    "finalUrl": "https://example.com/",
    "report": {"strategy": "readability", "trimmedLength": 7, "isSparse": False, "wasHeadless": False},
}


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class _DirectoryCase(unittest.TestCase):
    def directory(self, handler, **kwargs) -> DirectoryClient:
        client = SkillportClient()
        client._http = httpx.Client(transport=httpx.MockTransport(handler), follow_redirects=True)  # type: ignore[attr-defined]
        self.addCleanup(client.close)
        self.clock = FakeClock()
        return DirectoryClient(client, api_url=API + "/", clock=self.clock, sleep=self.clock.sleep, **kwargs)


class TestSearch(_DirectoryCase):
    def test_search_parses_results_and_sends_params(self) -> None:
        seen: dict[str, str] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(dict(request.url.params))
            self.assertEqual(request.url.path, "/skills")
            data = [
                {
                    "id": 1,
                    "name": "PDF tools",
                    "shortDescription": "Work with PDFs",
                    "repoOwner": "acme",
                    "repoName": "skills",
                    "skillSlug": "pdf",
                    "stars": 12,
                    "tags": ["docs", 3],
                    "isOfficial": True,
                },
                {"id": 2, "description": "no name"},
            ]
            return httpx.Response(200, json={"success": True, "data": data})

        outcome = self.directory(handler).search("  pdf  ")

        self.assertEqual(seen, {"search": "pdf", "limit": "10", "mode": "lexical"})
        self.assertEqual(outcome.mode, "lexical")
        self.assertFalse(outcome.fallback)
        [result] = outcome.results
        self.assertEqual(result.repo, "acme/skills")
        self.assertEqual(result.install_name, "pdf")
        self.assertEqual(result.summary, "Work with PDFs")
        self.assertEqual(result.tags, ("docs",))
        self.assertTrue(result.is_official)

    def test_blank_query_makes_no_request(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("unexpected request")

        outcome = self.directory(handler).search("   ", "semantic")
        self.assertEqual(outcome.results, [])

    def test_semantic_falls_back_to_lexical(self) -> None:
        modes: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            mode = request.url.params["mode"]
            modes.append(mode)
            if mode == "semantic":
                return httpx.Response(503, json={"success": False, "error": "embeddings offline"})
            return httpx.Response(200, json={"success": True, "data": [{"name": "pdf"}]})

        outcome = self.directory(handler).search("pdf", "semantic")

        self.assertEqual(modes, ["semantic", "lexical"])
        self.assertEqual(outcome.mode, "lexical")
        self.assertTrue(outcome.fallback)
        self.assertEqual([r.name for r in outcome.results], ["pdf"])

    def test_api_error_message_is_surfaced(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"success": False, "error": "query too short"})

        with self.assertRaises(SkillportError) as ctx:
            self.directory(handler).search_skills("p")
        self.assertEqual(str(ctx.exception), "query too short")

    def test_unsuccessful_payload_without_message(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="not json")

        with self.assertRaises(SkillportError) as ctx:
            self.directory(handler).search_skills("pdf")
        self.assertEqual(str(ctx.exception), "Search failed (200)")

    def test_local_repo_replaces_api(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = write_tree(
                Path(td),
                {
                    "skills/pdf/SKILL.md": skill_md("pdf", "Fill PDF forms"),
                    "skills/docx/SKILL.md": skill_md("docx", "Word files, not pdf"),
                    "skills/xlsx/SKILL.md": skill_md("xlsx", "Spreadsheets"),
                },
            )

            def handler(request: httpx.Request) -> httpx.Response:
                raise AssertionError("unexpected request")

            outcome = self.directory(handler, local_skills_repo=str(root)).search("pdf", "semantic")

        self.assertEqual(outcome.mode, "lexical")
        self.assertTrue(outcome.fallback)
        self.assertEqual([r.name for r in outcome.results], ["pdf", "docx"])
        self.assertEqual(outcome.results[0].path, "skills/pdf/SKILL.md")
        self.assertEqual(outcome.results[0].repo, str(root))


class TestSearchLocalSkills(unittest.TestCase):
    def test_scoring_and_limit(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = write_tree(
                Path(td),
                {
                    "skills/a-pdf-helper/SKILL.md": skill_md("pdf-helper", "Helps"),
                    "skills/pdf/SKILL.md": skill_md("pdf", "Exact"),
                    "skills/other/SKILL.md": skill_md("other", "Unrelated"),
                },
            )
            self.assertEqual([r.name for r in search_local_skills(root, "pdf")], ["pdf", "pdf-helper"])
            self.assertEqual(len(search_local_skills(root, "pdf", limit=1)), 1)
            self.assertEqual(search_local_skills(root, "!!!"), [])


class TestUrlMarkdown(_DirectoryCase):
    def test_inline_result(self) -> None:
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            self.assertEqual(request.method, "POST")
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True, "data": MARKDOWN})

        data = self.directory(handler).fetch_url_markdown("https://example.com")

        self.assertEqual(bodies, [{"url": "https://example.com"}])
        self.assertEqual(data.markdown, "# Hello")
        self.assertEqual(data.final_url, "https://example.com/")
        self.assertEqual(data.to_json()["report"]["strategy"], "readability")
        self.assertEqual(self.clock.sleeps, [])

    def test_queued_job_is_polled_until_done(self) -> None:
        polls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(202, json={"success": True, "queued": True, "jobId": "job-1"})
            polls.append(request.url.params["jobId"])
            if len(polls) < 3:
                return httpx.Response(200, json={"success": True, "pending": True})
            return httpx.Response(200, json={"success": True, "data": MARKDOWN})

        data = self.directory(handler).fetch_url_markdown("https://example.com", poll_interval_s=0.5)

        self.assertEqual(data, UrlMarkdown.from_json(MARKDOWN))
        self.assertEqual(polls, ["job-1", "job-1", "job-1"])
        self.assertEqual(self.clock.sleeps, [0.5, 0.5])

    def test_queued_job_times_out(self) -> None:
        polls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(202, json={"success": True, "jobId": "job-2"})
            polls.append(request.url.params["jobId"])
            return httpx.Response(200, json={"success": True, "pending": True})

        directory = self.directory(handler)
        with self.assertRaises(SkillportError) as ctx:
            directory.fetch_url_markdown("https://example.com", timeout_s=3, poll_interval_s=1)

        self.assertIn("Timed out", str(ctx.exception))
        self.assertEqual(len(polls), 3)
        self.assertEqual(self.clock.now, 3)

    def test_failed_job_reports_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(202, json={"success": True, "jobId": "job-3"})
            return httpx.Response(200, json={"success": False, "error": "page blocked"})

        with self.assertRaises(SkillportError) as ctx:
            self.directory(handler).fetch_url_markdown("https://example.com")
        self.assertEqual(str(ctx.exception), "page blocked")

    def test_rejected_request(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(422, json={"success": False, "error": "Invalid URL"})

        with self.assertRaises(SkillportError) as ctx:
            self.directory(handler).fetch_url_markdown("notaurl")
        self.assertEqual(str(ctx.exception), "Invalid URL")


class TestSearchResult(unittest.TestCase):
    def test_rejects_records_without_name(self) -> None:
        self.assertIsNone(SearchResult.from_json({"description": "x"}))
        self.assertIsNone(SearchResult.from_json("pdf"))
        self.assertIsNone(SearchResult.from_json({"name": "x", "repoOwner": "acme"}).repo)


if __name__ == "__main__":
    unittest.main()
