"""Hosted skill directory: search, and URL-to-markdown jobs that may be queued server-side."""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import httpx

from .client import SkillportClient, SkillportError, SkillportHTTPError
from .config import DEFAULT_API_URL
from .discovery import Skill, discover_skills

logger = logging.getLogger(__name__)

SEARCH_MODES = ("lexical", "semantic")
DEFAULT_SEARCH_LIMIT = 10
DEFAULT_JOB_TIMEOUT_S = 60.0
DEFAULT_JOB_POLL_INTERVAL_S = 1.0

_TOKEN_SPLIT_RE = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class SearchResult:
    name: str
    description: str | None = None
    short_description: str | None = None
    repo_owner: str | None = None
    repo_name: str | None = None
    path: str | None = None
    skill_slug: str | None = None
    stars: int | None = None
    tags: tuple[str, ...] = ()
    is_official: bool = False
    local_repo_path: str | None = None

    @classmethod
    def from_json(cls, raw: Any) -> "SearchResult | None":
        if not isinstance(raw, dict) or not isinstance(raw.get("name"), str):
            return None

        def s(key: str) -> str | None:
            v = raw.get(key)
            return v if isinstance(v, str) and v else None

        stars = raw.get("stars")
        tags = raw.get("tags")
        return cls(
            name=raw["name"],
            description=s("description"),
            short_description=s("shortDescription"),
            repo_owner=s("repoOwner"),
            repo_name=s("repoName"),
            path=s("path"),
            skill_slug=s("skillSlug"),
            stars=stars if isinstance(stars, int) and not isinstance(stars, bool) else None,
            tags=tuple(t for t in tags if isinstance(t, str)) if isinstance(tags, list) else (),
            is_official=raw.get("isOfficial") is True,
            local_repo_path=s("localRepoPath"),
        )

    @property
    def repo(self) -> str | None:
        if self.local_repo_path:
            return self.local_repo_path
        if self.repo_owner and self.repo_name:
            return f"{self.repo_owner}/{self.repo_name}"
        return None

    @property
    def install_name(self) -> str:
        return self.skill_slug or self.name

    @property
    def summary(self) -> str:
        return self.short_description or self.description or ""


@dataclass(frozen=True)
class SearchOutcome:
    mode: str
    results: list[SearchResult] = field(default_factory=list)
    fallback: bool = False


@dataclass(frozen=True)
class UrlMarkdown:
    markdown: str
    title: str
    final_url: str
    description: str | None = None
    report: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, raw: Any) -> "UrlMarkdown | None":
        if not isinstance(raw, dict) or not isinstance(raw.get("markdown"), str):
            return None
        report = raw.get("report")
        return cls(
            markdown=raw["markdown"],
            title=raw.get("title") if isinstance(raw.get("title"), str) else "",
            final_url=raw.get("finalUrl") if isinstance(raw.get("finalUrl"), str) else "",
            description=raw.get("description") if isinstance(raw.get("description"), str) else None,
            report=report if isinstance(report, dict) else {},
        )

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "markdown": self.markdown,
            "title": self.title,
            "finalUrl": self.final_url,
            "report": self.report,
        }
        if self.description is not None:
            out["description"] = self.description
        return out


def _tokenize(value: str) -> list[str]:
    return [t for t in _TOKEN_SPLIT_RE.split(value.lower()) if t]


def score_skill(skill: Skill, query: str, tokens: list[str]) -> int:
    name = skill.name.lower()
    description = skill.description.lower()
    q = query.lower()
    score = 0
    if name == q:
        score += 50
    if q in name:
        score += 20
    if q in description:
        score += 8
    for token in tokens:
        if token in name:
            score += 6
        if token in description:
            score += 2
    return score


def search_local_skills(repo_path: str | Path, query: str, limit: int = DEFAULT_SEARCH_LIMIT) -> list[SearchResult]:
    """Lexical search over the skills of a local checkout, best match first."""
    tokens = _tokenize(query)
    if not tokens:
        return []
    root = Path(repo_path)
    scored = [(score_skill(s, query, tokens), s) for s in discover_skills(root)]
    scored = [(score, s) for score, s in scored if score > 0]
    scored.sort(key=lambda pair: (-pair[0], pair[1].name))

    results: list[SearchResult] = []
    for _, skill in scored[:limit]:
        try:
            rel = skill.path.relative_to(root).as_posix()
        except ValueError:
            rel = ""
        results.append(
            SearchResult(
                name=skill.name,
                description=skill.description,
                short_description=skill.description,
                path=f"{rel}/SKILL.md" if rel and rel != "." else "SKILL.md",
                skill_slug=skill.path.name.lower(),
                is_official=True,
                local_repo_path=str(root),
            )
        )
    return results


def _error_message(payload: Any, fallback: str) -> str:
    if isinstance(payload, dict) and isinstance(payload.get("error"), str) and payload["error"]:
        return payload["error"]
    return fallback


def _json_or_none(text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None


class DirectoryClient:
    """
    Talks to the skill directory API.

    ``clock`` and ``sleep`` drive the job poll loop and can be swapped in tests.
    """

    def __init__(
        self,
        client: SkillportClient,
        *,
        api_url: str = DEFAULT_API_URL,
        local_skills_repo: str | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.api_url = api_url.rstrip("/")
        self.local_skills_repo = local_skills_repo
        self.clock = clock
        self.sleep = sleep

    def _call(self, method: str, path: str, **kwargs: Any) -> tuple[int, Any]:
        """``(status, payload)``; HTTP errors surface the API's own ``error`` message."""
        url = f"{self.api_url}{path}"
        try:
            resp: httpx.Response = self.client.request(method=method, url=url, **kwargs)
        except SkillportHTTPError as e:
            payload = _json_or_none(e.body)
            raise SkillportError(_error_message(payload, f"Request failed ({e.status_code})")) from e
        return resp.status_code, _json_or_none(resp.text)

    def search_skills(
        self, query: str, mode: str = "lexical", limit: int = DEFAULT_SEARCH_LIMIT
    ) -> list[SearchResult]:
        if mode not in SEARCH_MODES:
            raise SkillportError(f"Unknown search mode: {mode}")
        status, payload = self._call(
            "GET", "/skills", params={"search": query, "limit": str(limit), "mode": mode}
        )
        if not isinstance(payload, dict) or payload.get("success") is not True:
            raise SkillportError(_error_message(payload, f"Search failed ({status})"))
        data = payload.get("data")
        if not isinstance(data, list):
            return []
        return [r for r in (SearchResult.from_json(d) for d in data) if r is not None]

    def search(self, query: str, mode: str = "lexical", limit: int = DEFAULT_SEARCH_LIMIT) -> SearchOutcome:
        """
        Search the directory (or the configured local checkout).

        Semantic search falls back to lexical when the semantic endpoint fails.
        """
        query = query.strip()
        if not query:
            return SearchOutcome(mode=mode)

        if self.local_skills_repo:
            results = search_local_skills(self.local_skills_repo, query, limit)
            return SearchOutcome(mode="lexical", results=results, fallback=mode == "semantic")

        if mode == "semantic":
            try:
                return SearchOutcome(mode="semantic", results=self.search_skills(query, "semantic", limit))
            except SkillportError as e:
                logger.debug("Semantic search failed, using lexical: %s", e)
                return SearchOutcome(mode="lexical", results=self.search_skills(query, "lexical", limit), fallback=True)

        return SearchOutcome(mode="lexical", results=self.search_skills(query, "lexical", limit))

    def fetch_url_markdown(
        self,
        url: str,
        *,
        timeout_s: float = DEFAULT_JOB_TIMEOUT_S,
        poll_interval_s: float = DEFAULT_JOB_POLL_INTERVAL_S,
    ) -> UrlMarkdown:
        """
        Convert ``url`` to markdown.

        The service either answers inline or queues a job (HTTP 202 with ``jobId``); a queued
        job is polled until done, and fails with a timeout error past ``timeout_s``.
        """
        status, payload = self._call("POST", "/url", json_body={"url": url})
        if not isinstance(payload, dict):
            raise SkillportError(f"Request failed ({status})")

        if payload.get("success") is True:
            data = UrlMarkdown.from_json(payload.get("data"))
            if data is not None:
                return data

        job_id = payload.get("jobId")
        if isinstance(job_id, str) and job_id:
            logger.debug("Markdown for %s queued as job %s", url, job_id)
            return self.poll_url_markdown(job_id, timeout_s=timeout_s, poll_interval_s=poll_interval_s)

        raise SkillportError(_error_message(payload, "Failed to fetch markdown"))

    def poll_url_markdown(
        self,
        job_id: str,
        *,
        timeout_s: float = DEFAULT_JOB_TIMEOUT_S,
        poll_interval_s: float = DEFAULT_JOB_POLL_INTERVAL_S,
    ) -> UrlMarkdown:
        deadline = self.clock() + timeout_s
        while self.clock() < deadline:
            status, payload = self._call("GET", "/url", params={"jobId": job_id})
            if isinstance(payload, dict) and payload.get("success") is True:
                data = UrlMarkdown.from_json(payload.get("data"))
                if data is not None:
                    return data
                if payload.get("pending"):
                    self.sleep(poll_interval_s)
                    continue
            raise SkillportError(_error_message(payload, f"Request failed ({status})"))

        raise SkillportError(f"Timed out waiting for markdown (job {job_id}, {timeout_s:g}s)")
