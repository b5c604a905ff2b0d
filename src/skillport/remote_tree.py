from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from .client import SkillportClient, SkillportError, SkillportHTTPError
from .source_parser import MANIFEST_FILENAME

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
DEFAULT_BRANCHES = ("main", "master")
_ACCEPT = {"Accept": "application/vnd.github.v3+json"}


@dataclass(frozen=True)
class TreeNode:
    path: str
    type: str
    sha: str


@dataclass(frozen=True)
class RepoTree:
    sha: str
    nodes: tuple[TreeNode, ...] = ()


@dataclass(frozen=True)
class RepoTreeResult:
    tree: RepoTree | None
    rate_limited: bool = False


def normalize_skill_folder_path(skill_path: str) -> str:
    """``skills/foo/SKILL.md`` -> ``skills/foo``; a root-level manifest gives ``""``."""
    folder = skill_path
    suffix = "/" + MANIFEST_FILENAME
    if folder.endswith(suffix):
        folder = folder[: -len(suffix)]
    elif folder.endswith(MANIFEST_FILENAME):
        folder = folder[: -len(MANIFEST_FILENAME)]
    return folder.rstrip("/")


def folder_hash(tree: RepoTree, skill_path: str) -> str | None:
    folder = normalize_skill_folder_path(skill_path)
    if not folder:
        return tree.sha
    for node in tree.nodes:
        if node.type == "tree" and node.path == folder:
            return node.sha
    return None


def _parse_tree(raw: Any) -> RepoTree | None:
    if not isinstance(raw, dict) or not isinstance(raw.get("sha"), str):
        return None
    nodes = []
    for item in raw.get("tree") or []:
        if not isinstance(item, dict):
            continue
        path, type_, sha = item.get("path"), item.get("type"), item.get("sha")
        if isinstance(path, str) and isinstance(type_, str) and isinstance(sha, str):
            nodes.append(TreeNode(path=path, type=type_, sha=sha))
    return RepoTree(sha=raw["sha"], nodes=tuple(nodes))


class GitHubTreeFetcher:
    """Recursive tree listings from the GitHub API, cached per ``owner/repo`` for the fetcher's lifetime."""

    def __init__(self, client: SkillportClient, *, branches: tuple[str, ...] = DEFAULT_BRANCHES) -> None:
        self.client = client
        self.branches = branches
        self._cache: dict[str, RepoTreeResult] = {}
        self._lock = threading.Lock()

    def fetch(self, owner_repo: str) -> RepoTreeResult:
        with self._lock:
            cached = self._cache.get(owner_repo)
        if cached is not None:
            return cached

        result = self._fetch_uncached(owner_repo)
        with self._lock:
            self._cache[owner_repo] = result
        return result

    def _fetch_uncached(self, owner_repo: str) -> RepoTreeResult:
        for branch in self.branches:
            url = f"{GITHUB_API}/repos/{owner_repo}/git/trees/{branch}"
            try:
                raw = self.client.request(
                    method="GET", url=url, params={"recursive": "1"}, headers=_ACCEPT, auth=True
                ).json()
            except SkillportHTTPError as e:
                if e.rate_limited:
                    logger.warning("GitHub API rate limit reached while reading %s", owner_repo)
                    return RepoTreeResult(tree=None, rate_limited=True)
                logger.debug("No tree for %s@%s: HTTP %s", owner_repo, branch, e.status_code)
                continue
            except (SkillportError, ValueError) as e:
                logger.debug("Tree fetch failed for %s@%s: %s", owner_repo, branch, e)
                continue
            tree = _parse_tree(raw)
            if tree is not None:
                return RepoTreeResult(tree=tree)
        return RepoTreeResult(tree=None)


def fetch_skill_folder_hash(fetcher: GitHubTreeFetcher, owner_repo: str, skill_path: str) -> str | None:
    result = fetcher.fetch(owner_repo)
    if result.tree is None:
        return None
    return folder_hash(result.tree, skill_path)
