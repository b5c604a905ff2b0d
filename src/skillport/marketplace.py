"""Plugin marketplace descriptors (``.claude-plugin/marketplace.json``) and the skills they point at."""

from __future__ import annotations

import json
import logging
import posixpath
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable
from urllib.parse import quote, urlsplit

from .client import NotFoundError, SkillportClient, SkillportError
from .discovery import Skill, discover_skills
from .git import clone_repo
from .paths import is_path_safe, safe_join
from .skill_lock import SkillOrigin
from .source_parser import MANIFEST_FILENAME
from .temp_registry import TempRegistry

logger = logging.getLogger(__name__)

MARKETPLACE_FILENAME = "marketplace.json"
MARKETPLACE_RELPATH = f".claude-plugin/{MARKETPLACE_FILENAME}"
DEFAULT_OVERRIDE_PATHS = ("skills", "commands", "agents", "hooks")

_SHORTHAND_RE = re.compile(r"^[^/]+/[^/]+$")

CloneFn = Callable[..., Path]


@dataclass(frozen=True)
class RepoLocation:
    host: str  # "github" | "gitlab"
    project: str  # owner/repo, or a GitLab namespace path
    ref: str
    path: str = ""

    @property
    def clone_url(self) -> str:
        return f"https://{self.host}.com/{self.project}.git"

    def with_path(self, path: str) -> "RepoLocation":
        return RepoLocation(host=self.host, project=self.project, ref=self.ref, path=path)


@dataclass(frozen=True)
class MarketplaceContext:
    kind: str  # "local" | "github" | "gitlab" | "url"
    base_dir: Path | None = None
    base_url: str | None = None
    repo: RepoLocation | None = None


@dataclass(frozen=True)
class MarketplacePlugin:
    name: str
    description: str
    source: Any
    plugin_root: str = ""
    overrides: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ResolvedPluginSource:
    kind: str  # "local" | "github" | "gitlab" | "unsupported"
    local_dir: Path | None = None
    repo: RepoLocation | None = None
    overrides: dict[str, Any] = field(default_factory=dict)
    reason: str | None = None


@dataclass(frozen=True)
class MarketplaceSkill:
    skill: Skill
    plugin_name: str
    origin: SkillOrigin


def is_marketplace_input(value: str) -> bool:
    return value.lower().endswith(MARKETPLACE_FILENAME)


def resolve_local_marketplace_path(value: str | Path) -> Path | None:
    p = Path(value)
    if p.is_file() and p.name.lower() == MARKETPLACE_FILENAME:
        return p
    if p.is_dir():
        candidate = p / MARKETPLACE_RELPATH
        if candidate.is_file():
            return candidate
    return None


def is_marketplace_source(value: str) -> bool:
    return resolve_local_marketplace_path(value) is not None or is_marketplace_input(value)


def _parse_repo_url(url: str) -> tuple[str, str] | None:
    """``(host, project)`` for github.com / gitlab.com repository URLs."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    host = (parts.hostname or "").lower()
    path = re.sub(r"\.git$", "", parts.path, flags=re.IGNORECASE).rstrip("/")
    segments = [s for s in path.split("/") if s]
    if host == "github.com" and len(segments) >= 2:
        return "github", f"{segments[0]}/{segments[1]}"
    if host == "gitlab.com" and len(segments) >= 2:
        return "gitlab", "/".join(segments)
    return None


def _raw_marketplace_url(repo: RepoLocation) -> str:
    if repo.host == "gitlab":
        return f"https://gitlab.com/{repo.project}/-/raw/{quote(repo.ref, safe='')}/{MARKETPLACE_RELPATH}"
    return f"https://raw.githubusercontent.com/{repo.project}/{repo.ref}/{MARKETPLACE_RELPATH}"


def _load_from_repo(host: str, project: str, ref: str | None, client: SkillportClient) -> tuple[Any, MarketplaceContext]:
    refs = [r for r in (ref, "main", "master") if r]
    last_error: SkillportError | None = None
    for r in dict.fromkeys(refs):
        repo = RepoLocation(host=host, project=project, ref=r)
        try:
            data = client.get_json(_raw_marketplace_url(repo))
        except SkillportError as e:
            last_error = e
            continue
        return data, MarketplaceContext(kind=host, repo=repo)
    raise NotFoundError(f"No {MARKETPLACE_RELPATH} found in {project}") from last_error


def load_marketplace(value: str, ref: str | None = None, *, client: SkillportClient) -> tuple[Any, MarketplaceContext]:
    """Read a marketplace descriptor from a local path, ``owner/repo``, or a URL."""
    if not value:
        raise SkillportError("No marketplace input provided")

    local = resolve_local_marketplace_path(value)
    if local is not None:
        try:
            data = json.loads(local.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise SkillportError(f"Invalid marketplace file {local}: {e}") from e
        base_dir = local.parent.parent if local.parent.name == ".claude-plugin" else local.parent
        return data, MarketplaceContext(kind="local", base_dir=base_dir)

    if _SHORTHAND_RE.match(value) and not value.startswith("."):
        return _load_from_repo("github", value, ref, client)

    if not value.startswith(("http://", "https://")):
        raise NotFoundError(f"{MARKETPLACE_FILENAME} not found at path: {value}")

    parts = urlsplit(value)
    if parts.hostname == "raw.githubusercontent.com":
        segments = [s for s in parts.path.split("/") if s]
        if len(segments) >= 4 and segments[-1] == MARKETPLACE_FILENAME:
            owner, repo_name, raw_ref, *file_parts = segments
            base_path = posixpath.dirname("/".join(file_parts))
            if posixpath.basename(base_path) == ".claude-plugin":
                base_path = posixpath.dirname(base_path)
            data = client.get_json(value)
            repo = RepoLocation(host="github", project=f"{owner}/{repo_name}", ref=raw_ref, path=base_path)
            return data, MarketplaceContext(kind="github", repo=repo)

    parsed = _parse_repo_url(value)
    if parsed is not None:
        host, project = parsed
        return _load_from_repo(host, project, ref, client)

    data = client.get_json(value)
    base_url = re.sub(r"/marketplace\.json$", "", value, flags=re.IGNORECASE)
    return data, MarketplaceContext(kind="url", base_url=base_url)


def _as_dict(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def _str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def normalize_plugins(data: Any) -> list[MarketplacePlugin]:
    root = _as_dict(data) or {}
    plugins = root.get("plugins") if isinstance(root.get("plugins"), list) else []
    metadata = _as_dict(root.get("metadata")) or {}
    default_root = _str(root.get("pluginRoot")) or _str(metadata.get("pluginRoot")) or ""

    out: list[MarketplacePlugin] = []
    for raw in plugins:
        record = _as_dict(raw) or {}
        name = _str(record.get("name")) or ""
        if not name:
            continue
        source = record.get("source")
        if source is None:
            source = record.get("repository", record.get("repo", record))
        out.append(
            MarketplacePlugin(
                name=name,
                description=_str(record.get("description")) or "",
                source=source,
                plugin_root=_str(record.get("pluginRoot")) or default_root,
                overrides={
                    k: record[k]
                    for k in ("commands", "agents", "skills", "hooks", "mcpServers")
                    if record.get(k) is not None
                },
            )
        )
    return out


def _context_ref(context: MarketplaceContext, host: str) -> str:
    if context.repo is not None and context.repo.host == host:
        return context.repo.ref
    return "main"


def resolve_plugin_source(plugin: MarketplacePlugin, context: MarketplaceContext) -> ResolvedPluginSource:
    overrides = plugin.overrides
    src = plugin.source

    def unsupported(reason: str) -> ResolvedPluginSource:
        return ResolvedPluginSource(kind="unsupported", overrides=overrides, reason=reason)

    if isinstance(src, str):
        if context.kind == "local" and context.base_dir is not None:
            return ResolvedPluginSource(
                kind="local", local_dir=context.base_dir / plugin.plugin_root / src, overrides=overrides
            )
        if context.kind in ("github", "gitlab") and context.repo is not None:
            full = posixpath.normpath(posixpath.join(context.repo.path, plugin.plugin_root, src))
            return ResolvedPluginSource(
                kind=context.kind, repo=context.repo.with_path("" if full == "." else full), overrides=overrides
            )
        return unsupported("Unsupported URL marketplace source")

    record = _as_dict(src)
    if record is None:
        return unsupported("Unknown source type")

    kind = (_str(record.get("source")) or _str(record.get("type")) or "").lower()
    path = _str(record.get("path")) or ""

    if kind == "github":
        repo = _str(record.get("repo")) or _str(record.get("repository"))
        if not repo:
            return unsupported("Missing GitHub repo")
        segments = repo.split("/")
        if len(segments) != 2 or not all(segments):
            return unsupported("Invalid GitHub repo format")
        ref = _str(record.get("ref")) or _context_ref(context, "github")
        return ResolvedPluginSource(
            kind="github", repo=RepoLocation("github", repo, ref, path), overrides=overrides
        )

    if kind == "gitlab":
        repo = _str(record.get("repo")) or _str(record.get("repository"))
        if not repo or not repo.strip("/"):
            return unsupported("Missing GitLab repo")
        ref = _str(record.get("ref")) or _context_ref(context, "gitlab")
        return ResolvedPluginSource(
            kind="gitlab", repo=RepoLocation("gitlab", repo.strip("/"), ref, path), overrides=overrides
        )

    if kind in ("git", "url"):
        url = _str(record.get("url")) or _str(record.get("href")) or ""
        parsed = _parse_repo_url(url)
        if parsed is None:
            return unsupported("Unsupported git/url provider")
        host, project = parsed
        ref = _str(record.get("ref")) or _context_ref(context, host)
        return ResolvedPluginSource(kind=host, repo=RepoLocation(host, project, ref, path), overrides=overrides)

    return unsupported("Unknown source type")


def override_paths(overrides: dict[str, Any]) -> list[str]:
    paths = list(DEFAULT_OVERRIDE_PATHS)
    for key in ("agents", "commands", "skills", "hooks", "mcpServers"):
        value = overrides.get(key)
        if isinstance(value, str) and value:
            paths.append(value)
        elif isinstance(value, list):
            paths.extend(v for v in value if isinstance(v, str) and v)
    return paths


def _candidate_dir(base: Path, candidate: str) -> Path | None:
    cleaned = candidate.replace("\\", "/")
    if cleaned.endswith(".md"):
        cleaned = posixpath.dirname(cleaned)
    return safe_join(base, cleaned)


def _skill_path(root: Path, skill_dir: Path) -> str:
    try:
        rel = skill_dir.relative_to(root).as_posix()
    except ValueError:
        rel = skill_dir.as_posix()
    return MANIFEST_FILENAME if rel in ("", ".") else f"{rel}/{MANIFEST_FILENAME}"


def _plugin_base(root: Path, plugin: MarketplacePlugin) -> Path | None:
    # String sources already carry the plugin root.
    if isinstance(plugin.source, str):
        return root
    return _candidate_dir(root, plugin.plugin_root)


def _scan_plugin(base: Path, overrides: dict[str, Any]) -> list[Skill]:
    found: list[Skill] = []
    seen_dirs: set[Path] = set()
    scanned: set[Path] = set()
    for rel in override_paths(overrides):
        candidate = _candidate_dir(base, rel)
        if candidate is None:
            logger.warning("Ignoring plugin path %s: outside of %s", rel, base)
            continue
        if candidate in scanned:
            continue
        scanned.add(candidate)
        for skill in discover_skills(candidate):
            if skill.path in seen_dirs:
                continue
            seen_dirs.add(skill.path)
            found.append(skill)
    return found


def _skip_escaping(plugin: MarketplacePlugin, warnings: list[str]) -> None:
    message = f"{plugin.name}: plugin path points outside of its source"
    logger.warning("Skipping marketplace plugin %s", message)
    warnings.append(message)


def collect_marketplace_skills(
    plugins: list[MarketplacePlugin],
    context: MarketplaceContext,
    *,
    registry: TempRegistry,
    clone: CloneFn = clone_repo,
) -> tuple[list[MarketplaceSkill], list[str]]:
    """
    Discover the skills of each plugin, cloning each referenced repository once.

    Clones stay registered in ``registry`` so the returned skill directories remain readable
    until the caller tears the registry down.
    """
    collected: list[MarketplaceSkill] = []
    warnings: list[str] = []
    clones: dict[tuple[str, str, str], Path] = {}

    for plugin in plugins:
        resolved = resolve_plugin_source(plugin, context)
        if resolved.kind == "unsupported":
            message = f"{plugin.name}: {resolved.reason or 'Unsupported plugin source'}"
            logger.warning("Skipping marketplace plugin %s", message)
            warnings.append(message)
            continue

        if resolved.kind == "local" and resolved.local_dir is not None:
            base = _plugin_base(resolved.local_dir, plugin)
            if base is None or (context.base_dir is not None and not is_path_safe(context.base_dir, base)):
                _skip_escaping(plugin, warnings)
                continue
            for skill in _scan_plugin(base, resolved.overrides):
                origin = SkillOrigin(
                    source=str(base),
                    source_type="local",
                    source_url=str(base),
                    skill_path=_skill_path(base, skill.path),
                )
                collected.append(MarketplaceSkill(skill=skill, plugin_name=plugin.name, origin=origin))
            continue

        repo = resolved.repo
        if repo is None:
            continue
        key = (repo.host, repo.project, repo.ref)
        if key not in clones:
            clones[key] = clone(repo.clone_url, repo.ref, registry=registry)
        clone_root = clones[key]
        repo_root = safe_join(clone_root, repo.path)
        base = _plugin_base(repo_root, plugin) if repo_root is not None else None
        if base is None or not is_path_safe(clone_root, base):
            _skip_escaping(plugin, warnings)
            continue
        for skill in _scan_plugin(base, resolved.overrides):
            origin = SkillOrigin(
                source=repo.project,
                source_type=repo.host,
                source_url=repo.clone_url,
                skill_path=_skill_path(clone_root, skill.path),
                ref=repo.ref,
            )
            collected.append(MarketplaceSkill(skill=skill, plugin_name=plugin.name, origin=origin))

    return collected, warnings
