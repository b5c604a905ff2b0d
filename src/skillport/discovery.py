"""SKILL.md parsing and skill bundle discovery inside a source tree."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

import yaml

from .client import SkillportError
from .config import include_internal_skills
from .paths import safe_join
from .source_parser import MANIFEST_FILENAME

logger = logging.getLogger(__name__)

MAX_SCAN_DEPTH = 5

# Never descended into while walking a root.
SKIP_DIRS = frozenset({"node_modules", ".git", ".github", "dist", "build", "__pycache__"})

# Any path segment matching one of these disqualifies a bundle.
DENIED_SEGMENTS = frozenset(
    {
        ".git",
        "node_modules",
        ".github",
        "playbooks",
        "context",
        "prompts",
        "backups",
        "backup",
        "dist",
        "deprecated",
    }
)
ALLOWED_SEGMENT = ".claude-plugin"

MARKETPLACE_FILE = Path(".claude-plugin") / "marketplace.json"

# Per-tool skill directories that commonly ship inside repositories.
AGENT_SKILL_ROOTS = (
    ".adal/skills",
    ".agent/skills",
    ".agents/skills",
    ".augment/rules",
    ".claude/skills",
    ".cline/skills",
    ".codebuddy/skills",
    ".codex/skills",
    ".commandcode/skills",
    ".continue/skills",
    ".crush/skills",
    ".cursor/skills",
    ".factory/skills",
    ".gemini/skills",
    ".github/skills",
    ".goose/skills",
    ".iflow/skills",
    ".junie/skills",
    ".kilocode/skills",
    ".kiro/skills",
    ".kode/skills",
    ".mcpjam/skills",
    ".mux/skills",
    ".neovate/skills",
    ".openclaude/skills",
    ".opencode/skills",
    ".openhands/skills",
    ".pi/skills",
    ".pochi/skills",
    ".qoder/skills",
    ".qwen/skills",
    ".roo/skills",
    ".trae/skills",
    ".vibe/skills",
    ".windsurf/skills",
    ".zencoder/skills",
)


@dataclass(frozen=True)
class Skill:
    name: str
    description: str
    path: Path  # directory holding SKILL.md
    raw_content: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def slug(self) -> str:
        return self.path.name.lower()


def split_front_matter(text: str) -> tuple[str, str] | None:
    """
    Return ``(yaml_text, body)`` for content starting with a ``---`` block.

    Only the first pair of markers is used, so horizontal rules in the body survive.
    """
    stripped = text.lstrip("\ufeff").lstrip()
    if not stripped.startswith("---"):
        return None
    lines = stripped.split("\n")
    for i, line in enumerate(lines[1:], start=1):
        if line.strip() == "---":
            return "\n".join(lines[1:i]), "\n".join(lines[i + 1 :])
    return None


def parse_front_matter(text: str) -> dict[str, Any] | None:
    parts = split_front_matter(text)
    if parts is None:
        return None
    try:
        data = yaml.safe_load(parts[0])
    except yaml.YAMLError as e:
        logger.debug("Invalid YAML front matter: %s", e)
        return None
    return data if isinstance(data, dict) else None


def parse_skill_md(path: str | Path) -> Skill | None:
    """Parse a SKILL.md file; ``None`` when it is unreadable or lacks a name or description."""
    p = Path(path)
    try:
        content = p.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None

    data = parse_front_matter(content)
    if data is None:
        return None

    name = data.get("name")
    description = data.get("description")
    if not name or not description:
        return None
    metadata = data.get("metadata")
    return Skill(
        name=str(name).strip(),
        description=str(description).strip(),
        path=p.parent,
        raw_content=content,
        metadata=metadata if isinstance(metadata, dict) else {},
    )


def is_denied_path(relative: str | Path) -> bool:
    for segment in Path(relative).parts:
        seg = segment.lower()
        if not seg or seg == ALLOWED_SEGMENT:
            continue
        if seg in DENIED_SEGMENTS:
            return True
    return False


def is_internal_skill(skill: Skill) -> bool:
    internal = skill.metadata.get("internal")
    return internal is True or internal in ("true", "1")


def filter_internal_skills(skills: Iterable[Skill]) -> list[Skill]:
    if include_internal_skills():
        return list(skills)
    return [s for s in skills if not is_internal_skill(s)]


class _Scanner:
    def __init__(self, search_root: Path) -> None:
        self.search_root = search_root
        self.skills: list[Skill] = []
        self._seen: set[str] = set()

    def _relative(self, path: Path) -> Path:
        try:
            return path.relative_to(self.search_root)
        except ValueError:
            return path

    def _has_manifest(self, directory: Path) -> bool:
        return (directory / MANIFEST_FILENAME).is_file()

    def find_skill_dirs(self, directory: Path, depth: int = 0) -> list[Path]:
        if depth > MAX_SCAN_DEPTH or is_denied_path(self._relative(directory)):
            return []
        found: list[Path] = []
        if self._has_manifest(directory):
            found.append(directory)
        try:
            entries = sorted(os.scandir(directory), key=lambda e: e.name)
        except OSError:
            return found
        for entry in entries:
            if entry.name in SKIP_DIRS:
                continue
            try:
                is_dir = entry.is_dir()
            except OSError:
                continue
            if is_dir:
                found.extend(self.find_skill_dirs(Path(entry.path), depth + 1))
        return found

    def collect(self, root: Path) -> None:
        if not root.is_dir() or is_denied_path(self._relative(root)):
            return
        logger.debug("Scanning %s", root)
        for skill_dir in self.find_skill_dirs(root):
            self.add(skill_dir)

    def add(self, skill_dir: Path) -> None:
        skill = parse_skill_md(skill_dir / MANIFEST_FILENAME)
        if skill is None:
            logger.debug("Skipping %s: missing name or description", skill_dir)
            return
        if skill.slug in self._seen:
            return
        self._seen.add(skill.slug)
        self.skills.append(skill)


def _normalize_root(value: str) -> str:
    cleaned = value.strip().lstrip("/")
    if cleaned.startswith("./"):
        cleaned = cleaned[2:]
    return cleaned.strip("/")


def marketplace_plugin_roots(search_root: Path) -> list[str]:
    path = search_root / MARKETPLACE_FILE
    if not path.is_file():
        return []
    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError):
        return []
    plugins = parsed.get("plugins") if isinstance(parsed, dict) else None
    if not isinstance(plugins, list):
        return []
    roots = []
    for plugin in plugins:
        source = plugin.get("source") if isinstance(plugin, dict) else None
        if isinstance(source, str) and (root := _normalize_root(source)):
            roots.append(root)
    return roots


def plugin_skill_roots(search_root: Path) -> list[Path]:
    plugins_dir = search_root / "plugins"
    if not plugins_dir.is_dir():
        return []
    try:
        entries = sorted(p for p in plugins_dir.iterdir() if p.is_dir())
    except OSError:
        return []
    return [p / "skills" for p in entries if (p / "skills").is_dir()]


def candidate_roots(search_root: Path) -> list[Path]:
    roots: list[Path] = []
    for root in marketplace_plugin_roots(search_root):
        skills_root = root if root.lower().endswith("/skills") or root.lower() == "skills" else f"{root}/skills"
        candidate = safe_join(search_root, skills_root)
        if candidate is not None:
            roots.append(candidate)
    roots.append(search_root / "skills")
    roots.append(search_root / "skill-packs")
    roots.extend(plugin_skill_roots(search_root))
    roots.append(search_root / ".claude-plugin")
    roots.extend(search_root / r for r in AGENT_SKILL_ROOTS)
    return roots


def discover_skills(root: str | Path, subpath: str | None = None) -> list[Skill]:
    """
    Find every skill bundle under ``root`` (or ``root/subpath``).

    A directory that itself holds a valid SKILL.md is returned alone. Otherwise the
    well-known roots are scanned in priority order, falling back to a full scan.
    Results are de-duplicated by lower-cased directory name; first match wins.
    """
    search_root = safe_join(root, subpath)
    if search_root is None:
        raise SkillportError(f"Invalid subpath {subpath!r}: it points outside of {root}")

    if (search_root / MANIFEST_FILENAME).is_file():
        direct = parse_skill_md(search_root / MANIFEST_FILENAME)
        if direct is not None:
            return filter_internal_skills([direct])

    scanner = _Scanner(search_root)
    for candidate in candidate_roots(search_root):
        scanner.collect(candidate)

    if not scanner.skills:
        logger.debug("No skills under known roots of %s; scanning everything", search_root)
        for skill_dir in scanner.find_skill_dirs(search_root):
            scanner.add(skill_dir)

    return filter_internal_skills(scanner.skills)


def find_skill_by_name(skills: Iterable[Skill], name: str) -> Skill | None:
    wanted = name.lower()
    for skill in skills:
        if skill.name.lower() == wanted or skill.slug == wanted:
            return skill
    return None
