from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from .agents import AGENTS, AgentConfig, Scope, agent_skills_dir, get_agent
from .client import SkillportError
from .discovery import Skill, parse_front_matter
from .paths import canonical_path, install_path, install_targets, is_path_safe
from .source_parser import MANIFEST_FILENAME
from .temp_registry import best_effort

logger = logging.getLogger(__name__)

EXCLUDED_FILES = frozenset({"README.md", "metadata.json"})
INSTALL_MODES = ("symlink", "copy")

_TRAVERSAL_ERROR = "Invalid skill name: potential path traversal detected"


@dataclass(frozen=True)
class InstallResult:
    success: bool
    path: Path | None
    mode: str
    canonical_path: Path | None = None
    symlink_failed: bool = False
    error: str | None = None


@dataclass(frozen=True)
class SkillInstallation:
    agent: str
    scope: Scope
    path: Path
    is_symlink: bool


@dataclass(frozen=True)
class InstalledSkill:
    slug: str
    name: str
    description: str | None
    agent: str
    scope: Scope
    path: Path
    is_symlink: bool
    is_broken: bool = False


def is_excluded(name: str) -> bool:
    return name in EXCLUDED_FILES or name.startswith("_")


def _ignore_excluded(_directory: str, names: list[str]) -> set[str]:
    return {n for n in names if is_excluded(n)}


def copy_skill_directory(src: str | Path, dest: str | Path) -> None:
    """Copy a bundle's files into ``dest``, leaving out readme/metadata and ``_``-prefixed names."""
    dest_p = Path(dest)
    dest_p.mkdir(parents=True, exist_ok=True)
    shutil.copytree(Path(src), dest_p, ignore=_ignore_excluded, dirs_exist_ok=True)


def remove_path(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.exists():
        shutil.rmtree(path)


def _same_location(a: Path, b: Path) -> bool:
    return os.path.realpath(a) == os.path.realpath(b)


def replace_directory(src: Path, dest: Path) -> None:
    """Make ``dest`` a fresh copy of ``src``; a symlink at ``dest`` is replaced, not written through."""
    if dest.is_symlink():
        dest.unlink()
    elif dest.exists():
        if _same_location(src, dest):
            return
        shutil.rmtree(dest)
    copy_skill_directory(src, dest)


def create_symlink(target: str | Path, link_path: str | Path) -> bool:
    """
    Point ``link_path`` at ``target`` with a relative symlink.

    An existing link to the same target is left alone; anything else at ``link_path``
    is removed first. Returns False when the link cannot be made.
    """
    target_p = Path(target)
    link = Path(link_path)
    try:
        if link.is_symlink():
            existing = os.readlink(link)
            if os.path.realpath(link.parent / existing) == os.path.realpath(target_p):
                return True
            link.unlink()
        elif link.exists():
            remove_path(link)

        link.parent.mkdir(parents=True, exist_ok=True)
        rel = os.path.relpath(os.path.realpath(target_p), os.path.realpath(link.parent))
        os.symlink(rel, link, target_is_directory=True)
        return True
    except OSError as e:
        logger.debug("Could not link %s -> %s: %s", link, target_p, e)
        return False


def _resolve_agent(agent: str | AgentConfig) -> AgentConfig:
    return agent if isinstance(agent, AgentConfig) else get_agent(agent)


def install_skill(
    skill: Skill,
    agent: str | AgentConfig,
    *,
    scope: Scope = "project",
    mode: str = "symlink",
    cwd: Path | None = None,
    home: Path | None = None,
) -> InstallResult:
    """
    Materialise one skill for one agent.

    Never raises for filesystem or validation problems; they come back in ``error``.
    """
    if mode not in INSTALL_MODES:
        return InstallResult(success=False, path=None, mode=mode, error=f"Unknown install mode: {mode}")
    try:
        cfg = _resolve_agent(agent)
    except SkillportError as e:
        return InstallResult(success=False, path=None, mode=mode, error=str(e))

    if scope == "global" and not cfg.supports_global:
        return InstallResult(
            success=False,
            path=None,
            mode=mode,
            error=f"Agent {cfg.display_name} does not support global installation",
        )

    raw_name = skill.name or skill.path.name
    try:
        targets = install_targets(raw_name, cfg, scope, cwd=cwd, home=home)
    except SkillportError as e:
        return InstallResult(success=False, path=None, mode=mode, error=str(e))

    if not is_path_safe(targets.canonical_base, targets.canonical_dir) or not is_path_safe(
        targets.agent_base, targets.agent_dir
    ):
        return InstallResult(success=False, path=targets.agent_dir, mode=mode, error=_TRAVERSAL_ERROR)

    src = Path(skill.path)
    try:
        if mode == "copy":
            replace_directory(src, targets.agent_dir)
            return InstallResult(success=True, path=targets.agent_dir, mode="copy")

        replace_directory(src, targets.canonical_dir)
        if targets.agent_dir == targets.canonical_dir:
            return InstallResult(
                success=True,
                path=targets.agent_dir,
                mode="symlink",
                canonical_path=targets.canonical_dir,
            )

        if not create_symlink(targets.canonical_dir, targets.agent_dir):
            logger.warning(
                "Symlink failed for %s (%s); falling back to a copy", targets.skill_name, cfg.name
            )
            with best_effort(f"clearing {targets.agent_dir}"):
                remove_path(targets.agent_dir)
            copy_skill_directory(src, targets.agent_dir)
            return InstallResult(
                success=True,
                path=targets.agent_dir,
                mode="symlink",
                canonical_path=targets.canonical_dir,
                symlink_failed=True,
            )

        return InstallResult(
            success=True,
            path=targets.agent_dir,
            mode="symlink",
            canonical_path=targets.canonical_dir,
        )
    except (OSError, shutil.Error) as e:
        return InstallResult(success=False, path=targets.agent_dir, mode=mode, error=str(e))


def is_skill_installed(
    name: str,
    agent: str | AgentConfig,
    *,
    scope: Scope = "project",
    cwd: Path | None = None,
    home: Path | None = None,
) -> bool:
    try:
        skill_dir = install_path(name, _resolve_agent(agent), scope, cwd=cwd, home=home)
    except SkillportError:
        return False
    return skill_dir.is_symlink() or skill_dir.exists()


def find_skill_installations(
    name: str,
    scope: Scope,
    *,
    cwd: Path | None = None,
    home: Path | None = None,
) -> list[SkillInstallation]:
    """Every agent-facing location (deduplicated by path) where ``name`` is present in ``scope``."""
    slug = canonical_path(name, scope, cwd=cwd, home=home).name
    cwd_dir = cwd or Path.cwd()
    home_dir = home or Path.home()

    found: list[SkillInstallation] = []
    seen: set[Path] = set()
    for cfg in AGENTS.values():
        base = agent_skills_dir(cfg, scope, cwd=cwd_dir, home=home_dir)
        if base is None:
            continue
        skill_dir = base / slug
        if skill_dir in seen:
            continue
        if skill_dir.is_symlink() or skill_dir.exists():
            seen.add(skill_dir)
            found.append(
                SkillInstallation(agent=cfg.name, scope=scope, path=skill_dir, is_symlink=skill_dir.is_symlink())
            )
    return found


def _read_manifest_fields(skill_md: Path) -> tuple[str | None, str | None]:
    try:
        data = parse_front_matter(skill_md.read_text(encoding="utf-8")) or {}
    except (OSError, UnicodeDecodeError):
        return None, None
    name = data.get("name")
    description = data.get("description")
    return (
        name if isinstance(name, str) else None,
        description if isinstance(description, str) else None,
    )


def list_agent_skills(
    agent: str | AgentConfig,
    scope: Scope,
    *,
    cwd: Path | None = None,
    home: Path | None = None,
) -> list[InstalledSkill]:
    cfg = _resolve_agent(agent)
    base = agent_skills_dir(cfg, scope, cwd=cwd or Path.cwd(), home=home or Path.home())
    if base is None or not base.is_dir():
        return []

    skills: list[InstalledSkill] = []
    for entry in sorted(base.iterdir()):
        is_symlink = entry.is_symlink()
        if not is_symlink and not entry.is_dir():
            continue
        if is_symlink and not entry.exists():
            skills.append(
                InstalledSkill(
                    slug=entry.name,
                    name=entry.name,
                    description="Broken link",
                    agent=cfg.name,
                    scope=scope,
                    path=entry,
                    is_symlink=True,
                    is_broken=True,
                )
            )
            continue
        skill_md = entry / MANIFEST_FILENAME
        if not skill_md.is_file():
            continue
        name, description = _read_manifest_fields(skill_md)
        skills.append(
            InstalledSkill(
                slug=entry.name,
                name=name or entry.name,
                description=description,
                agent=cfg.name,
                scope=scope,
                path=entry,
                is_symlink=is_symlink,
            )
        )
    return skills


def list_installed_skills(
    agents: Iterable[str],
    scopes: Iterable[Scope],
    *,
    cwd: Path | None = None,
    home: Path | None = None,
) -> list[InstalledSkill]:
    scope_list = list(scopes)
    out: list[InstalledSkill] = []
    for agent in agents:
        for scope in scope_list:
            out.extend(list_agent_skills(agent, scope, cwd=cwd, home=home))
    return out
