from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path

from .agents import AgentConfig, Scope, agent_skills_dir
from .client import SkillportError, UnsupportedScopeError

AGENTS_DIR = ".agents"
SKILLS_SUBDIR = "skills"
UNNAMED_SKILL = "unnamed-skill"
MAX_NAME_LENGTH = 255

_UNSAFE_CHARS_RE = re.compile(r"[/\\:\x00]")
_EDGE_RE = re.compile(r"^[.\s]+|[.\s]+\Z")


@dataclass(frozen=True)
class InstallTargets:
    skill_name: str
    canonical_base: Path
    canonical_dir: Path
    agent_base: Path
    agent_dir: Path


def sanitize_name(raw: str) -> str:
    cleaned = _EDGE_RE.sub("", _UNSAFE_CHARS_RE.sub("", raw))
    # Truncation can expose a trailing dot or space, so trim once more.
    cleaned = _EDGE_RE.sub("", cleaned[:MAX_NAME_LENGTH])
    return cleaned or UNNAMED_SKILL


def is_path_safe(base: str | Path, candidate: str | Path) -> bool:
    base_n = os.path.normpath(os.path.abspath(base))
    candidate_n = os.path.normpath(os.path.abspath(candidate))
    if candidate_n == base_n:
        return True
    return candidate_n.startswith(base_n.rstrip(os.sep) + os.sep)


def safe_join(base: str | Path, rel: str | None) -> Path | None:
    """``base / rel``, or None when ``rel`` climbs out of ``base``."""
    base = Path(base)
    if not rel:
        return base
    joined = base / rel.replace("\\", "/").strip("/")
    return joined if is_path_safe(base, joined) else None


def scope_base(scope: Scope, *, cwd: Path | None = None, home: Path | None = None) -> Path:
    if scope == "global":
        return home if home is not None else Path.home()
    return cwd if cwd is not None else Path.cwd()


def canonical_skills_base(scope: Scope, *, cwd: Path | None = None, home: Path | None = None) -> Path:
    return scope_base(scope, cwd=cwd, home=home) / AGENTS_DIR / SKILLS_SUBDIR


def canonical_path(name: str, scope: Scope, *, cwd: Path | None = None, home: Path | None = None) -> Path:
    base = canonical_skills_base(scope, cwd=cwd, home=home)
    path = base / sanitize_name(name)
    if not is_path_safe(base, path):
        raise SkillportError("Invalid skill name: potential path traversal detected")
    return path


def install_targets(
    name: str,
    agent: AgentConfig,
    scope: Scope,
    *,
    cwd: Path | None = None,
    home: Path | None = None,
) -> InstallTargets:
    cwd_dir = cwd if cwd is not None else Path.cwd()
    home_dir = home if home is not None else Path.home()
    skill_name = sanitize_name(name)

    agent_base = agent_skills_dir(agent, scope, cwd=cwd_dir, home=home_dir)
    if agent_base is None:
        raise UnsupportedScopeError(f"Agent {agent.display_name} does not support global installation")

    canonical_base = canonical_skills_base(scope, cwd=cwd_dir, home=home_dir)
    return InstallTargets(
        skill_name=skill_name,
        canonical_base=canonical_base,
        canonical_dir=canonical_base / skill_name,
        agent_base=agent_base,
        agent_dir=agent_base / skill_name,
    )


def install_path(
    name: str,
    agent: AgentConfig,
    scope: Scope,
    *,
    cwd: Path | None = None,
    home: Path | None = None,
) -> Path:
    targets = install_targets(name, agent, scope, cwd=cwd, home=home)
    if not is_path_safe(targets.agent_base, targets.agent_dir):
        raise SkillportError("Invalid skill name: potential path traversal detected")
    return targets.agent_dir
