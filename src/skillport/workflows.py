from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from .agents import AGENTS, Scope, detect_installed_agents, get_agent
from .client import NotFoundError, SkillportError
from .config import Config
from .discovery import Skill
from .installer import InstallResult, find_skill_installations, install_skill, is_skill_installed, remove_path
from .paths import canonical_path, sanitize_name
from .remote_tree import GitHubTreeFetcher, fetch_skill_folder_hash
from .skill_lock import SkillLockStore, SkillOrigin

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchInstallResult:
    skill: str
    agent: str
    result: InstallResult
    replaced: bool = False  # the agent already had a copy before this install

    @property
    def agent_display_name(self) -> str:
        return AGENTS[self.agent].display_name if self.agent in AGENTS else self.agent


@dataclass
class InstallOutcome:
    results: list[BatchInstallResult] = field(default_factory=list)

    @property
    def successful(self) -> list[BatchInstallResult]:
        return [r for r in self.results if r.result.success]

    @property
    def failed(self) -> list[BatchInstallResult]:
        return [r for r in self.results if not r.result.success]

    @property
    def symlink_failures(self) -> list[BatchInstallResult]:
        return [r for r in self.successful if r.result.mode == "symlink" and r.result.symlink_failed]


@dataclass(frozen=True)
class RemovalResult:
    name: str
    removed: tuple[Path, ...]
    lock_removed: bool


def select_agents(
    requested: Iterable[str] | None,
    *,
    lock_store: SkillLockStore,
    config: Config,
    home: Path | None = None,
) -> list[str]:
    """Explicit agents win, then the last selection, then config defaults, then what is installed."""
    explicit = [a for a in (requested or []) if a]
    if explicit:
        return [get_agent(a).name for a in dict.fromkeys(explicit)]

    for candidates in (lock_store.last_selected_agents(), list(config.default_agents)):
        known = [a for a in candidates if a in AGENTS]
        if known:
            return known

    detected = detect_installed_agents(home=home)
    if not detected:
        raise SkillportError("No agents detected; pass --agent to choose where to install")
    return detected


def record_install(
    skills: Iterable[Skill],
    outcome: InstallOutcome,
    *,
    origins: dict[str, SkillOrigin],
    lock_store: SkillLockStore,
    tree_fetcher: GitHubTreeFetcher | None = None,
) -> list[str]:
    """Write lock entries for skills installed to at least one agent. Returns the names recorded."""
    installed = {r.skill for r in outcome.successful}
    recorded: list[str] = []
    for skill in skills:
        if skill.name not in installed:
            continue
        origin = origins.get(skill.name)
        if origin is None:
            continue

        folder_hash = ""
        if tree_fetcher is not None and origin.source_type == "github" and origin.source and origin.skill_path:
            folder_hash = fetch_skill_folder_hash(tree_fetcher, origin.source, origin.skill_path) or ""

        try:
            lock_store.add_entry(skill.name, origin.to_entry(folder_hash))
        except OSError as e:
            logger.warning("Could not update %s: %s", lock_store.path, e)
            continue
        recorded.append(skill.name)
    return recorded


def perform_install(
    skills: list[Skill],
    agents: list[str],
    *,
    scope: Scope = "project",
    mode: str = "symlink",
    origins: dict[str, SkillOrigin] | None = None,
    lock_store: SkillLockStore | None = None,
    tree_fetcher: GitHubTreeFetcher | None = None,
    cwd: Path | None = None,
    home: Path | None = None,
) -> InstallOutcome:
    """
    Install every (skill, agent) pair in order.

    A failing pair never stops the rest of the batch. Lock entries are written for
    skills that landed for at least one agent.
    """
    outcome = InstallOutcome()
    for skill in skills:
        for agent in agents:
            replaced = is_skill_installed(skill.name, agent, scope=scope, cwd=cwd, home=home)
            result = install_skill(skill, agent, scope=scope, mode=mode, cwd=cwd, home=home)
            if not result.success:
                logger.debug("Install of %s for %s failed: %s", skill.name, agent, result.error)
            outcome.results.append(
                BatchInstallResult(skill=skill.name, agent=agent, result=result, replaced=replaced)
            )

    if lock_store is not None and origins and outcome.successful:
        record_install(skills, outcome, origins=origins, lock_store=lock_store, tree_fetcher=tree_fetcher)
    return outcome


def _lock_keys_for(name: str, lock_store: SkillLockStore) -> list[str]:
    slug = sanitize_name(name).lower()
    return [key for key in lock_store.all_entries() if key == name or sanitize_name(key).lower() == slug]


def remove_skill(
    name: str,
    *,
    scope: Scope = "project",
    agents: Iterable[str] | None = None,
    lock_store: SkillLockStore | None = None,
    cwd: Path | None = None,
    home: Path | None = None,
) -> RemovalResult:
    """
    Remove a skill from the given agents (all of them when ``agents`` is None).

    The canonical copy and the lock entry go once no agent-facing copy is left.
    """
    canonical = canonical_path(name, scope, cwd=cwd, home=home)
    installs = find_skill_installations(name, scope, cwd=cwd, home=home)
    selected = {get_agent(a).name for a in agents} if agents else None

    if not installs and not canonical.exists():
        raise NotFoundError(f"Skill {name!r} is not installed ({scope})")

    removed: list[Path] = []
    for install in installs:
        if install.path == canonical:
            continue
        if selected is not None and install.agent not in selected:
            continue
        remove_path(install.path)
        removed.append(install.path)

    remaining = [i for i in find_skill_installations(name, scope, cwd=cwd, home=home) if i.path != canonical]
    lock_removed = False
    if not remaining:
        if canonical.is_symlink() or canonical.exists():
            remove_path(canonical)
            removed.append(canonical)
        store = lock_store or SkillLockStore(scope, cwd=cwd, home=home)
        for key in _lock_keys_for(name, store):
            lock_removed = store.remove_entry(key) or lock_removed

    return RemovalResult(name=name, removed=tuple(removed), lock_removed=lock_removed)
