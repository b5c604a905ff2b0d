"""Detect drift between installed skills and their origin, and re-sync the ones that moved."""

from __future__ import annotations

import logging
import posixpath
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Literal

from .agents import Scope
from .client import NotFoundError, SkillportClient, SkillportError
from .discovery import discover_skills, find_skill_by_name
from .git import clone_repo
from .installer import copy_skill_directory, find_skill_installations, remove_path
from .marketplace import CloneFn
from .paths import canonical_path, safe_join, sanitize_name
from .providers import ProviderRegistry, default_registry
from .remote_tree import GitHubTreeFetcher, RepoTreeResult, folder_hash
from .skill_lock import SkillLockEntry, SkillLockStore
from .source_parser import ARCHIVE_KINDS, MANIFEST_FILENAME, REPOSITORY_KINDS
from .temp_registry import TempRegistry, best_effort

logger = logging.getLogger(__name__)

UpdateStatus = Literal["unknown", "up-to-date", "needs-update"]

# Source kinds whose tree listing yields a folder fingerprint.
FINGERPRINT_KINDS = frozenset({"github"})
MAX_TREE_WORKERS = 8


@dataclass
class UpdateTarget:
    name: str
    entry: SkillLockEntry
    scope: Scope
    status: UpdateStatus | None = None
    latest_hash: str | None = None


@dataclass
class UpdateSummary:
    updated: list[UpdateTarget] = field(default_factory=list)
    skipped: list[UpdateTarget] = field(default_factory=list)
    failed: list[UpdateTarget] = field(default_factory=list)


def status_for(stored: str | None, latest: str | None) -> UpdateStatus:
    if not stored or not latest:
        return "unknown"
    return "up-to-date" if stored == latest else "needs-update"


class UpdateReconciler:
    def __init__(
        self,
        *,
        client: SkillportClient,
        registry: TempRegistry,
        tree_fetcher: GitHubTreeFetcher | None = None,
        providers: ProviderRegistry | None = None,
        clone: CloneFn = clone_repo,
        cwd: Path | None = None,
        home: Path | None = None,
    ) -> None:
        self.client = client
        self.registry = registry
        self.tree_fetcher = tree_fetcher or GitHubTreeFetcher(client)
        self.providers = providers or default_registry(client)
        self.clone = clone
        self.cwd = cwd
        self.home = home

    def lock_store(self, scope: Scope) -> SkillLockStore:
        return SkillLockStore(scope, cwd=self.cwd, home=self.home)

    def collect_update_targets(
        self, scopes: Iterable[Scope], names: Iterable[str] | None = None
    ) -> list[UpdateTarget]:
        """Tracked skills in ``scopes``, optionally only those named in ``names`` (case-insensitive)."""
        requested = list(names or [])
        wanted = {sanitize_name(n).lower() for n in requested}
        targets: list[UpdateTarget] = []
        for scope in scopes:
            for name, entry in self.lock_store(scope).all_entries().items():
                if wanted and sanitize_name(name).lower() not in wanted:
                    continue
                targets.append(UpdateTarget(name=name, entry=entry, scope=scope))
        if wanted:
            found = {sanitize_name(t.name).lower() for t in targets}
            missing = [n for n in requested if sanitize_name(n).lower() not in found]
            if missing:
                raise NotFoundError(f"Not tracked: {', '.join(missing)}")
        return targets

    def annotate_update_targets(self, targets: list[UpdateTarget]) -> tuple[list[UpdateTarget], bool]:
        """
        Set ``status``/``latest_hash`` on each target.

        One tree listing is fetched per distinct source, concurrently. A rate-limited
        source leaves its targets ``unknown`` and sets the returned flag.
        """
        grouped: dict[str, list[UpdateTarget]] = {}
        for target in targets:
            entry = target.entry
            if entry.source_type not in FINGERPRINT_KINDS or not entry.source or not entry.skill_path:
                target.status = "unknown"
                continue
            grouped.setdefault(entry.source, []).append(target)

        if not grouped:
            return targets, False

        sources = list(grouped)
        with ThreadPoolExecutor(max_workers=min(MAX_TREE_WORKERS, len(sources))) as pool:
            results: dict[str, RepoTreeResult] = dict(zip(sources, pool.map(self.tree_fetcher.fetch, sources)))

        rate_limited = False
        for source, group in grouped.items():
            result = results[source]
            rate_limited = rate_limited or result.rate_limited
            for target in group:
                if result.tree is None:
                    target.status = "unknown"
                    continue
                target.latest_hash = folder_hash(result.tree, target.entry.skill_path or "")
                target.status = status_for(target.entry.skill_folder_hash, target.latest_hash)
        return targets, rate_limited

    def update_skills(self, targets: Iterable[UpdateTarget]) -> UpdateSummary:
        summary = UpdateSummary()
        for target in targets:
            if target.status == "up-to-date":
                summary.skipped.append(target)
                continue
            try:
                applied = self._update_target(target)
            except (OSError, SkillportError) as e:
                logger.warning("Updating %s failed: %s", target.name, e)
                summary.failed.append(target)
                continue
            if not applied:
                summary.skipped.append(target)
                continue

            entry = target.entry
            fresh = SkillLockEntry(
                source=entry.source,
                source_type=entry.source_type,
                source_url=entry.source_url,
                skill_folder_hash=target.latest_hash or entry.skill_folder_hash,
                skill_path=entry.skill_path,
                ref=entry.ref,
            )
            self.lock_store(target.scope).add_entry(target.name, fresh)
            summary.updated.append(target)
        return summary

    def _update_target(self, target: UpdateTarget) -> bool:
        kind = target.entry.source_type
        if kind in ARCHIVE_KINDS:
            return False
        if kind in REPOSITORY_KINDS:
            return self._update_from_repo(target)
        return self._update_from_remote(target)

    def _update_from_repo(self, target: UpdateTarget) -> bool:
        entry = target.entry
        clone_root = self.clone(entry.source_url, entry.ref, registry=self.registry)
        try:
            source_dir: Path | None = None
            if entry.skill_path:
                rel_dir = posixpath.dirname(entry.skill_path.replace("\\", "/"))
                candidate = safe_join(clone_root, rel_dir)
                if candidate is not None and (candidate / MANIFEST_FILENAME).is_file():
                    source_dir = candidate
            if source_dir is None:
                match = find_skill_by_name(discover_skills(clone_root), target.name)
                if match is not None:
                    source_dir = match.path
            if source_dir is None:
                logger.debug("%s no longer found in %s", target.name, entry.source_url)
                return False
            return self.apply_update_from_dir(target.name, target.scope, source_dir)
        finally:
            with best_effort(f"removing clone {clone_root}"):
                self.registry.cleanup(clone_root)

    def _update_from_remote(self, target: UpdateTarget) -> bool:
        provider = self.providers.find(target.entry.source_url)
        if provider is None:
            logger.debug("No provider handles %s", target.entry.source_url)
            return False
        remote = provider.fetch_skill(target.entry.source_url)
        if remote is None:
            return False

        tmp = self.registry.make_dir(prefix="skillport-skill-")
        try:
            source_dir = remote.write_to(tmp / sanitize_name(remote.install_name))
            return self.apply_update_from_dir(target.name, target.scope, source_dir)
        finally:
            with best_effort(f"removing {tmp}"):
                self.registry.cleanup(tmp)

    def apply_update_from_dir(self, name: str, scope: Scope, source_dir: Path) -> bool:
        """
        Replace the canonical copy and every real (non-symlink) agent copy with ``source_dir``.

        Returns False when the skill is not installed anywhere in ``scope``.
        """
        canonical = canonical_path(name, scope, cwd=self.cwd, home=self.home)
        installs = find_skill_installations(name, scope, cwd=self.cwd, home=self.home)
        canonical_exists = canonical.exists()
        if not canonical_exists and not installs:
            return False

        if canonical_exists or any(i.is_symlink for i in installs):
            if canonical.is_symlink() or canonical.exists():
                remove_path(canonical)
            copy_skill_directory(source_dir, canonical)

        for install in installs:
            if install.is_symlink or install.path == canonical:
                continue
            remove_path(install.path)
            copy_skill_directory(source_dir, install.path)
        return True
