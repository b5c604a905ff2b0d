"""Turn a classified origin into discovered skill bundles plus per-skill provenance."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from .archive import download_archive, extract_archive
from .client import NotFoundError, SkillportClient, SkillportError
from .discovery import Skill, discover_skills, filter_internal_skills
from .git import clone_repo
from .marketplace import (
    CloneFn,
    MarketplacePlugin,
    collect_marketplace_skills,
    is_marketplace_source,
    load_marketplace,
    normalize_plugins,
)
from .paths import sanitize_name
from .providers import ProviderRegistry, RemoteSkill, WellKnownProvider, default_registry
from .skill_lock import SkillOrigin
from .source_parser import MANIFEST_FILENAME, Origin, owner_repo, parse_source
from .temp_registry import TempRegistry

logger = logging.getLogger(__name__)


@dataclass
class PreparedSource:
    origin: Origin
    skills: list[Skill]
    origins: dict[str, SkillOrigin]  # keyed by skill name
    warnings: list[str] = field(default_factory=list)
    plugins: list[MarketplacePlugin] = field(default_factory=list)

    def select(self, names: list[str] | None) -> list[Skill]:
        """Pick skills by name (case-insensitive); ``None`` or ``["*"]`` selects everything."""
        if not names or "*" in names:
            return list(self.skills)
        wanted = {n.lower() for n in names}
        chosen = [s for s in self.skills if s.name.lower() in wanted or s.slug in wanted]
        found = {s.name.lower() for s in chosen} | {s.slug for s in chosen}
        missing = sorted(n for n in names if n.lower() not in found)
        if missing:
            available = ", ".join(s.name for s in self.skills)
            raise NotFoundError(f"No skill named {', '.join(missing)}. Available: {available}")
        return chosen


def _relative_manifest_path(root: Path, skill_dir: Path) -> str | None:
    try:
        rel = skill_dir.relative_to(root).as_posix()
    except ValueError:
        return None
    return MANIFEST_FILENAME if rel in ("", ".") else f"{rel}/{MANIFEST_FILENAME}"


def _remote_to_skill(remote: RemoteSkill, dest: Path) -> Skill:
    remote.write_to(dest)
    return Skill(
        name=remote.install_name,
        description=remote.description,
        path=dest,
        raw_content=remote.content,
        metadata=remote.metadata,
    )


class SourcePreparer:
    """
    Fetches and discovers skills for every origin kind.

    All temporary directories come from the injected registry; the caller owns teardown.
    """

    def __init__(
        self,
        *,
        client: SkillportClient,
        registry: TempRegistry,
        providers: ProviderRegistry | None = None,
        clone: CloneFn = clone_repo,
    ) -> None:
        self.client = client
        self.registry = registry
        self.providers = providers or default_registry(client)
        self.clone = clone

    def classify(self, source: str) -> Origin:
        if is_marketplace_source(source):
            return Origin(kind="marketplace", url=source)
        return parse_source(source)

    def prepare(self, origin: Origin) -> PreparedSource:
        handler = {
            "local": self._prepare_local,
            "zip": self._prepare_zip,
            "github": self._prepare_repository,
            "gitlab": self._prepare_repository,
            "git": self._prepare_repository,
            "direct-url": self._prepare_direct,
            "well-known": self._prepare_well_known,
            "marketplace": self._prepare_marketplace,
        }.get(origin.kind)
        if handler is None:
            raise SkillportError(f"Unsupported source kind: {origin.kind}")

        prepared = handler(origin)
        if not prepared.skills:
            raise NotFoundError(f"No valid skills found in {origin.url}. Need a SKILL.md with name and description.")
        logger.debug("Prepared %d skill(s) from %s", len(prepared.skills), origin.url)
        return prepared

    def _prepare_local(self, origin: Origin) -> PreparedSource:
        root = Path(origin.local_path or origin.url)
        if not root.exists():
            raise NotFoundError(f"Local path does not exist: {root}")
        skills = discover_skills(root, origin.subpath)
        origins = {
            s.name: SkillOrigin(
                source=str(root),
                source_type="local",
                source_url=str(root),
                skill_path=_relative_manifest_path(root, s.path),
            )
            for s in skills
        }
        return PreparedSource(origin=origin, skills=skills, origins=origins)

    def _prepare_zip(self, origin: Origin) -> PreparedSource:
        tmp = self.registry.make_dir(prefix="skillport-zip-")
        if origin.local_path:
            archive = Path(origin.local_path)
            if not archive.is_file():
                raise NotFoundError(f"Zip file not found: {archive}")
        else:
            archive = download_archive(origin.url, tmp / "skills.zip", self.client)

        extracted = extract_archive(archive, tmp / "extracted")
        skills = discover_skills(extracted)
        origins = {
            s.name: SkillOrigin(
                source=origin.url,
                source_type="zip",
                source_url=origin.url,
                skill_path=_relative_manifest_path(extracted, s.path),
            )
            for s in skills
        }
        return PreparedSource(origin=origin, skills=skills, origins=origins)

    def _prepare_repository(self, origin: Origin) -> PreparedSource:
        clone_root = self.clone(origin.url, origin.ref, registry=self.registry)
        skills = discover_skills(clone_root, origin.subpath)
        source = owner_repo(origin) or origin.url
        origins = {
            s.name: SkillOrigin(
                source=source,
                source_type=origin.kind,
                source_url=origin.url,
                skill_path=_relative_manifest_path(clone_root, s.path),
                ref=origin.ref,
            )
            for s in skills
        }
        return PreparedSource(origin=origin, skills=skills, origins=origins)

    def _prepare_direct(self, origin: Origin) -> PreparedSource:
        for provider in self.providers.providers:
            if not provider.match(origin.url):
                continue
            remote = provider.fetch_skill(origin.url)
            if remote is None:
                continue
            tmp = self.registry.make_dir(prefix="skillport-skill-")
            skill = _remote_to_skill(remote, tmp / sanitize_name(remote.install_name))
            skill_origin = SkillOrigin(
                source=provider.source_identifier(origin.url),
                source_type=provider.id,
                source_url=origin.url,
                skill_path=MANIFEST_FILENAME,
            )
            skills = filter_internal_skills([skill])
            return PreparedSource(
                origin=origin,
                skills=skills,
                origins={s.name: skill_origin for s in skills},
            )
        raise NotFoundError(f"Unable to fetch SKILL.md from {origin.url}")

    def _well_known_provider(self) -> WellKnownProvider:
        provider = self.providers.get("well-known")
        if isinstance(provider, WellKnownProvider):
            return provider
        return WellKnownProvider(self.client)

    def _prepare_well_known(self, origin: Origin) -> PreparedSource:
        provider = self._well_known_provider()
        remotes = provider.fetch_all_skills(origin.url)
        if not remotes:
            raise NotFoundError(
                f"No skills found at {origin.url}. Make sure it exposes /.well-known/skills/index.json."
            )

        tmp = self.registry.make_dir(prefix="skillport-skill-")
        identifier = provider.source_identifier(origin.url)
        skills: list[Skill] = []
        origins: dict[str, SkillOrigin] = {}
        for remote in remotes:
            skill = _remote_to_skill(remote, tmp / sanitize_name(remote.install_name))
            skills.append(skill)
            origins[skill.name] = SkillOrigin(
                source=identifier,
                source_type="well-known",
                source_url=remote.source_url,
                skill_path=remote.source_url,
            )
        skills = filter_internal_skills(skills)
        return PreparedSource(
            origin=origin,
            skills=skills,
            origins={s.name: origins[s.name] for s in skills},
        )

    def _prepare_marketplace(self, origin: Origin) -> PreparedSource:
        data, context = load_marketplace(origin.url, origin.ref, client=self.client)
        plugins = normalize_plugins(data)
        collected, warnings = collect_marketplace_skills(
            plugins, context, registry=self.registry, clone=self.clone
        )

        skills: list[Skill] = []
        origins: dict[str, SkillOrigin] = {}
        seen: set[str] = set()
        for entry in collected:
            if entry.skill.slug in seen:
                continue
            seen.add(entry.skill.slug)
            skills.append(entry.skill)
            origins[entry.skill.name] = entry.origin
        return PreparedSource(origin=origin, skills=skills, origins=origins, warnings=warnings, plugins=plugins)
