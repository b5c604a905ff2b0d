from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import urlsplit

from .client import SkillportClient, SkillportError
from .discovery import parse_front_matter
from .paths import is_path_safe
from .source_parser import MANIFEST_FILENAME

logger = logging.getLogger(__name__)

WELL_KNOWN_PATH = ".well-known/skills"
INDEX_FILE = "index.json"
MAX_FETCH_WORKERS = 8

_SKILL_MD_IN_INDEX_RE = re.compile(r"^(.*)/\.well-known/skills/([^/]+)/SKILL\.md$", re.IGNORECASE)
_SKILL_DIR_IN_INDEX_RE = re.compile(r"/\.well-known/skills/([^/]+)/?$")


@dataclass(frozen=True)
class RemoteSkill:
    name: str
    description: str
    content: str
    install_name: str
    source_url: str
    metadata: dict[str, Any] = field(default_factory=dict)
    files: dict[str, str] = field(default_factory=dict)  # relative path -> text, includes SKILL.md

    def write_to(self, dest: Path) -> Path:
        """Materialise the bundle below ``dest``; paths escaping it are skipped."""
        dest.mkdir(parents=True, exist_ok=True)
        files = self.files or {MANIFEST_FILENAME: self.content}
        for rel, text in files.items():
            target = dest / rel
            if not is_path_safe(dest, target):
                logger.warning("Skipping unsafe file path %r in %s", rel, self.name)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(text, encoding="utf-8")
        return dest


@dataclass(frozen=True)
class IndexEntry:
    name: str
    description: str
    files: tuple[str, ...]


class HostProvider(Protocol):
    id: str
    display_name: str

    def match(self, url: str) -> bool: ...

    def fetch_skill(self, url: str) -> RemoteSkill | None: ...

    def source_identifier(self, url: str) -> str: ...


def _is_http_url(url: str) -> bool:
    return url.startswith(("http://", "https://"))


def _manifest_fields(content: str) -> tuple[str, str, dict[str, Any]] | None:
    data = parse_front_matter(content)
    if not data or not data.get("name") or not data.get("description"):
        return None
    metadata = data.get("metadata")
    return str(data["name"]), str(data["description"]), metadata if isinstance(metadata, dict) else {}


class RawSkillProvider:
    """A single SKILL.md served at a direct URL."""

    id = "raw"
    display_name = "Direct URL"

    def __init__(self, client: SkillportClient) -> None:
        self.client = client

    def match(self, url: str) -> bool:
        return _is_http_url(url) and url.lower().endswith("/skill.md")

    def fetch_skill(self, url: str) -> RemoteSkill | None:
        try:
            content = self.client.get_text(url)
        except SkillportError as e:
            logger.debug("Fetching %s failed: %s", url, e)
            return None
        fields = _manifest_fields(content)
        if fields is None:
            return None
        name, description, metadata = fields
        return RemoteSkill(
            name=name,
            description=description,
            content=content,
            install_name=name,
            source_url=url,
            metadata=metadata,
            files={MANIFEST_FILENAME: content},
        )

    def source_identifier(self, url: str) -> str:
        parts = urlsplit(url)
        if not parts.hostname:
            return f"raw/{url}"
        return f"raw/{parts.hostname}{parts.path}"


def _is_valid_entry(entry: Any) -> bool:
    if not isinstance(entry, dict):
        return False
    name, description, files = entry.get("name"), entry.get("description"), entry.get("files")
    if not isinstance(name, str) or not name:
        return False
    if not isinstance(description, str) or not description:
        return False
    if not isinstance(files, list) or not files:
        return False
    manifests = 0
    for f in files:
        if not isinstance(f, str):
            return False
        if f.startswith(("/", "\\")) or ".." in f:
            return False
        if f.lower() == MANIFEST_FILENAME.lower():
            manifests += 1
    return manifests == 1


class WellKnownProvider:
    """Skills published under ``<site>/.well-known/skills/`` with an ``index.json`` listing."""

    id = "well-known"
    display_name = "Well-Known Skills"

    def __init__(self, client: SkillportClient) -> None:
        self.client = client

    def match(self, url: str) -> bool:
        return _is_http_url(url) and f"/{WELL_KNOWN_PATH}/" in url

    def _index_candidates(self, base_url: str) -> list[tuple[str, str]]:
        parts = urlsplit(base_url)
        origin = f"{parts.scheme}://{parts.netloc}"
        base_path = parts.path.rstrip("/")
        candidates = [(f"{origin}{base_path}/{WELL_KNOWN_PATH}/{INDEX_FILE}", f"{origin}{base_path}")]
        if base_path:
            candidates.append((f"{origin}/{WELL_KNOWN_PATH}/{INDEX_FILE}", origin))
        return candidates

    def fetch_index(self, base_url: str) -> tuple[list[IndexEntry], str] | None:
        """Return the index entries and the base URL the index was found under."""
        for index_url, resolved_base in self._index_candidates(base_url):
            try:
                raw = self.client.get_json(index_url)
            except SkillportError as e:
                logger.debug("No skills index at %s: %s", index_url, e)
                continue
            skills = raw.get("skills") if isinstance(raw, dict) else None
            if not isinstance(skills, list):
                continue
            if not all(_is_valid_entry(e) for e in skills):
                logger.debug("Rejecting skills index at %s: invalid entry", index_url)
                continue
            entries = [IndexEntry(name=e["name"], description=e["description"], files=tuple(e["files"])) for e in skills]
            return entries, resolved_base
        return None

    def _fetch_file(self, url: str) -> str | None:
        try:
            return self.client.get_text(url)
        except SkillportError as e:
            logger.debug("Skipping %s: %s", url, e)
            return None

    def fetch_skill_by_entry(self, base_url: str, entry: IndexEntry) -> RemoteSkill | None:
        skill_base = f"{base_url.rstrip('/')}/{WELL_KNOWN_PATH}/{entry.name}"
        skill_md_url = f"{skill_base}/{MANIFEST_FILENAME}"
        content = self._fetch_file(skill_md_url)
        if content is None:
            return None
        fields = _manifest_fields(content)
        if fields is None:
            return None
        name, description, metadata = fields

        others = [f for f in entry.files if f.lower() != MANIFEST_FILENAME.lower()]
        files = {MANIFEST_FILENAME: content}
        if others:
            with ThreadPoolExecutor(max_workers=min(MAX_FETCH_WORKERS, len(others))) as pool:
                results = pool.map(lambda rel: (rel, self._fetch_file(f"{skill_base}/{rel}")), others)
                for rel, text in results:
                    if text is not None:
                        files[rel] = text

        return RemoteSkill(
            name=name,
            description=description,
            content=content,
            install_name=entry.name,
            source_url=skill_md_url,
            metadata=metadata,
            files=files,
        )

    def fetch_all_skills(self, url: str) -> list[RemoteSkill]:
        found = self.fetch_index(url)
        if found is None:
            return []
        entries, base = found
        skills = []
        for entry in entries:
            skill = self.fetch_skill_by_entry(base, entry)
            if skill is not None:
                skills.append(skill)
        return skills

    def fetch_skill(self, url: str) -> RemoteSkill | None:
        parts = urlsplit(url)
        origin = f"{parts.scheme}://{parts.netloc}"

        m = _SKILL_MD_IN_INDEX_RE.match(parts.path)
        if m:
            found = self.fetch_index(f"{origin}{m.group(1)}")
            if found is not None:
                entries, base = found
                for entry in entries:
                    if entry.name == m.group(2):
                        skill = self.fetch_skill_by_entry(base, entry)
                        if skill is not None:
                            return skill

        found = self.fetch_index(url)
        if found is None:
            return None
        entries, base = found

        wanted: str | None = None
        dm = _SKILL_DIR_IN_INDEX_RE.search(parts.path)
        if dm and dm.group(1) != INDEX_FILE:
            wanted = dm.group(1)
        elif len(entries) == 1:
            wanted = entries[0].name
        if wanted is None:
            return None
        for entry in entries:
            if entry.name == wanted:
                return self.fetch_skill_by_entry(base, entry)
        return None

    def source_identifier(self, url: str) -> str:
        host = urlsplit(url).hostname or ""
        labels = host.split(".")
        if len(labels) >= 2:
            return f"{labels[-2]}/{labels[-1]}"
        return host.replace(".", "/", 1) or "unknown/unknown"


class ProviderRegistry:
    """Ordered providers; the first one whose ``match`` accepts a URL handles it."""

    def __init__(self, providers: list[HostProvider] | None = None) -> None:
        self._providers: list[HostProvider] = list(providers or [])

    def register(self, provider: HostProvider) -> None:
        self._providers.append(provider)

    @property
    def providers(self) -> list[HostProvider]:
        return list(self._providers)

    def find(self, url: str) -> HostProvider | None:
        for provider in self._providers:
            if provider.match(url):
                return provider
        return None

    def get(self, provider_id: str) -> HostProvider | None:
        for provider in self._providers:
            if provider.id == provider_id:
                return provider
        return None


def default_registry(client: SkillportClient) -> ProviderRegistry:
    return ProviderRegistry([WellKnownProvider(client), RawSkillProvider(client)])
