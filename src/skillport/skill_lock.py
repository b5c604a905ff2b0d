from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .agents import Scope
from .paths import AGENTS_DIR, scope_base

logger = logging.getLogger(__name__)

LOCK_FILENAME = ".skill-lock.json"
CURRENT_VERSION = 3  # v3 introduced folder fingerprints; older stores are discarded


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)


@dataclass(frozen=True)
class SkillLockEntry:
    source: str
    source_type: str
    source_url: str
    skill_folder_hash: str = ""
    skill_path: str | None = None
    ref: str | None = None
    installed_at: str | None = None
    updated_at: str | None = None

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "source": self.source,
            "sourceType": self.source_type,
            "sourceUrl": self.source_url,
            "skillFolderHash": self.skill_folder_hash,
        }
        if self.skill_path:
            out["skillPath"] = self.skill_path
        if self.ref:
            out["ref"] = self.ref
        if self.installed_at:
            out["installedAt"] = self.installed_at
        if self.updated_at:
            out["updatedAt"] = self.updated_at
        return out

    @classmethod
    def from_json(cls, raw: Any) -> "SkillLockEntry | None":
        if not isinstance(raw, dict):
            return None
        source = raw.get("source")
        source_type = raw.get("sourceType")
        source_url = raw.get("sourceUrl")
        if not isinstance(source, str) or not isinstance(source_type, str) or not isinstance(source_url, str):
            return None

        def _opt(key: str) -> str | None:
            v = raw.get(key)
            return v if isinstance(v, str) and v else None

        return cls(
            source=source,
            source_type=source_type,
            source_url=source_url,
            skill_folder_hash=_opt("skillFolderHash") or "",
            skill_path=_opt("skillPath"),
            ref=_opt("ref"),
            installed_at=_opt("installedAt"),
            updated_at=_opt("updatedAt"),
        )


@dataclass(frozen=True)
class SkillOrigin:
    """Provenance of one installed skill, before a fingerprint is known."""

    source: str
    source_type: str
    source_url: str
    skill_path: str | None = None
    ref: str | None = None

    def to_entry(self, folder_hash: str = "") -> SkillLockEntry:
        return SkillLockEntry(
            source=self.source,
            source_type=self.source_type,
            source_url=self.source_url,
            skill_folder_hash=folder_hash,
            skill_path=self.skill_path,
            ref=self.ref,
        )


def empty_lock() -> dict[str, Any]:
    return {"version": CURRENT_VERSION, "skills": {}, "dismissed": {}}


class SkillLockStore:
    """
    The per-scope lock document at ``<base>/.agents/.skill-lock.json``.

    Every mutation is a read-modify-write of the whole document; concurrent writers
    are not coordinated.
    """

    def __init__(self, scope: Scope, *, cwd: Path | None = None, home: Path | None = None) -> None:
        self.scope = scope
        self.path = scope_base(scope, cwd=cwd, home=home) / AGENTS_DIR / LOCK_FILENAME

    def read(self) -> dict[str, Any]:
        if not self.path.exists():
            return empty_lock()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError):
            logger.debug("Unreadable lock file %s; starting fresh", self.path)
            return empty_lock()
        if not isinstance(raw, dict):
            return empty_lock()

        version = raw.get("version")
        if isinstance(version, bool) or not isinstance(version, (int, float)):
            return empty_lock()
        if not isinstance(raw.get("skills"), dict):
            return empty_lock()
        if version < CURRENT_VERSION:
            logger.debug("Discarding lock file %s with old version %s", self.path, version)
            return empty_lock()
        return raw

    def write(self, doc: dict[str, Any]) -> None:
        _write_json_atomic(self.path, doc)

    def add_entry(self, name: str, entry: SkillLockEntry) -> SkillLockEntry:
        doc = self.read()
        now = _utc_now()
        existing = SkillLockEntry.from_json(doc["skills"].get(name))
        stored = SkillLockEntry(
            source=entry.source,
            source_type=entry.source_type,
            source_url=entry.source_url,
            skill_folder_hash=entry.skill_folder_hash,
            skill_path=entry.skill_path,
            ref=entry.ref,
            installed_at=(existing.installed_at if existing and existing.installed_at else now),
            updated_at=now,
        )
        doc["skills"][name] = stored.to_json()
        self.write(doc)
        return stored

    def remove_entry(self, name: str) -> bool:
        doc = self.read()
        if name not in doc["skills"]:
            return False
        del doc["skills"][name]
        self.write(doc)
        return True

    def get_entry(self, name: str) -> SkillLockEntry | None:
        return SkillLockEntry.from_json(self.read()["skills"].get(name))

    def all_entries(self) -> dict[str, SkillLockEntry]:
        out: dict[str, SkillLockEntry] = {}
        for name, raw in self.read()["skills"].items():
            entry = SkillLockEntry.from_json(raw)
            if entry is not None:
                out[name] = entry
        return out

    def skills_by_source(self) -> dict[str, list[str]]:
        by_source: dict[str, list[str]] = {}
        for name, entry in self.all_entries().items():
            by_source.setdefault(entry.source, []).append(name)
        return by_source

    def is_prompt_dismissed(self, key: str) -> bool:
        dismissed = self.read().get("dismissed")
        return isinstance(dismissed, dict) and dismissed.get(key) is True

    def dismiss_prompt(self, key: str) -> None:
        doc = self.read()
        dismissed = doc.get("dismissed")
        if not isinstance(dismissed, dict):
            dismissed = {}
        dismissed[key] = True
        doc["dismissed"] = dismissed
        self.write(doc)

    def last_selected_agents(self) -> list[str]:
        agents = self.read().get("lastSelectedAgents")
        if not isinstance(agents, list):
            return []
        return [a for a in agents if isinstance(a, str)]

    def save_selected_agents(self, agents: list[str]) -> None:
        doc = self.read()
        doc["lastSelectedAgents"] = list(agents)
        self.write(doc)
