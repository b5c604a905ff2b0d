from __future__ import annotations

import os
import re
from dataclasses import dataclass
from urllib.parse import urlsplit

MANIFEST_FILENAME = "SKILL.md"
ARCHIVE_SUFFIXES = (".zip",)

REPOSITORY_KINDS = frozenset({"github", "gitlab", "git"})
ARCHIVE_KINDS = frozenset({"zip", "local"})

# Hosts with their own repository semantics; never treated as a discoverable index.
_INDEX_EXCLUDED_HOSTS = frozenset({"github.com", "gitlab.com", "huggingface.co", "raw.githubusercontent.com"})

_DRIVE_LETTER_RE = re.compile(r"^[a-zA-Z]:[/\\]")
_GITHUB_TREE_PATH_RE = re.compile(r"github\.com/([^/]+)/([^/]+)/tree/([^/]+)/(.+)")
_GITHUB_TREE_RE = re.compile(r"github\.com/([^/]+)/([^/]+)/tree/([^/]+)$")
_GITHUB_REPO_RE = re.compile(r"github\.com/([^/]+)/([^/]+)")
_GITLAB_TREE_PATH_RE = re.compile(r"gitlab\.com/([^/]+)/([^/]+)/-/tree/([^/]+)/(.+)")
_GITLAB_TREE_RE = re.compile(r"gitlab\.com/([^/]+)/([^/]+)/-/tree/([^/]+)$")
_GITLAB_REPO_RE = re.compile(r"gitlab\.com/([^/]+)/([^/]+)")
_SHORTHAND_RE = re.compile(r"^([^/]+)/([^/]+)(?:/(.+))?$")
_OWNER_REPO_RE = re.compile(r"(?:github|gitlab)\.com/([^/]+)/([^/]+?)(?:\.git)?$")


@dataclass(frozen=True)
class Origin:
    """Classified description of where skill content comes from.

    ``kind`` is one of ``local``, ``zip``, ``github``, ``gitlab``, ``git``,
    ``direct-url``, ``well-known`` or ``marketplace``. ``url`` is the canonical
    source token: a clone URL, a fetch URL, or a resolved filesystem path.
    """

    kind: str
    url: str
    ref: str | None = None
    subpath: str | None = None
    local_path: str | None = None

    @property
    def is_repository(self) -> bool:
        return self.kind in REPOSITORY_KINDS


def _is_http_url(value: str) -> bool:
    return value.startswith(("http://", "https://"))


def is_local_path(value: str) -> bool:
    return (
        os.path.isabs(value)
        or value.startswith(("./", "../"))
        or value in (".", "..")
        or bool(_DRIVE_LETTER_RE.match(value))
    )


def is_archive_path(value: str) -> bool:
    return value.lower().endswith(ARCHIVE_SUFFIXES)


def _is_archive_url(value: str) -> bool:
    return _is_http_url(value) and is_archive_path(value)


def _is_direct_manifest_url(value: str) -> bool:
    if not _is_http_url(value):
        return False
    if not value.lower().endswith("/" + MANIFEST_FILENAME.lower()):
        return False
    # Repository pages get cloned; only their blob/raw forms point at a single file.
    if "github.com/" in value and "raw.githubusercontent.com" not in value:
        if "/blob/" not in value and "/raw/" not in value:
            return False
    if "gitlab.com/" in value and "/-/raw/" not in value:
        return False
    return True


def _is_index_url(value: str) -> bool:
    if not _is_http_url(value):
        return False
    try:
        host = (urlsplit(value).hostname or "").lower()
    except ValueError:
        return False
    if not host or host in _INDEX_EXCLUDED_HOSTS:
        return False
    if value.lower().endswith("/" + MANIFEST_FILENAME.lower()):
        return False
    return not value.endswith(".git")


def _should_prefix_https(value: str) -> bool:
    if _is_http_url(value):
        return False
    # scp-like git URLs (git@host:owner/repo.git) keep their form.
    first_segment = value.split("/", 1)[0]
    if not first_segment or "@" in first_segment:
        return False
    return "." in first_segment


def _strip_git_suffix(repo: str) -> str:
    return repo[:-4] if repo.endswith(".git") else repo


def _repository_origin(value: str) -> Origin | None:
    host_forms = (
        ("github", "github.com", _GITHUB_TREE_PATH_RE, _GITHUB_TREE_RE, _GITHUB_REPO_RE),
        ("gitlab", "gitlab.com", _GITLAB_TREE_PATH_RE, _GITLAB_TREE_RE, _GITLAB_REPO_RE),
    )
    for kind, host, tree_path_re, tree_re, repo_re in host_forms:
        if m := tree_path_re.search(value):
            owner, repo, ref, subpath = m.groups()
            return Origin(kind=kind, url=f"https://{host}/{owner}/{repo}.git", ref=ref, subpath=subpath)
        if m := tree_re.search(value):
            owner, repo, ref = m.groups()
            return Origin(kind=kind, url=f"https://{host}/{owner}/{repo}.git", ref=ref)
        if m := repo_re.search(value):
            owner, repo = m.groups()
            return Origin(kind=kind, url=f"https://{host}/{owner}/{_strip_git_suffix(repo)}.git")
    return None


def parse_source(value: str) -> Origin:
    """Classify a user-supplied source string. Pure: no filesystem or network access."""
    if is_local_path(value):
        resolved = os.path.abspath(value)
        kind = "zip" if is_archive_path(resolved) else "local"
        return Origin(kind=kind, url=resolved, local_path=resolved)

    normalized = value
    if _should_prefix_https(normalized):
        normalized = f"https://{normalized}"

    if _is_archive_url(normalized):
        return Origin(kind="zip", url=normalized)

    if _is_direct_manifest_url(normalized):
        return Origin(kind="direct-url", url=normalized)

    if repo_origin := _repository_origin(normalized):
        return repo_origin

    m = _SHORTHAND_RE.match(normalized)
    if m and ":" not in normalized and not normalized.startswith((".", "/")):
        owner, repo, subpath = m.groups()
        return Origin(kind="github", url=f"https://github.com/{owner}/{repo}.git", subpath=subpath)

    if _is_index_url(normalized):
        return Origin(kind="well-known", url=normalized)

    return Origin(kind="git", url=normalized)


def owner_repo(origin: Origin) -> str | None:
    """``owner/repo`` for hosted repository origins, used as the lock source identifier."""
    if origin.kind in ARCHIVE_KINDS:
        return None
    m = _OWNER_REPO_RE.search(origin.url)
    if not m:
        return None
    return f"{m.group(1)}/{m.group(2)}"
