from __future__ import annotations

import logging
import shutil
import zipfile
from pathlib import Path

from .client import SkillportClient, SkillportError
from .paths import is_path_safe
from .source_parser import is_archive_path

logger = logging.getLogger(__name__)

__all__ = ["download_archive", "extract_archive", "is_archive_path", "normalize_entry_name"]


def normalize_entry_name(name: str) -> str | None:
    """
    Turn an archive entry name into a safe relative path.

    Backslashes become separators and empty, ``.`` and ``..`` segments are dropped,
    so ``../evil.txt`` maps to ``evil.txt``. macOS resource forks are skipped.
    """
    parts = [p for p in name.replace("\\", "/").split("/") if p not in ("", ".", "..")]
    if not parts or parts[0] == "__MACOSX":
        return None
    return "/".join(parts)


def download_archive(url: str, dest: str | Path, client: SkillportClient) -> Path:
    path = Path(dest)
    path.parent.mkdir(parents=True, exist_ok=True)
    logger.debug("Downloading archive %s", url)
    path.write_bytes(client.get_bytes(url))
    return path


def extract_archive(archive: str | Path, dest: str | Path) -> Path:
    """Extract a zip archive below ``dest``; no entry can land outside it."""
    src = Path(archive)
    base = Path(dest)
    base.mkdir(parents=True, exist_ok=True)

    try:
        zf = zipfile.ZipFile(src, "r")
    except (zipfile.BadZipFile, OSError) as e:
        raise SkillportError(f"Invalid zip archive {src}: {e}") from e

    with zf:
        for info in zf.infolist():
            rel = normalize_entry_name(info.filename)
            if rel is None:
                continue
            target = base / rel
            if not is_path_safe(base, target):
                raise SkillportError(f"Archive contains an invalid path entry: {info.filename!r}")

            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue

            target.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info, "r") as fsrc, target.open("wb") as out:
                shutil.copyfileobj(fsrc, out)
    return base
