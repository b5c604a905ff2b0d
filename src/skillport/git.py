from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path

from .client import SkillportError
from .config import DEFAULT_TIMEOUT_S
from .temp_registry import TempRegistry, best_effort

logger = logging.getLogger(__name__)

CLONE_TIMEOUT_S = 120.0


def _clone_args(url: str, destination: Path, ref: str | None) -> list[str]:
    args = ["git", "clone", "--depth", "1"]
    if ref:
        args.extend(["--branch", ref])
    args.extend([url, str(destination)])
    return args


def clone_repo_to(url: str, destination: str | Path, ref: str | None = None, *, timeout_s: float = CLONE_TIMEOUT_S) -> None:
    """Shallow-clone ``url`` into ``destination``."""
    dest = Path(destination)
    env = dict(os.environ)
    env["GIT_TERMINAL_PROMPT"] = "0"
    logger.debug("Cloning %s (ref=%s) into %s", url, ref, dest)
    try:
        result = subprocess.run(
            _clone_args(url, dest, ref),
            capture_output=True,
            text=True,
            check=False,
            timeout=max(timeout_s, DEFAULT_TIMEOUT_S),
            env=env,
        )
    except FileNotFoundError as e:
        raise SkillportError("git is not installed or not on PATH") from e
    except subprocess.TimeoutExpired as e:
        raise SkillportError(f"git clone timed out after {e.timeout:.0f}s: {url}") from e

    if result.returncode != 0:
        detail = (result.stderr or result.stdout or "").strip()
        raise SkillportError(f"git clone failed for {url}: {detail}")


def clone_repo(
    url: str,
    ref: str | None = None,
    *,
    registry: TempRegistry,
    timeout_s: float = CLONE_TIMEOUT_S,
) -> Path:
    """Clone into a fresh registered temp dir and return it; the dir is removed again on failure."""
    tmp = registry.make_dir(prefix="skillport-repo-")
    try:
        clone_repo_to(url, tmp, ref, timeout_s=timeout_s)
    except SkillportError:
        with best_effort(f"removing failed clone {tmp}"):
            registry.cleanup(tmp)
        raise
    return tmp
