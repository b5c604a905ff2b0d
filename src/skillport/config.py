from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

DEFAULT_TIMEOUT_S = 30.0
DEFAULT_INSTALL_MODE = "symlink"
DEFAULT_API_URL = "https://returnmytime.com/api"
INSTALL_MODES = ("symlink", "copy")


@dataclass(frozen=True)
class Config:
    timeout_s: float = DEFAULT_TIMEOUT_S
    github_token: str | None = None  # sent to the GitHub trees API only
    default_agents: tuple[str, ...] = ()
    install_mode: str = DEFAULT_INSTALL_MODE
    api_url: str = DEFAULT_API_URL  # skill directory search and URL-to-markdown jobs
    local_skills_repo: str | None = None  # search this checkout instead of the directory API


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("SKILLPORT_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("skillport") / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return Config()
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}

    agents = filtered.get("default_agents")
    if isinstance(agents, list):
        filtered["default_agents"] = tuple(a for a in agents if isinstance(a, str) and a.strip())
    else:
        filtered.pop("default_agents", None)
    if filtered.get("install_mode") not in INSTALL_MODES:
        filtered.pop("install_mode", None)
    for key in ("api_url", "local_skills_repo"):
        value = filtered.get(key)
        if not isinstance(value, str) or not value.strip():
            filtered.pop(key, None)
    try:
        filtered["timeout_s"] = float(filtered.get("timeout_s", DEFAULT_TIMEOUT_S))
    except (TypeError, ValueError):
        filtered.pop("timeout_s", None)
    return Config(**filtered)  # type: ignore[arg-type]


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    data = asdict(cfg)
    data["default_agents"] = list(cfg.default_agents)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)

    # Best-effort permissions hardening (the file may hold a GitHub token).
    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass

    return path


def apply_env_overrides(cfg: Config) -> Config:
    # Env overrides the config file; CLI flags are applied on top by the caller.
    token = os.getenv("GITHUB_TOKEN") or os.getenv("GH_TOKEN") or cfg.github_token
    timeout_s: Any = os.getenv("SKILLPORT_TIMEOUT_S") or cfg.timeout_s
    try:
        timeout_s_f = float(timeout_s)
    except (TypeError, ValueError):
        timeout_s_f = cfg.timeout_s
    api_url = (os.getenv("SKILLPORT_API_URL") or "").strip() or cfg.api_url
    local_repo = (os.getenv("SKILLPORT_LOCAL_SKILLS_REPO") or "").strip() or cfg.local_skills_repo
    return replace(
        cfg, github_token=token, timeout_s=timeout_s_f, api_url=api_url.rstrip("/"), local_skills_repo=local_repo
    )


def include_internal_skills() -> bool:
    return os.getenv("SKILLPORT_INCLUDE_INTERNAL") == "1"


def redact_token(token: str | None) -> str | None:
    if not token:
        return token
    if len(token) <= 10:
        return token[:2] + "..." + token[-2:]
    return token[:6] + "..." + token[-4:]
