from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from .client import NotFoundError

Scope = Literal["project", "global"]
SCOPES: tuple[Scope, ...] = ("project", "global")


@dataclass(frozen=True)
class AgentConfig:
    name: str
    display_name: str
    skills_dir: str  # relative to the project root
    global_skills_dir: str | None = None  # relative to the home directory

    @property
    def supports_global(self) -> bool:
        return self.global_skills_dir is not None


_AGENT_LIST = (
    AgentConfig("amp", "Amp", ".agents/skills", ".config/agents/skills"),
    AgentConfig("claude-code", "Claude Code", ".claude/skills", ".claude/skills"),
    AgentConfig("cline", "Cline", ".cline/skills", ".cline/skills"),
    AgentConfig("codex", "Codex", ".codex/skills", ".codex/skills"),
    AgentConfig("continue", "Continue", ".continue/skills", ".continue/skills"),
    AgentConfig("cursor", "Cursor", ".cursor/skills", ".cursor/skills"),
    AgentConfig("gemini-cli", "Gemini CLI", ".gemini/skills", ".gemini/skills"),
    AgentConfig("github-copilot", "GitHub Copilot", ".github/skills", ".copilot/skills"),
    AgentConfig("goose", "Goose", ".goose/skills", ".config/goose/skills"),
    AgentConfig("junie", "Junie", ".junie/skills", ".junie/skills"),
    AgentConfig("kilo", "Kilo Code", ".kilocode/skills", ".kilocode/skills"),
    AgentConfig("kiro-cli", "Kiro CLI", ".kiro/skills", ".kiro/skills"),
    AgentConfig("opencode", "OpenCode", ".opencode/skills", ".config/opencode/skills"),
    AgentConfig("openhands", "OpenHands", ".openhands/skills", ".openhands/skills"),
    AgentConfig("qwen-code", "Qwen Code", ".qwen/skills", ".qwen/skills"),
    AgentConfig("replit", "Replit", ".agents/skills", None),
    AgentConfig("roo", "Roo Code", ".roo/skills", ".roo/skills"),
    AgentConfig("trae", "Trae", ".trae/skills", ".trae/skills"),
    AgentConfig("windsurf", "Windsurf", ".windsurf/skills", ".codeium/windsurf/skills"),
)

AGENTS: dict[str, AgentConfig] = {a.name: a for a in _AGENT_LIST}


def get_agent(name: str) -> AgentConfig:
    try:
        return AGENTS[name]
    except KeyError as e:
        known = ", ".join(sorted(AGENTS))
        raise NotFoundError(f"Unknown agent {name!r}. Known agents: {known}") from e


def agent_skills_dir(agent: AgentConfig, scope: Scope, *, cwd: Path, home: Path) -> Path | None:
    if scope == "global":
        if agent.global_skills_dir is None:
            return None
        return home / agent.global_skills_dir
    return cwd / agent.skills_dir


def detect_installed_agents(*, home: Path | None = None) -> list[str]:
    """Agents whose home configuration directory exists."""
    home_dir = home if home is not None else Path.home()
    found: list[str] = []
    for agent in _AGENT_LIST:
        if agent.global_skills_dir is None:
            continue
        if (home_dir / agent.global_skills_dir).parent.is_dir():
            found.append(agent.name)
    return found
