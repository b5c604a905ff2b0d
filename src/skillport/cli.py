from __future__ import annotations

import argparse
import json
import logging
import sys
import textwrap
from dataclasses import asdict, replace
from pathlib import Path
from typing import Any

from ._version import __version__
from .agents import AGENTS, SCOPES, Scope, detect_installed_agents, get_agent
from .client import NotFoundError, SkillportClient, SkillportError, SkillportHTTPError
from .config import INSTALL_MODES, Config, apply_env_overrides, config_path, load_config, redact_token, save_config
from .installer import list_installed_skills
from .remote_tree import GitHubTreeFetcher
from .search import DEFAULT_JOB_TIMEOUT_S, DirectoryClient, SearchOutcome
from .skill_lock import SkillLockStore
from .sources import SourcePreparer
from .temp_registry import TempRegistry
from .updater import UpdateReconciler, UpdateTarget
from .workflows import perform_install, remove_skill, select_agents

logger = logging.getLogger(__name__)


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _truncate(text: str, limit: int = 60) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _runtime_config(args: argparse.Namespace) -> Config:
    # Env overrides the config file; CLI flags override both.
    cfg = apply_env_overrides(load_config())
    timeout_s = getattr(args, "timeout_s", None)
    if timeout_s is not None:
        cfg = replace(cfg, timeout_s=timeout_s)
    return cfg


def _make_client(cfg: Config) -> SkillportClient:
    return SkillportClient(timeout_s=cfg.timeout_s, token=cfg.github_token)


def _scopes(args: argparse.Namespace) -> list[Scope]:
    if getattr(args, "all_scopes", False):
        return list(SCOPES)
    return ["global"] if args.global_ else ["project"]


def _format_http_error(e: SkillportHTTPError) -> str:
    body = e.body.strip()
    if len(body) > 300:
        body = body[:300] + "..."
    return f"HTTP {e.status_code}: {body}" if body else f"HTTP {e.status_code}"


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="skillport",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Install, track and update agent skills from git repositories, archives and URLs.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              SKILLPORT_CONFIG_PATH, SKILLPORT_TIMEOUT_S, SKILLPORT_INCLUDE_INTERNAL,
              SKILLPORT_API_URL, SKILLPORT_LOCAL_SKILLS_REPO, GITHUB_TOKEN / GH_TOKEN
            """
        ),
    )
    p.add_argument("--version", action="version", version=f"skillport {__version__}")
    p.add_argument("-v", "--verbose", action="store_true", help="Log debug output to stderr")
    p.add_argument("--timeout-s", type=float, help="HTTP timeout in seconds")

    sub = p.add_subparsers(dest="cmd", required=True)

    # add
    add = sub.add_parser("add", aliases=["install", "i"], help="Install skills from a source")
    add.add_argument("source", help="Local path, owner/repo, repository URL, .zip, SKILL.md URL, or site URL")
    add.add_argument("-a", "--agent", action="append", default=[], help="Target agent (repeatable)")
    add.add_argument("-g", "--global", dest="global_", action="store_true", help="Install into the home directory")
    add.add_argument("-s", "--skill", action="append", default=[], help="Only install this skill (repeatable)")
    add.add_argument("--copy", action="store_true", help="Copy into each agent directory instead of symlinking")
    add.add_argument("--list", action="store_true", help="List the skills found in the source and exit")
    add.add_argument("--json", action="store_true", help="Output JSON")

    # list
    ls = sub.add_parser("list", aliases=["ls"], help="List installed skills, or the supported agents")
    ls.add_argument("what", nargs="?", choices=["skills", "agents"], default="skills")
    ls.add_argument("-g", "--global", dest="global_", action="store_true", help="List global skills")
    ls.add_argument("--all-scopes", action="store_true", help="List project and global skills")
    ls.add_argument("-a", "--agent", action="append", default=[], help="Only this agent (repeatable)")
    ls.add_argument("--json", action="store_true", help="Output JSON")

    # remove
    rm = sub.add_parser("remove", aliases=["rm", "uninstall"], help="Remove an installed skill")
    rm.add_argument("name", nargs="?", help="Skill name")
    rm.add_argument("--source", help="Remove every skill tracked from this source (e.g. owner/repo)")
    rm.add_argument("-g", "--global", dest="global_", action="store_true", help="Remove from the home directory")
    rm.add_argument("-a", "--agent", action="append", default=[], help="Only remove from this agent (repeatable)")
    rm.add_argument("--json", action="store_true", help="Output JSON")

    # check / update
    for name, help_text in (
        ("check", "Report which tracked skills have upstream changes"),
        ("update", "Re-sync tracked skills with their source"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("names", nargs="*", metavar="skill", help="Only these skills (default: all tracked)")
        cmd.add_argument("-g", "--global", dest="global_", action="store_true", help="Global skills only")
        cmd.add_argument("--all-scopes", action="store_true", help="Project and global skills")
        cmd.add_argument("--json", action="store_true", help="Output JSON")

    # find
    find = sub.add_parser("find", aliases=["search"], help="Search the skill directory")
    find.add_argument("query", help="Search text")
    find.add_argument("--semantic", action="store_true", help="Semantic search (falls back to lexical)")
    find.add_argument("--limit", type=int, default=10, help="Max results")
    find.add_argument("--json", action="store_true", help="Output JSON")

    # get
    get = sub.add_parser("get", help="Fetch a web page as markdown")
    get.add_argument("url")
    get.add_argument("-o", "--out", help="Write to this file instead of stdout")
    get.add_argument("--wait-s", type=float, default=DEFAULT_JOB_TIMEOUT_S, help="Max wait for a queued conversion")
    get.add_argument("--json", action="store_true", help="Output JSON metadata instead of raw markdown")

    # config
    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config (token redacted)")

    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--timeout-s", type=float)
    cfg_set.add_argument("--github-token", help='GitHub token for tree lookups ("" to clear)')
    cfg_set.add_argument("--default-agent", action="append", help="Default agent when none is given (repeatable)")
    cfg_set.add_argument("--install-mode", choices=INSTALL_MODES)
    cfg_set.add_argument("--api-url", help="Skill directory API base URL")
    cfg_set.add_argument("--local-skills-repo", help='Search this local checkout instead of the API ("" to clear)')

    return p


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        cfg = load_config()
        d = asdict(cfg)
        d["default_agents"] = list(cfg.default_agents)
        d["github_token"] = redact_token(cfg.github_token)
        print(json.dumps(d, indent=2, sort_keys=True))
        return 0

    if args.subcmd == "set":
        cfg = load_config()
        if args.default_agent:
            for name in args.default_agent:
                get_agent(name)
        new_cfg = Config(
            timeout_s=args.timeout_s if args.timeout_s is not None else cfg.timeout_s,
            github_token=(args.github_token or None) if args.github_token is not None else cfg.github_token,
            default_agents=tuple(args.default_agent) if args.default_agent else cfg.default_agents,
            install_mode=args.install_mode or cfg.install_mode,
            api_url=args.api_url.rstrip("/") if args.api_url else cfg.api_url,
            local_skills_repo=(
                (args.local_skills_repo or None) if args.local_skills_repo is not None else cfg.local_skills_repo
            ),
        )
        path = save_config(new_cfg)
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def cmd_add(args: argparse.Namespace) -> int:
    cfg = _runtime_config(args)
    scope: Scope = "global" if args.global_ else "project"
    client = _make_client(cfg)
    registry = TempRegistry()
    registry.install_signal_handlers()
    try:
        preparer = SourcePreparer(client=client, registry=registry)
        origin = preparer.classify(args.source)
        prepared = preparer.prepare(origin)
        for warning in prepared.warnings:
            print(f"warning: {warning}", file=sys.stderr)

        if args.list:
            if args.json:
                payload = [
                    {"name": s.name, "description": s.description, "path": str(s.path)} for s in prepared.skills
                ]
                print(json.dumps(payload, indent=2, sort_keys=True))
                return 0
            if prepared.plugins:
                print("plugins: " + ", ".join(p.name for p in prepared.plugins))
            rows = [["NAME", "DESCRIPTION"]]
            rows.extend([s.name, _truncate(s.description)] for s in prepared.skills)
            _print_table(rows)
            return 0

        skills = prepared.select(args.skill or None)
        lock_store = SkillLockStore(scope)
        agents = select_agents(args.agent, lock_store=lock_store, config=cfg)
        mode = "copy" if args.copy else cfg.install_mode

        outcome = perform_install(
            skills,
            agents,
            scope=scope,
            mode=mode,
            origins=prepared.origins,
            lock_store=lock_store,
            tree_fetcher=GitHubTreeFetcher(client),
        )
        lock_store.save_selected_agents(agents)
    finally:
        registry.cleanup_all()
        client.close()

    if args.json:
        payload = {
            "source": origin.url,
            "kind": origin.kind,
            "scope": scope,
            "results": [
                {
                    "skill": r.skill,
                    "agent": r.agent,
                    "success": r.result.success,
                    "mode": r.result.mode,
                    "path": str(r.result.path) if r.result.path else None,
                    "canonical_path": str(r.result.canonical_path) if r.result.canonical_path else None,
                    "symlink_failed": r.result.symlink_failed,
                    "replaced": r.replaced,
                    "error": r.result.error,
                }
                for r in outcome.results
            ],
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0 if not outcome.failed else 1

    rows = [["SKILL", "AGENT", "STATUS", "PATH"]]
    for r in outcome.results:
        if not r.result.success:
            status = "failed"
        elif r.result.symlink_failed:
            status = "copied (symlink failed)"
        else:
            status = r.result.mode
        if r.replaced and r.result.success:
            status += " (replaced)"
        rows.append([r.skill, r.agent_display_name, status, str(r.result.path or "")])
    _print_table(rows)
    for r in outcome.failed:
        print(f"error: {r.skill} -> {r.agent}: {r.result.error}", file=sys.stderr)
    return 0 if not outcome.failed else 1


def cmd_list_agents(args: argparse.Namespace) -> int:
    detected = set(detect_installed_agents())
    agents = sorted(AGENTS.values(), key=lambda a: a.display_name.lower())
    if args.json:
        payload = [
            {
                "name": a.name,
                "display_name": a.display_name,
                "skills_dir": a.skills_dir,
                "global_skills_dir": a.global_skills_dir,
                "detected": a.name in detected,
            }
            for a in agents
        ]
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0

    rows = [["NAME", "AGENT", "PROJECT DIR", "GLOBAL DIR", "DETECTED"]]
    for a in agents:
        rows.append(
            [a.name, a.display_name, a.skills_dir, a.global_skills_dir or "-", "yes" if a.name in detected else ""]
        )
    _print_table(rows)
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    if args.what == "agents":
        return cmd_list_agents(args)

    agents = [get_agent(a).name for a in args.agent] if args.agent else list(AGENTS)
    installed = list_installed_skills(agents, _scopes(args))

    seen: set[tuple[str, str]] = set()
    unique = []
    for s in installed:
        key = (str(s.path), s.scope)
        if key in seen:
            continue
        seen.add(key)
        unique.append(s)

    if args.json:
        payload = [
            {
                "slug": s.slug,
                "name": s.name,
                "description": s.description,
                "agent": s.agent,
                "scope": s.scope,
                "path": str(s.path),
                "is_symlink": s.is_symlink,
                "is_broken": s.is_broken,
            }
            for s in unique
        ]
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0

    if not unique:
        print("No skills installed.")
        return 0
    rows = [["NAME", "AGENT", "SCOPE", "LINK", "PATH"]]
    for s in unique:
        link = "broken" if s.is_broken else ("symlink" if s.is_symlink else "copy")
        rows.append([s.name, s.agent, s.scope, link, str(s.path)])
    _print_table(rows)
    return 0


def _removal_names(args: argparse.Namespace, store: SkillLockStore) -> list[str]:
    if args.source and args.name:
        raise SkillportError("Pass a skill name or --source, not both")
    if args.source:
        names = store.skills_by_source().get(args.source)
        if not names:
            raise NotFoundError(f"No skills tracked from {args.source} ({store.scope})")
        return sorted(names)
    if not args.name:
        raise SkillportError("Pass a skill name or --source")
    return [args.name]


def cmd_remove(args: argparse.Namespace) -> int:
    scope: Scope = "global" if args.global_ else "project"
    store = SkillLockStore(scope)
    payloads: list[dict[str, Any]] = []
    for name in _removal_names(args, store):
        try:
            result = remove_skill(name, scope=scope, agents=args.agent or None, lock_store=store)
        except NotFoundError:
            if not args.source:
                raise
            # Tracked but already gone from disk.
            payloads.append({"name": name, "removed": [], "lock_removed": store.remove_entry(name)})
            continue
        payloads.append(
            {
                "name": result.name,
                "removed": [str(p) for p in result.removed],
                "lock_removed": result.lock_removed,
            }
        )

    if args.json:
        print(json.dumps(payloads if args.source else payloads[0], indent=2, sort_keys=True))
        return 0
    for p in payloads:
        for path in p["removed"]:
            print(f"removed: {path}")
        if p["lock_removed"]:
            print(f"untracked: {p['name']}")
    return 0


def _target_payload(t: UpdateTarget) -> dict[str, Any]:
    return {
        "name": t.name,
        "scope": t.scope,
        "status": t.status,
        "source": t.entry.source,
        "source_type": t.entry.source_type,
        "installed_hash": t.entry.skill_folder_hash or None,
        "latest_hash": t.latest_hash,
    }


TOKEN_HINT_PROMPT = "github-token-hint"


def _warn_rate_limited() -> None:
    print("warning: GitHub API rate limit reached; some statuses are unknown", file=sys.stderr)
    store = SkillLockStore("global")
    if store.is_prompt_dismissed(TOKEN_HINT_PROMPT):
        return
    print(
        "hint: set GITHUB_TOKEN (or `skillport config set --github-token ...`) to raise the limit",
        file=sys.stderr,
    )
    try:
        store.dismiss_prompt(TOKEN_HINT_PROMPT)
    except OSError as e:
        logger.debug("Could not record dismissed hint: %s", e)


def _run_reconciler(args: argparse.Namespace, *, apply: bool) -> int:
    cfg = _runtime_config(args)
    client = _make_client(cfg)
    registry = TempRegistry()
    registry.install_signal_handlers()
    try:
        reconciler = UpdateReconciler(client=client, registry=registry)
        targets = reconciler.collect_update_targets(_scopes(args), args.names)
        if not targets:
            print("No tracked skills.")
            return 0
        targets, rate_limited = reconciler.annotate_update_targets(targets)
        summary = reconciler.update_skills(targets) if apply else None
    finally:
        registry.cleanup_all()
        client.close()

    if rate_limited:
        _warn_rate_limited()

    if summary is None:
        if args.json:
            print(json.dumps([_target_payload(t) for t in targets], indent=2, sort_keys=True))
            return 0
        rows = [["NAME", "SCOPE", "STATUS", "SOURCE"]]
        rows.extend([t.name, t.scope, t.status or "unknown", t.entry.source] for t in targets)
        _print_table(rows)
        return 0

    if args.json:
        payload = {
            "updated": [_target_payload(t) for t in summary.updated],
            "skipped": [_target_payload(t) for t in summary.skipped],
            "failed": [_target_payload(t) for t in summary.failed],
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0 if not summary.failed else 1

    _print_table(
        [
            ["ACTION", "COUNT"],
            ["updated", str(len(summary.updated))],
            ["skipped", str(len(summary.skipped))],
            ["failed", str(len(summary.failed))],
        ]
    )
    for t in summary.updated:
        print(f"updated: {t.name} ({t.scope})")
    for t in summary.failed:
        print(f"failed: {t.name} ({t.scope})")
    return 0 if not summary.failed else 1


def _directory(cfg: Config, client: SkillportClient) -> DirectoryClient:
    return DirectoryClient(client, api_url=cfg.api_url, local_skills_repo=cfg.local_skills_repo)


def _print_search(outcome: SearchOutcome) -> None:
    rows = [["SKILL", "SOURCE", "TAG", "DESCRIPTION"]]
    for r in outcome.results:
        if not r.repo:
            continue
        rows.append([r.install_name, r.repo, "official" if r.is_official else "community", _truncate(r.summary)])
    if len(rows) == 1:
        print("No results.")
        return
    _print_table(rows)
    print()
    print("Install with: skillport add <SOURCE> -s <SKILL>")


def cmd_find(args: argparse.Namespace) -> int:
    cfg = _runtime_config(args)
    client = _make_client(cfg)
    try:
        outcome = _directory(cfg, client).search(args.query, "semantic" if args.semantic else "lexical", args.limit)
    finally:
        client.close()

    if outcome.fallback:
        print("note: semantic search unavailable; showing lexical results", file=sys.stderr)
    if args.json:
        payload = {
            "query": args.query,
            "mode": outcome.mode,
            "fallback": outcome.fallback,
            "results": [asdict(r) for r in outcome.results],
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0
    _print_search(outcome)
    return 0


def cmd_get(args: argparse.Namespace) -> int:
    cfg = _runtime_config(args)
    client = _make_client(cfg)
    try:
        data = _directory(cfg, client).fetch_url_markdown(args.url, timeout_s=args.wait_s)
    finally:
        client.close()

    if args.json:
        body = json.dumps(data.to_json(), indent=2) + "\n"
    else:
        body = data.markdown if data.markdown.endswith("\n") else data.markdown + "\n"

    if args.out:
        Path(args.out).write_text(body, encoding="utf-8")
        print(f"Saved: {args.out}")
        return 0
    sys.stdout.write(body)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        if args.cmd == "config":
            return cmd_config(args)
        if args.cmd in ("add", "install", "i"):
            return cmd_add(args)
        if args.cmd in ("list", "ls"):
            return cmd_list(args)
        if args.cmd in ("remove", "rm", "uninstall"):
            return cmd_remove(args)
        if args.cmd == "check":
            return _run_reconciler(args, apply=False)
        if args.cmd == "update":
            return _run_reconciler(args, apply=True)
        if args.cmd in ("find", "search"):
            return cmd_find(args)
        if args.cmd == "get":
            return cmd_get(args)
        raise AssertionError("unreachable")
    except SkillportHTTPError as e:
        print(f"error: {_format_http_error(e)}", file=sys.stderr)
        return 1
    except SkillportError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
