import json
import tempfile
import unittest
from pathlib import Path

import httpx

from _helpers import FakeClone, mock_client, skill_md, write_tree
from skillport.client import NotFoundError
from skillport.marketplace import (
    MarketplaceContext,
    MarketplacePlugin,
    RepoLocation,
    collect_marketplace_skills,
    is_marketplace_source,
    load_marketplace,
    normalize_plugins,
    override_paths,
    resolve_plugin_source,
)
from skillport.temp_registry import TempRegistry


class TestLocalMarketplace(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.addCleanup(self._td.cleanup)
        self.root = Path(self._td.name) / "market"
        self.registry = TempRegistry(Path(self._td.name))
        self.addCleanup(self.registry.cleanup_all)
        self.client = mock_client()
        self.addCleanup(self.client.close)

        marketplace = {
            "name": "acme",
            "plugins": [
                {"name": "docs", "source": "./plugins/docs"},
                {"name": "remote", "source": {"source": "github", "repo": "acme/tools"}},
                {"name": "remote-too", "source": {"source": "github", "repo": "acme/tools", "path": "extra"}},
                {"name": "npm-thing", "source": {"source": "npm", "package": "x"}},
                {"description": "no name"},
            ],
        }
        write_tree(
            self.root,
            {
                ".claude-plugin/marketplace.json": json.dumps(marketplace),
                "plugins/docs/skills/writer/SKILL.md": skill_md("writer"),
            },
        )

    def test_detects_marketplace_sources(self) -> None:
        self.assertTrue(is_marketplace_source(str(self.root)))
        self.assertTrue(is_marketplace_source(str(self.root / ".claude-plugin" / "marketplace.json")))
        self.assertTrue(is_marketplace_source("https://example.com/marketplace.json"))
        self.assertFalse(is_marketplace_source(str(self.root / "plugins")))

    def test_collects_local_and_cloned_plugins(self) -> None:
        data, context = load_marketplace(str(self.root), client=self.client)
        self.assertEqual(context.kind, "local")
        self.assertEqual(context.base_dir, self.root)

        plugins = normalize_plugins(data)
        self.assertEqual([p.name for p in plugins], ["docs", "remote", "remote-too", "npm-thing"])

        clone = FakeClone(
            {
                "skills/helper/SKILL.md": skill_md("helper"),
                "extra/skills/more/SKILL.md": skill_md("more"),
            }
        )
        collected, warnings = collect_marketplace_skills(plugins, context, registry=self.registry, clone=clone)

        by_name = {c.skill.name: c for c in collected}
        self.assertEqual(sorted(by_name), ["helper", "more", "writer"])
        self.assertEqual(clone.calls, [("https://github.com/acme/tools.git", "main")])
        self.assertEqual(warnings, ["npm-thing: Unknown source type"])

        writer = by_name["writer"].origin
        self.assertEqual(writer.source_type, "local")
        self.assertEqual(writer.skill_path, "skills/writer/SKILL.md")

        helper = by_name["helper"].origin
        self.assertEqual(helper.source, "acme/tools")
        self.assertEqual(helper.source_type, "github")
        self.assertEqual(helper.ref, "main")
        self.assertEqual(helper.skill_path, "skills/helper/SKILL.md")
        self.assertEqual(by_name["more"].origin.skill_path, "extra/skills/more/SKILL.md")
        self.assertEqual(by_name["more"].plugin_name, "remote-too")


class TestPluginPathsStayInsideSource(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.addCleanup(self._td.cleanup)
        self.tmp = Path(self._td.name)
        self.registry = TempRegistry(self.tmp)
        self.addCleanup(self.registry.cleanup_all)
        write_tree(self.tmp / "victim", {"secret/SKILL.md": skill_md("secret"), "id_rsa": "key"})

    def test_repo_path_climbing_out_of_clone_is_skipped(self) -> None:
        plugins = [
            MarketplacePlugin("evil", "", {"source": "github", "repo": "a/b", "path": "../victim"}),
            MarketplacePlugin("deep", "", {"source": "github", "repo": "a/b", "path": "../" * 12 + "victim"}),
        ]
        clone = FakeClone({"skills/fine/SKILL.md": skill_md("fine")})
        collected, warnings = collect_marketplace_skills(
            plugins, MarketplaceContext(kind="github"), registry=self.registry, clone=clone
        )
        self.assertEqual(collected, [])
        self.assertEqual(len(warnings), 2)
        self.assertTrue(all("outside" in w for w in warnings))

    def test_override_path_climbing_out_is_ignored(self) -> None:
        plugin = MarketplacePlugin(
            "p", "", {"source": "github", "repo": "a/b"}, overrides={"skills": "../victim/secret"}
        )
        clone = FakeClone({"skills/fine/SKILL.md": skill_md("fine")})
        collected, _ = collect_marketplace_skills(
            [plugin], MarketplaceContext(kind="github"), registry=self.registry, clone=clone
        )
        self.assertEqual([c.skill.name for c in collected], ["fine"])

    def test_local_source_outside_marketplace_root_is_skipped(self) -> None:
        market = write_tree(self.tmp / "market", {"plugins/ok/skills/fine/SKILL.md": skill_md("fine")})
        plugins = [
            MarketplacePlugin("ok", "", "./plugins/ok"),
            MarketplacePlugin("evil", "", "../victim"),
        ]
        collected, warnings = collect_marketplace_skills(
            plugins, MarketplaceContext(kind="local", base_dir=market), registry=self.registry
        )
        self.assertEqual([c.skill.name for c in collected], ["fine"])
        self.assertEqual(warnings, ["evil: plugin path points outside of its source"])


class TestResolvePluginSource(unittest.TestCase):
    def test_string_source_in_repo_context(self) -> None:
        context = MarketplaceContext(kind="github", repo=RepoLocation("github", "acme/market", "dev"))
        plugin = MarketplacePlugin(name="p", description="", source="./docs", plugin_root="plugins")
        resolved = resolve_plugin_source(plugin, context)
        self.assertEqual(resolved.kind, "github")
        self.assertEqual(resolved.repo, RepoLocation("github", "acme/market", "dev", "plugins/docs"))

    def test_url_context_string_source_is_unsupported(self) -> None:
        context = MarketplaceContext(kind="url", base_url="https://example.com")
        resolved = resolve_plugin_source(MarketplacePlugin("p", "", "./x"), context)
        self.assertEqual(resolved.kind, "unsupported")

    def test_object_sources(self) -> None:
        context = MarketplaceContext(kind="local", base_dir=Path("/m"))
        gitlab = resolve_plugin_source(
            MarketplacePlugin("p", "", {"source": "gitlab", "repo": "/grp/sub/proj/", "ref": "v1"}), context
        )
        self.assertEqual(gitlab.repo.clone_url, "https://gitlab.com/grp/sub/proj.git")
        self.assertEqual(gitlab.repo.ref, "v1")

        url = resolve_plugin_source(
            MarketplacePlugin("p", "", {"source": "url", "url": "https://github.com/acme/tools.git"}), context
        )
        self.assertEqual(url.kind, "github")
        self.assertEqual(url.repo.project, "acme/tools")

        bad = resolve_plugin_source(MarketplacePlugin("p", "", {"source": "github", "repo": "acme"}), context)
        self.assertEqual(bad.reason, "Invalid GitHub repo format")

    def test_override_paths(self) -> None:
        paths = override_paths({"skills": ["./custom"], "commands": "cmds", "hooks": 3})
        self.assertEqual(paths[:4], ["skills", "commands", "agents", "hooks"])
        self.assertIn("./custom", paths)
        self.assertIn("cmds", paths)


class TestRemoteMarketplace(unittest.TestCase):
    def test_shorthand_falls_back_to_master(self) -> None:
        doc = {"plugins": [{"name": "p", "source": "./p"}]}
        client = mock_client(
            {
                "https://raw.githubusercontent.com/acme/market/master/.claude-plugin/marketplace.json": httpx.Response(
                    200, json=doc
                )
            }
        )
        try:
            data, context = load_marketplace("acme/market", client=client)
        finally:
            client.close()

        self.assertEqual(data, doc)
        self.assertEqual(context.kind, "github")
        self.assertEqual(context.repo, RepoLocation("github", "acme/market", "master"))

    def test_raw_url_strips_plugin_dir(self) -> None:
        url = "https://raw.githubusercontent.com/acme/market/dev/.claude-plugin/marketplace.json"
        client = mock_client({url: httpx.Response(200, json={"plugins": []})})
        try:
            _, context = load_marketplace(url, client=client)
        finally:
            client.close()

        self.assertEqual(context.repo, RepoLocation("github", "acme/market", "dev", ""))

    def test_missing_marketplace(self) -> None:
        client = mock_client()
        try:
            with self.assertRaises(NotFoundError):
                load_marketplace("acme/nothing", client=client)
        finally:
            client.close()


if __name__ == "__main__":
    unittest.main()
