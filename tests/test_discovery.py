import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from skillport.client import SkillportError
from skillport.discovery import (
    discover_skills,
    find_skill_by_name,
    is_denied_path,
    parse_front_matter,
    parse_skill_md,
    split_front_matter,
)


def _write_skill(directory: Path, name: str, description: str = "Does things", extra: str = "") -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "SKILL.md").write_text(
        f"---\nname: {name}\ndescription: {description}\n{extra}---\n\n# {name}\n",
        encoding="utf-8",
    )
    return directory


class TestFrontMatter(unittest.TestCase):
    def test_split_front_matter_keeps_body_rules(self) -> None:
        text = "---\nname: a\n---\nbody\n---\nmore\n"
        yaml_text, body = split_front_matter(text)
        self.assertEqual(yaml_text, "name: a")
        self.assertEqual(body, "body\n---\nmore\n")

    def test_parse_front_matter(self) -> None:
        self.assertEqual(
            parse_front_matter("\ufeff---\nname: x\nmetadata:\n  internal: true\n---\n"),
            {"name": "x", "metadata": {"internal": True}},
        )
        self.assertIsNone(parse_front_matter("# no front matter"))
        self.assertIsNone(parse_front_matter("---\n- a list\n---\n"))
        self.assertIsNone(parse_front_matter("---\nname: [unclosed\n---\n"))

    def test_parse_skill_md_requires_name_and_description(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            ok = _write_skill(root / "ok", "ok-skill", "Handles PDFs")
            (root / "bad").mkdir()
            (root / "bad" / "SKILL.md").write_text("---\nname: bad\n---\n", encoding="utf-8")

            skill = parse_skill_md(ok / "SKILL.md")
            self.assertIsNotNone(skill)
            self.assertEqual(skill.name, "ok-skill")
            self.assertEqual(skill.description, "Handles PDFs")
            self.assertEqual(skill.path, ok)
            self.assertIsNone(parse_skill_md(root / "bad" / "SKILL.md"))
            self.assertIsNone(parse_skill_md(root / "missing" / "SKILL.md"))


class TestDiscoverSkills(unittest.TestCase):
    def test_skills_and_skill_packs_roots(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            _write_skill(root / "skills" / "alpha", "alpha")
            _write_skill(root / "skill-packs" / "beta", "beta")
            _write_skill(root / "elsewhere" / "gamma", "gamma")

            names = [s.name for s in discover_skills(root)]

        self.assertEqual(names, ["alpha", "beta"])

    def test_nested_skill_pack_and_missing_description(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            _write_skill(root / "skills" / "beta", "beta")
            _write_skill(root / "skill-packs" / "development" / "alpha", "alpha")
            (root / "skills" / "broken").mkdir()
            (root / "skills" / "broken" / "SKILL.md").write_text("---\nname: broken\n---\n", encoding="utf-8")

            names = sorted(s.name for s in discover_skills(root))

        self.assertEqual(names, ["alpha", "beta"])

    def test_direct_manifest_short_circuits(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            _write_skill(root, "top")
            _write_skill(root / "skills" / "nested", "nested")

            skills = discover_skills(root)

        self.assertEqual([s.name for s in skills], ["top"])

    def test_subpath(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            _write_skill(root / "tools" / "foo", "foo")
            _write_skill(root / "skills" / "bar", "bar")

            skills = discover_skills(root, "tools/foo")

        self.assertEqual([s.name for s in skills], ["foo"])

    def test_subpath_outside_root_is_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td) / "repo"
            _write_skill(root / "skills" / "bar", "bar")
            _write_skill(Path(td) / "victim" / "secret", "secret")

            with self.assertRaises(SkillportError):
                discover_skills(root, "../victim")

    def test_marketplace_root_outside_search_root_is_ignored(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td) / "repo"
            (root / ".claude-plugin").mkdir(parents=True)
            (root / ".claude-plugin" / "marketplace.json").write_text(
                '{"plugins": [{"name": "evil", "source": "../outside"}]}', encoding="utf-8"
            )
            _write_skill(root / "skills" / "ok", "ok")
            _write_skill(Path(td) / "outside" / "skills" / "evil", "evil")

            names = [s.name for s in discover_skills(root)]

        self.assertEqual(names, ["ok"])

    def test_fallback_scan_with_denylist(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            _write_skill(root / "a" / "one", "one")
            _write_skill(root / "deprecated" / "old", "old")
            _write_skill(root / "node_modules" / "pkg", "pkg")
            _write_skill(root / "x" / "prompts" / "p", "p")

            names = sorted(s.name for s in discover_skills(root))

        self.assertEqual(names, ["one"])

    def test_depth_bound(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            _write_skill(root / "a" / "b" / "c" / "d" / "e", "shallow")
            _write_skill(root / "a" / "b" / "c" / "d" / "e" / "f" / "g", "deep")

            names = sorted(s.name for s in discover_skills(root))

        self.assertEqual(names, ["shallow"])

    def test_dedupes_by_directory_name(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            _write_skill(root / "skills" / "PDF", "first")
            _write_skill(root / ".claude" / "skills" / "pdf", "second")

            names = [s.name for s in discover_skills(root)]

        self.assertEqual(names, ["first"])

    def test_marketplace_and_plugin_roots(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / ".claude-plugin").mkdir()
            (root / ".claude-plugin" / "marketplace.json").write_text(
                '{"plugins": [{"name": "docs", "source": "./docs-plugin"}]}', encoding="utf-8"
            )
            _write_skill(root / "docs-plugin" / "skills" / "writer", "writer")
            _write_skill(root / "plugins" / "extra" / "skills" / "helper", "helper")

            names = [s.name for s in discover_skills(root)]

        self.assertEqual(names, ["writer", "helper"])

    def test_internal_skills_are_hidden_unless_requested(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            _write_skill(root / "skills" / "public", "public")
            _write_skill(root / "skills" / "secret", "secret", extra="metadata:\n  internal: true\n")

            with patch.dict(os.environ, {"SKILLPORT_INCLUDE_INTERNAL": ""}):
                hidden = [s.name for s in discover_skills(root)]
            with patch.dict(os.environ, {"SKILLPORT_INCLUDE_INTERNAL": "1"}):
                shown = [s.name for s in discover_skills(root)]

        self.assertEqual(hidden, ["public"])
        self.assertEqual(shown, ["public", "secret"])

    def test_find_skill_by_name(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            _write_skill(root / "skills" / "pdf-tools", "PDF Tools")
            skills = discover_skills(root)

        self.assertEqual(find_skill_by_name(skills, "pdf tools").name, "PDF Tools")
        self.assertEqual(find_skill_by_name(skills, "PDF-TOOLS").name, "PDF Tools")
        self.assertIsNone(find_skill_by_name(skills, "other"))

    def test_is_denied_path(self) -> None:
        self.assertTrue(is_denied_path("a/.git/b"))
        self.assertTrue(is_denied_path("Backup/x"))
        self.assertFalse(is_denied_path(".claude-plugin/skills"))
        self.assertFalse(is_denied_path("skills/pdf"))


if __name__ == "__main__":
    unittest.main()
