import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from skillport.skill_lock import CURRENT_VERSION, SkillLockEntry, SkillLockStore, SkillOrigin


class TestSkillLockStore(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.addCleanup(self._td.cleanup)
        self.cwd = Path(self._td.name) / "project"
        self.home = Path(self._td.name) / "home"
        self.store = SkillLockStore("project", cwd=self.cwd, home=self.home)

    def _entry(self, folder_hash: str = "abc") -> SkillLockEntry:
        return SkillLockEntry(
            source="acme/widgets",
            source_type="github",
            source_url="https://github.com/acme/widgets.git",
            skill_folder_hash=folder_hash,
            skill_path="skills/pdf/SKILL.md",
        )

    def test_paths_per_scope(self) -> None:
        self.assertEqual(self.store.path, self.cwd / ".agents" / ".skill-lock.json")
        global_store = SkillLockStore("global", cwd=self.cwd, home=self.home)
        self.assertEqual(global_store.path, self.home / ".agents" / ".skill-lock.json")

    def test_missing_file_reads_empty(self) -> None:
        doc = self.store.read()
        self.assertEqual(doc["version"], CURRENT_VERSION)
        self.assertEqual(doc["skills"], {})
        self.assertEqual(self.store.all_entries(), {})

    def test_add_entry_writes_camel_case_document(self) -> None:
        self.store.add_entry("pdf", self._entry())

        raw = json.loads(self.store.path.read_text(encoding="utf-8"))
        self.assertEqual(raw["version"], CURRENT_VERSION)
        stored = raw["skills"]["pdf"]
        self.assertEqual(stored["sourceType"], "github")
        self.assertEqual(stored["skillFolderHash"], "abc")
        self.assertEqual(stored["skillPath"], "skills/pdf/SKILL.md")
        self.assertIn("installedAt", stored)
        self.assertIn("updatedAt", stored)

    def test_add_entry_preserves_installed_at(self) -> None:
        with patch("skillport.skill_lock._utc_now", return_value="2026-01-01T00:00:00Z"):
            self.store.add_entry("pdf", self._entry("old"))
        with patch("skillport.skill_lock._utc_now", return_value="2026-02-01T00:00:00Z"):
            updated = self.store.add_entry("pdf", self._entry("new"))

        self.assertEqual(updated.installed_at, "2026-01-01T00:00:00Z")
        self.assertEqual(updated.updated_at, "2026-02-01T00:00:00Z")
        entry = self.store.get_entry("pdf")
        self.assertEqual(entry.skill_folder_hash, "new")
        self.assertEqual(entry.installed_at, "2026-01-01T00:00:00Z")

    def test_old_version_is_discarded(self) -> None:
        self.store.path.parent.mkdir(parents=True)
        self.store.path.write_text(
            json.dumps({"version": 2, "skills": {"pdf": self._entry().to_json()}}), encoding="utf-8"
        )
        self.assertEqual(self.store.all_entries(), {})

        self.store.add_entry("other", self._entry())
        raw = json.loads(self.store.path.read_text(encoding="utf-8"))
        self.assertEqual(sorted(raw["skills"]), ["other"])
        self.assertEqual(raw["version"], CURRENT_VERSION)

    def test_unversioned_or_corrupt_documents_are_discarded(self) -> None:
        self.store.path.parent.mkdir(parents=True)
        for content in ('{"skills": {}}', '{"version": true, "skills": {}}', "not json", "[]"):
            self.store.path.write_text(content, encoding="utf-8")
            self.assertEqual(self.store.read()["skills"], {}, content)

    def test_remove_entry_and_grouping(self) -> None:
        self.store.add_entry("pdf", self._entry())
        self.store.add_entry("docx", self._entry())
        self.store.add_entry(
            "local-one",
            SkillOrigin(source="/tmp/x", source_type="local", source_url="/tmp/x").to_entry(),
        )

        self.assertEqual(
            self.store.skills_by_source(),
            {"acme/widgets": ["docx", "pdf"], "/tmp/x": ["local-one"]},
        )
        self.assertTrue(self.store.remove_entry("pdf"))
        self.assertFalse(self.store.remove_entry("pdf"))
        self.assertEqual(sorted(self.store.all_entries()), ["docx", "local-one"])

    def test_prompts_and_selected_agents(self) -> None:
        self.assertFalse(self.store.is_prompt_dismissed("find-skills"))
        self.store.dismiss_prompt("find-skills")
        self.assertTrue(self.store.is_prompt_dismissed("find-skills"))

        self.assertEqual(self.store.last_selected_agents(), [])
        self.store.save_selected_agents(["cursor", "claude-code"])
        self.assertEqual(self.store.last_selected_agents(), ["cursor", "claude-code"])


if __name__ == "__main__":
    unittest.main()
