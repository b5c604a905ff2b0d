import tempfile
import unittest
import zipfile
from pathlib import Path

import httpx

from skillport.archive import download_archive, extract_archive, normalize_entry_name
from skillport.client import SkillportClient, SkillportError


class TestNormalizeEntryName(unittest.TestCase):
    def test_normalization(self) -> None:
        self.assertEqual(normalize_entry_name("../evil.txt"), "evil.txt")
        self.assertEqual(normalize_entry_name("a\\b\\SKILL.md"), "a/b/SKILL.md")
        self.assertEqual(normalize_entry_name("./x/../y"), "x/y")
        self.assertIsNone(normalize_entry_name("__MACOSX/._SKILL.md"))
        self.assertIsNone(normalize_entry_name("../"))


class TestExtractArchive(unittest.TestCase):
    def test_traversal_entries_stay_inside(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            archive = root / "skills.zip"
            with zipfile.ZipFile(archive, "w") as zf:
                zf.writestr("../evil.txt", "gotcha")
                zf.writestr("pdf/SKILL.md", "---\nname: pdf\ndescription: d\n---\n")
                zf.writestr("pdf/scripts/", "")
                zf.writestr("__MACOSX/pdf/._SKILL.md", "fork")

            out = extract_archive(archive, root / "out")

            self.assertTrue((out / "evil.txt").is_file())
            self.assertFalse((root / "evil.txt").exists())
            self.assertTrue((out / "pdf" / "SKILL.md").is_file())
            self.assertTrue((out / "pdf" / "scripts").is_dir())
            self.assertFalse((out / "__MACOSX").exists())

    def test_bad_archive(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            bogus = root / "bogus.zip"
            bogus.write_bytes(b"not a zip")
            with self.assertRaises(SkillportError):
                extract_archive(bogus, root / "out")

    def test_download_archive(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"PK-bytes")

        client = SkillportClient()
        client._http = httpx.Client(transport=httpx.MockTransport(handler), follow_redirects=True)  # type: ignore[attr-defined]
        try:
            with tempfile.TemporaryDirectory() as td:
                path = download_archive("https://example.com/s.zip", Path(td) / "sub" / "s.zip", client)
                self.assertEqual(path.read_bytes(), b"PK-bytes")
        finally:
            client.close()


if __name__ == "__main__":
    unittest.main()
