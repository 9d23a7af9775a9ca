import io
import os
import tarfile
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from agentskills.errors import AlreadyInstalled, BundleCorrupt, ExtractionError
from agentskills.installer import BundleInstaller


def _tar_gz(files: dict[str, bytes], *, links: dict[str, str] | None = None) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
        for name, target in (links or {}).items():
            info = tarfile.TarInfo(name)
            info.type = tarfile.SYMTYPE
            info.linkname = target
            tar.addfile(info)
    return buf.getvalue()


class TestBundleInstaller(unittest.TestCase):
    def test_installs_files(self) -> None:
        bundle = _tar_gz({"SKILL.md": b"# alpha\n", "scripts/run.sh": b"echo hi\n"})
        with tempfile.TemporaryDirectory() as td:
            dest = Path(td) / "skills" / "alpha"
            out = BundleInstaller().install(bundle, dest, bundle_id="tx", skill="alpha")
            self.assertEqual(out, dest)
            self.assertEqual((dest / "SKILL.md").read_text(encoding="utf-8"), "# alpha\n")
            self.assertTrue((dest / "scripts" / "run.sh").is_file())
            self.assertEqual(sorted(p.name for p in dest.parent.iterdir()), ["alpha"])

    def test_single_top_level_directory_is_unwrapped(self) -> None:
        bundle = _tar_gz({"alpha/SKILL.md": b"# alpha\n", "alpha/ref/notes.md": b"n\n"})
        with tempfile.TemporaryDirectory() as td:
            dest = Path(td) / "alpha"
            BundleInstaller().install(bundle, dest)
            self.assertTrue((dest / "SKILL.md").is_file())
            self.assertTrue((dest / "ref" / "notes.md").is_file())

    def test_accepts_file_objects(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            dest = Path(td) / "alpha"
            BundleInstaller().install(io.BytesIO(_tar_gz({"SKILL.md": b"x"})), dest)
            self.assertTrue((dest / "SKILL.md").is_file())

    def test_existing_destination_without_overwrite(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            dest = Path(td) / "alpha"
            dest.mkdir()
            (dest / "SKILL.md").write_text("old", encoding="utf-8")
            with self.assertRaises(AlreadyInstalled) as ctx:
                BundleInstaller().install(_tar_gz({"SKILL.md": b"new"}), dest, skill="alpha")
            self.assertIn("--force", str(ctx.exception))
            self.assertEqual((dest / "SKILL.md").read_text(encoding="utf-8"), "old")

    def test_overwrite_replaces_contents(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            dest = Path(td) / "alpha"
            dest.mkdir()
            (dest / "stale.txt").write_text("stale", encoding="utf-8")
            BundleInstaller().install(_tar_gz({"SKILL.md": b"new"}), dest, overwrite=True)
            self.assertEqual(sorted(p.name for p in dest.iterdir()), ["SKILL.md"])
            self.assertEqual(sorted(p.name for p in Path(td).iterdir()), ["alpha"])

    def test_corrupt_bundle_keeps_previous_install(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            dest = Path(td) / "alpha"
            dest.mkdir()
            (dest / "SKILL.md").write_text("old", encoding="utf-8")
            bundle = _tar_gz({"SKILL.md": os.urandom(64 * 1024)})
            with self.assertRaises(BundleCorrupt):
                BundleInstaller().install(bundle[: len(bundle) // 2], dest, overwrite=True, bundle_id="tx")
            self.assertEqual((dest / "SKILL.md").read_text(encoding="utf-8"), "old")
            self.assertEqual(sorted(p.name for p in Path(td).iterdir()), ["alpha"])

    def test_unsafe_members_rejected(self) -> None:
        bundles = {
            "parent": _tar_gz({"../evil.txt": b"x"}),
            "absolute": _tar_gz({"/etc/evil.txt": b"x"}),
            "nested parent": _tar_gz({"ok/../../evil.txt": b"x"}),
            "symlink": _tar_gz({"SKILL.md": b"x"}, links={"link": "/etc/passwd"}),
        }
        for label, bundle in bundles.items():
            with self.subTest(label), tempfile.TemporaryDirectory() as td:
                dest = Path(td) / "skills" / "alpha"
                with self.assertRaises(BundleCorrupt):
                    BundleInstaller().install(bundle, dest, bundle_id="tx", skill="alpha")
                self.assertFalse(dest.exists())
                self.assertFalse((Path(td) / "evil.txt").exists())
                self.assertEqual(list(dest.parent.iterdir()), [])

    def test_not_a_gzip_tar(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(BundleCorrupt):
                BundleInstaller().install(b"\x1f\x8bgarbage", Path(td) / "alpha", bundle_id="tx")

    def test_failed_promote_restores_backup(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            dest = Path(td) / "alpha"
            dest.mkdir()
            (dest / "SKILL.md").write_text("old", encoding="utf-8")

            real_rename = Path.rename

            def flaky_rename(self_path: Path, target):
                # Moving the staged tree onto the destination fails; other renames work.
                if self_path.name == "unpacked":
                    raise OSError(28, "No space left on device")
                return real_rename(self_path, target)

            with patch.object(Path, "rename", flaky_rename):
                with self.assertRaises(ExtractionError):
                    BundleInstaller().install(_tar_gz({"SKILL.md": b"new"}), dest, overwrite=True)
            self.assertEqual((dest / "SKILL.md").read_text(encoding="utf-8"), "old")
            self.assertEqual(sorted(p.name for p in Path(td).iterdir()), ["alpha"])

    def test_failed_restore_reports_backup_location(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            dest = Path(td) / "alpha"
            dest.mkdir()
            (dest / "SKILL.md").write_text("old", encoding="utf-8")

            real_rename = Path.rename

            def flaky_rename(self_path: Path, target):
                # Only moving the old install aside succeeds.
                if self_path.name == "unpacked" or ".backup-" in self_path.name:
                    raise OSError(28, "No space left on device")
                return real_rename(self_path, target)

            with patch.object(Path, "rename", flaky_rename):
                with self.assertLogs("agentskills.installer", level="ERROR") as logs:
                    with self.assertRaises(ExtractionError) as ctx:
                        BundleInstaller().install(_tar_gz({"SKILL.md": b"new"}), dest, overwrite=True)

            backups = [p for p in Path(td).iterdir() if ".backup-" in p.name]
            self.assertEqual(len(backups), 1)
            self.assertEqual((backups[0] / "SKILL.md").read_text(encoding="utf-8"), "old")
            self.assertIn(str(backups[0]), str(ctx.exception))
            self.assertIn(str(backups[0]), logs.output[0])
            self.assertFalse(dest.exists())


if __name__ == "__main__":
    unittest.main()
