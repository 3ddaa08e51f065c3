from __future__ import annotations

from pathlib import Path
import tempfile
import textwrap
import unittest

from cargo_stub import ALLOWLIST, write_workspace
from deckbuild.errors import ConfigurationError
from deckbuild.source_filter import filter_sources
from deckbuild.workspace import Workspace


class WorkspaceModelTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = write_workspace(Path(self.temp_dir.name))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _workspace(self) -> Workspace:
        return Workspace.from_source_tree(filter_sources(self.root, ALLOWLIST, name="notedeck"))

    def test_members_and_executables(self) -> None:
        workspace = self._workspace()
        self.assertEqual(workspace.member_names(), ("notedeck", "app"))
        self.assertEqual(workspace.member("notedeck").executables, ("notedeck",))
        self.assertEqual(workspace.member("app").executables, ("app",))
        self.assertEqual(workspace.member("app").directory, "crates/app")

    def test_external_dependencies_exclude_members(self) -> None:
        self.assertEqual(self._workspace().dependencies, ("foo",))

    def test_unknown_member_lists_available(self) -> None:
        with self.assertRaises(ConfigurationError) as ctx:
            self._workspace().member("columns")
        self.assertEqual(ctx.exception.identifier, "columns")
        self.assertIn("app", str(ctx.exception))

    def test_autobins_and_build_script(self) -> None:
        (self.root / "src" / "bin").mkdir()
        (self.root / "src" / "bin" / "helper.rs").write_text("fn main() {}\n", encoding="utf-8")
        (self.root / "src" / "bin" / "multi").mkdir()
        (self.root / "src" / "bin" / "multi" / "main.rs").write_text("fn main() {}\n", encoding="utf-8")
        (self.root / "src" / "lib.rs").write_text("", encoding="utf-8")
        manifest = self.root / "crates" / "app" / "Cargo.toml"
        manifest.write_text(
            textwrap.dedent(
                """
                [package]
                name = "app"
                version = "0.1.0"
                build = "build.rs"
                """
            ),
            encoding="utf-8",
        )
        (self.root / "crates" / "app" / "build.rs").write_text("fn main() {}\n", encoding="utf-8")

        workspace = self._workspace()
        self.assertEqual(workspace.member("notedeck").executables, ("notedeck", "helper", "multi"))
        stubs = dict(workspace.stub_targets())
        self.assertEqual(stubs["src/lib.rs"], "")
        self.assertEqual(stubs["src/bin/multi/main.rs"], "fn main() {}\n")
        self.assertIn("crates/app/build.rs", stubs)

    def test_member_glob_patterns(self) -> None:
        (self.root / "Cargo.toml").write_text(
            textwrap.dedent(
                """
                [workspace]
                members = ["crates/*"]
                exclude = ["crates/skip"]
                """
            ),
            encoding="utf-8",
        )
        skip = self.root / "crates" / "skip"
        (skip / "src").mkdir(parents=True)
        (skip / "Cargo.toml").write_text('[package]\nname = "skip"\nversion = "0.1.0"\n', encoding="utf-8")
        (skip / "src" / "main.rs").write_text("fn main() {}\n", encoding="utf-8")

        workspace = self._workspace()
        self.assertEqual(workspace.member_names(), ("app",))

    def test_member_glob_matches_one_path_segment(self) -> None:
        (self.root / "Cargo.toml").write_text(
            textwrap.dedent(
                """
                [workspace]
                members = ["crates/*"]
                """
            ),
            encoding="utf-8",
        )
        fuzz = self.root / "crates" / "app" / "fuzz"
        (fuzz / "src").mkdir(parents=True)
        (fuzz / "Cargo.toml").write_text('[package]\nname = "app-fuzz"\nversion = "0.1.0"\n', encoding="utf-8")
        (fuzz / "src" / "main.rs").write_text("fn main() {}\n", encoding="utf-8")

        self.assertEqual(self._workspace().member_names(), ("app",))

    def test_manifest_without_package_or_workspace(self) -> None:
        (self.root / "Cargo.toml").write_text('[dependencies]\nfoo = "1"\n', encoding="utf-8")
        with self.assertRaises(ConfigurationError):
            self._workspace()


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
