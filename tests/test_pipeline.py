from __future__ import annotations

from pathlib import Path
import tempfile
import threading
import unittest

from cargo_stub import ALLOWLIST, CargoStub, write_workspace
from core.command_runner import RecordingCommandRunner
from deckbuild.errors import (
    CacheKeyMismatchError,
    CompilationError,
    ConfigurationError,
    StaleDependencyArtifactsError,
    UnsupportedPlatformError,
)
from deckbuild.pipeline import CachedBuildPipeline, PipelineState
from deckbuild.platform import Platform
from deckbuild.platform_config import PlatformConfig
from deckbuild.source_filter import filter_sources
from deckbuild.store import ArtifactStore
from deckbuild.toolchains import ToolchainResolver

LINUX = Platform.parse("x86_64-linux")


class CachedBuildPipelineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        base = Path(self.temp_dir.name)
        self.root = write_workspace(base / "src")
        self.store = ArtifactStore(base / "store")
        self.toolchain = ToolchainResolver().resolve(LINUX)
        self.inputs = PlatformConfig().native_inputs(LINUX)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _tree(self):
        return filter_sources(self.root, ALLOWLIST, name="notedeck")

    def _pipeline(self, runner, **kwargs) -> CachedBuildPipeline:
        return CachedBuildPipeline(self.store, runner, **kwargs)

    def test_two_stage_build_produces_member_executables(self) -> None:
        cargo = CargoStub()
        pipeline = self._pipeline(cargo)
        self.assertIs(pipeline.state, PipelineState.UNBUILT)
        artifacts = pipeline.build(self._tree(), self.toolchain, self.inputs)

        self.assertIs(pipeline.state, PipelineState.WORKSPACE_BUILT)
        self.assertEqual(cargo.count("dependencies"), 1)
        self.assertEqual(cargo.count("workspace"), 1)
        self.assertEqual(artifacts.members, ("app", "notedeck"))
        self.assertEqual(artifacts.executables_of("notedeck"), ("notedeck",))
        self.assertTrue(artifacts.executable_path("app").is_file())
        self.assertEqual(cargo.restored, [True])

        command = cargo.invocations[0]["command"]
        self.assertEqual(command, ["cargo", "build", "--workspace", "--locked", "--profile", "release"])
        env = cargo.invocations[0]["env"]
        self.assertEqual(env["RUSTUP_TOOLCHAIN"], self.toolchain.version)
        self.assertEqual(env["CARGO_TERM_COLOR"], "never")

    def test_dependency_stage_compiles_skeleton_only(self) -> None:
        cargo = CargoStub()
        self._pipeline(cargo).build_dependencies_only(self._tree(), self.toolchain, self.inputs)
        self.assertEqual(cargo.count(), 1)
        self.assertEqual(cargo.invocations[0]["stage"], "dependencies")
        self.assertEqual(cargo.invocations[0]["main_rs"], "fn main() {}\n")

    def test_rebuilding_unchanged_inputs_is_a_cache_hit(self) -> None:
        cargo = CargoStub()
        first = self._pipeline(cargo).build(self._tree(), self.toolchain, self.inputs)
        second = self._pipeline(cargo).build(self._tree(), self.toolchain, self.inputs)
        self.assertEqual(first.key, second.key)
        self.assertEqual(first.dependency_key, second.dependency_key)
        self.assertEqual(cargo.count(), 2)

    def test_source_edit_reuses_dependency_artifacts(self) -> None:
        cargo = CargoStub()
        pipeline = self._pipeline(cargo)
        first = pipeline.build(self._tree(), self.toolchain, self.inputs)
        (self.root / "src" / "main.rs").write_text('fn main() { println!("v2"); }\n', encoding="utf-8")
        second = pipeline.build(self._tree(), self.toolchain, self.inputs)

        self.assertEqual(first.dependency_key, second.dependency_key)
        self.assertNotEqual(first.key, second.key)
        self.assertEqual(cargo.count("dependencies"), 1)
        self.assertEqual(cargo.count("workspace"), 2)

    def test_manifest_edit_changes_dependency_key(self) -> None:
        pipeline = self._pipeline(CargoStub())
        before = pipeline.dependency_key(self._tree(), self.toolchain, self.inputs)
        manifest = self.root / "Cargo.toml"
        manifest.write_text(manifest.read_text(encoding="utf-8") + 'bar = "2.0"\n', encoding="utf-8")
        after = pipeline.dependency_key(self._tree(), self.toolchain, self.inputs)
        self.assertNotEqual(before, after)

    def test_toolchain_and_profile_change_keys(self) -> None:
        tree = self._tree()
        release = self._pipeline(CargoStub()).dependency_key(tree, self.toolchain, self.inputs)
        dev = self._pipeline(CargoStub(), profile="dev").dependency_key(tree, self.toolchain, self.inputs)
        other = ToolchainResolver(version="1.76.0").resolve(LINUX)
        bumped = self._pipeline(CargoStub()).dependency_key(tree, other, self.inputs)
        self.assertEqual(len({release, dev, bumped}), 3)

    def test_stale_dependency_artifacts_are_rejected(self) -> None:
        cargo = CargoStub()
        pipeline = self._pipeline(cargo)
        dependencies = pipeline.build_dependencies_only(self._tree(), self.toolchain, self.inputs)
        manifest = self.root / "crates" / "app" / "Cargo.toml"
        manifest.write_text(manifest.read_text(encoding="utf-8") + 'bar = "2.0"\n', encoding="utf-8")

        with self.assertRaises(StaleDependencyArtifactsError) as ctx:
            pipeline.build_workspace(self._tree(), self.toolchain, self.inputs, dependencies)
        self.assertIsInstance(ctx.exception, CacheKeyMismatchError)
        self.assertEqual(cargo.count("workspace"), 0)

    def test_artifacts_for_another_profile_are_stale(self) -> None:
        cargo = CargoStub()
        dependencies = self._pipeline(cargo, profile="dev").build_dependencies_only(self._tree(), self.toolchain, self.inputs)
        with self.assertRaises(StaleDependencyArtifactsError) as ctx:
            self._pipeline(cargo).build_workspace(self._tree(), self.toolchain, self.inputs, dependencies)
        self.assertIn("profile", str(ctx.exception))
        self.assertEqual(cargo.count("workspace"), 0)

    def test_artifacts_for_another_toolchain_are_stale(self) -> None:
        pipeline = self._pipeline(CargoStub())
        dependencies = pipeline.build_dependencies_only(self._tree(), self.toolchain, self.inputs)
        other = ToolchainResolver(version="1.76.0").resolve(LINUX)
        with self.assertRaises(StaleDependencyArtifactsError):
            pipeline.build_workspace(self._tree(), other, self.inputs, dependencies)

    def test_compilation_failure_names_member(self) -> None:
        cargo = CargoStub(
            fail_stage="workspace",
            fail_output="error[E0425]: cannot find value `x`\nerror: could not compile `app` due to previous error",
        )
        pipeline = self._pipeline(cargo)
        with self.assertRaises(CompilationError) as ctx:
            pipeline.build(self._tree(), self.toolchain, self.inputs)
        error = ctx.exception
        self.assertEqual(error.stage, "workspace")
        self.assertEqual(error.member, "app")
        self.assertIn("E0425", error.output)
        self.assertIs(pipeline.state, PipelineState.DEPENDENCIES_BUILT)
        self.assertEqual(self.store.entries()[0].kind, "dependencies")

    def test_missing_executable_is_a_compilation_error(self) -> None:
        cargo = CargoStub(binaries=("notedeck",))
        with self.assertRaises(CompilationError) as ctx:
            self._pipeline(cargo).build(self._tree(), self.toolchain, self.inputs)
        self.assertEqual(ctx.exception.member, "app")

    def test_lockfile_is_required(self) -> None:
        (self.root / "Cargo.lock").unlink()
        with self.assertRaises(ConfigurationError):
            self._pipeline(CargoStub()).build(self._tree(), self.toolchain, self.inputs)

    def test_compiler_component_is_required(self) -> None:
        toolchain = ToolchainResolver().resolve(LINUX, ["cargo", "clippy"])
        with self.assertRaises(ConfigurationError):
            self._pipeline(CargoStub()).build(self._tree(), toolchain, self.inputs)

    def test_missing_build_tool_is_reported(self) -> None:
        pipeline = self._pipeline(CargoStub(), tool_locator=lambda name: None)
        with self.assertRaises(UnsupportedPlatformError) as ctx:
            pipeline.build(self._tree(), self.toolchain, self.inputs)
        self.assertEqual(ctx.exception.identifier, "pkg-config")

    def test_platform_mismatch_is_rejected(self) -> None:
        darwin_inputs = PlatformConfig().native_inputs(Platform.parse("aarch64-darwin"))
        with self.assertRaises(ConfigurationError):
            self._pipeline(CargoStub()).build(self._tree(), self.toolchain, darwin_inputs)

    def test_concurrent_builds_compile_once(self) -> None:
        cargo = CargoStub(delay=0.2)
        tree = self._tree()
        results = []

        def worker() -> None:
            results.append(self._pipeline(cargo).build(tree, self.toolchain, self.inputs))

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(len(results), 2)
        self.assertEqual(results[0].key, results[1].key)
        self.assertEqual(cargo.count("dependencies"), 1)
        self.assertEqual(cargo.count("workspace"), 1)

    def test_dev_profile_reads_debug_directory(self) -> None:
        cargo = CargoStub()
        artifacts = self._pipeline(cargo, profile="dev").build(self._tree(), self.toolchain, self.inputs)
        self.assertEqual(artifacts.profile, "dev")
        self.assertTrue(artifacts.executable_path("notedeck").is_file())

    def test_wasm_target_outputs(self) -> None:
        cargo = CargoStub()
        toolchain = ToolchainResolver().resolve(LINUX, target="wasm32-unknown")
        artifacts = self._pipeline(cargo).build(self._tree(), toolchain, self.inputs)
        self.assertEqual(artifacts.executables_of("notedeck"), ("notedeck",))
        self.assertEqual(artifacts.executable_path("notedeck").name, "notedeck.wasm")
        self.assertTrue(artifacts.executable_path("notedeck").is_file())
        self.assertIn("wasm32-unknown-unknown", cargo.invocations[0]["command"])

    def test_invalid_profile_name(self) -> None:
        with self.assertRaises(ConfigurationError):
            self._pipeline(RecordingCommandRunner(), profile="../release")


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
