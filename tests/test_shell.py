from __future__ import annotations

import unittest

from core.command_runner import RecordingCommandRunner
from deckbuild.platform import Platform
from deckbuild.platform_config import PlatformConfig
from deckbuild.shell import assemble, launch
from deckbuild.toolchains import ToolchainResolver

LINUX = Platform.parse("x86_64-linux")
MACOS = Platform.parse("aarch64-darwin")


class ShellEnvironmentTests(unittest.TestCase):
    def _spec(self, platform: Platform, environment=None):
        toolchain = ToolchainResolver().resolve(platform)
        return assemble(toolchain, PlatformConfig().native_inputs(platform), environment)

    def test_shell_carries_toolchain_and_log_level(self) -> None:
        spec = self._spec(LINUX)
        self.assertEqual(spec.environment["RUST_LOG"], "info")
        self.assertEqual(spec.environment["RUSTUP_TOOLCHAIN"], "1.75.0")
        for tool in ("rustc", "cargo", "clippy", "rust-analyzer", "rust-src", "pkg-config"):
            self.assertIn(tool, spec.tools)

    def test_darwin_shell_includes_framework_flags(self) -> None:
        spec = self._spec(MACOS)
        self.assertIn("link-arg=SystemConfiguration", spec.environment["RUSTFLAGS"])
        self.assertIn("SystemConfiguration", spec.describe())

    def test_custom_environment_replaces_default(self) -> None:
        spec = self._spec(LINUX, {"RUST_LOG": "debug", "NOTEDECK_DATA": "/tmp/deck data"})
        self.assertEqual(spec.environment["RUST_LOG"], "debug")
        hook = spec.render_hook()
        self.assertIn("export NOTEDECK_DATA='/tmp/deck data'\n", hook)
        self.assertIn("export RUST_LOG=debug\n", hook)

    def test_hook_is_sorted_and_stable(self) -> None:
        first = self._spec(LINUX).render_hook()
        self.assertEqual(first, self._spec(LINUX).render_hook())
        names = [line.split("=", 1)[0] for line in first.splitlines()]
        self.assertEqual(names, sorted(names))

    def test_launch_runs_interactive_shell(self) -> None:
        runner = RecordingCommandRunner()
        spec = self._spec(LINUX)
        result = launch(spec, runner, shell="/bin/bash")
        self.assertEqual(result.returncode, 0)
        record = runner.commands[0]
        self.assertEqual(record.command, ["/bin/bash", "-i"])
        self.assertEqual(record.env["RUST_LOG"], "info")


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
