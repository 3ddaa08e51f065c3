from __future__ import annotations

import unittest

from deckbuild.errors import UnsupportedPlatformError
from deckbuild.platform import Platform, is_linux
from deckbuild.platform_config import GUI_FEATURE, PlatformConfig, extra_inputs_rule

LINUX = Platform.parse("x86_64-linux")
MACOS = Platform.parse("aarch64-darwin")


class PlatformConfigTests(unittest.TestCase):
    def test_macos_links_system_configuration_only(self) -> None:
        inputs = PlatformConfig().native_inputs(MACOS)
        self.assertEqual(inputs.library_names, {"SystemConfiguration"})
        self.assertEqual(inputs.frameworks, ("SystemConfiguration",))
        self.assertEqual(inputs.native_build_tools, ("pkg-config",))

    def test_linux_needs_no_native_libraries(self) -> None:
        inputs = PlatformConfig().native_inputs(LINUX)
        self.assertEqual(inputs.library_names, frozenset())
        self.assertEqual(inputs.native_build_tools, ("pkg-config",))
        self.assertEqual(inputs.environment({"A": "1"}), {"A": "1"})

    def test_gui_feature_adds_desktop_frameworks(self) -> None:
        inputs = PlatformConfig(features=[GUI_FEATURE]).native_inputs(MACOS)
        self.assertEqual(
            inputs.library_names,
            {"SystemConfiguration", "OpenGL", "CoreServices", "AppKit"},
        )
        self.assertEqual(PlatformConfig(features=[GUI_FEATURE]).native_inputs(LINUX).library_names, frozenset())

    def test_framework_link_flags_extend_rustflags(self) -> None:
        inputs = PlatformConfig().native_inputs(MACOS)
        env = inputs.environment({"RUSTFLAGS": "-D warnings"})
        self.assertEqual(
            env["RUSTFLAGS"],
            "-D warnings -C link-arg=-framework -C link-arg=SystemConfiguration",
        )

    def test_same_platform_same_identity(self) -> None:
        config = PlatformConfig()
        self.assertEqual(config.native_inputs(MACOS), config.native_inputs(MACOS))
        self.assertEqual(config.native_inputs(MACOS).identity, PlatformConfig().native_inputs(MACOS).identity)
        self.assertNotEqual(config.native_inputs(MACOS).identity, config.native_inputs(LINUX).identity)

    def test_extra_rules_apply_in_order(self) -> None:
        config = PlatformConfig(
            [extra_inputs_rule("x11", is_linux, libraries=["xcb", "xkbcommon"], tools=["cmake"])],
        )
        inputs = config.native_inputs(LINUX)
        self.assertEqual([entry.name for entry in inputs.native_libraries], ["xcb", "xkbcommon"])
        self.assertEqual(inputs.native_build_tools, ("pkg-config", "cmake"))
        self.assertEqual(config.native_inputs(MACOS).library_names, {"SystemConfiguration"})

    def test_unsupported_platform(self) -> None:
        with self.assertRaises(UnsupportedPlatformError):
            PlatformConfig().native_inputs(Platform.parse("x86_64-windows"))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
