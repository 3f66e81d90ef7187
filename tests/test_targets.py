import pytest

from bundlr.targets import (
    OptimizeLevel,
    TargetPlatform,
    distribution_triple,
    platform_tags,
    python_executable_path,
    site_packages_path,
    uv_platform,
)


def test_all_expands_to_six_concrete_targets():
    targets = TargetPlatform.ALL.get_target_list()
    assert len(targets) == 6
    assert TargetPlatform.ALL not in targets
    assert targets[0] is TargetPlatform.LINUX_X86_64


def test_single_target_expands_to_itself():
    assert TargetPlatform.MACOS_AARCH64.get_target_list() == [TargetPlatform.MACOS_AARCH64]


def test_parse_rejects_unknown_target():
    assert TargetPlatform.parse("Windows-X86_64") is TargetPlatform.WINDOWS_X86_64
    with pytest.raises(ValueError, match="linux-aarch64"):
        TargetPlatform.parse("solaris-sparc")


def test_executable_extension_only_on_windows():
    assert TargetPlatform.WINDOWS_AARCH64.executable_extension == ".exe"
    assert TargetPlatform.LINUX_X86_64.executable_extension == ""
    assert TargetPlatform.MACOS_X86_64.os_name == "macos"
    assert TargetPlatform.MACOS_X86_64.arch == "x86_64"


def test_platform_tags_end_with_any():
    for target in TargetPlatform:
        assert platform_tags(target)[-1] == "any"
    assert platform_tags(TargetPlatform.WINDOWS_X86_64)[0] == "win_amd64"


def test_all_has_no_single_platform_triple():
    assert uv_platform(TargetPlatform.ALL) is None
    assert uv_platform(TargetPlatform.LINUX_AARCH64) == "aarch64-unknown-linux-gnu"
    with pytest.raises(ValueError):
        distribution_triple(TargetPlatform.ALL)


def test_runtime_layout_paths():
    assert python_executable_path(TargetPlatform.WINDOWS_X86_64) == "python.exe"
    assert python_executable_path(TargetPlatform.LINUX_X86_64) == "bin/python3"
    assert site_packages_path(TargetPlatform.MACOS_AARCH64, "3.14") == "lib/python3.14/site-packages"
    assert site_packages_path(TargetPlatform.WINDOWS_X86_64, "3.14") == "Lib/site-packages"


def test_optimize_level_values():
    assert OptimizeLevel("balanced") is OptimizeLevel.BALANCED
    assert {level.value for level in OptimizeLevel} == {"size", "speed", "compatibility", "balanced"}
