import pytest

from bundlr.collector import interpreter_compatible, matches_platform, score_wheel, select_best_wheel
from bundlr.errors import NoCompatibleWheelError
from bundlr.index import ReleaseFile
from bundlr.targets import TargetPlatform, platform_tags


def _release(filename: str) -> ReleaseFile:
    return ReleaseFile(filename=filename, url=f"https://files.example/{filename}", packagetype="bdist_wheel")


def test_pure_wheel_scores_from_bonuses():
    tags = platform_tags(TargetPlatform.LINUX_X86_64)
    # any matches the last tag (+1), py3 (+10) and abi none (+5)
    assert score_wheel("pkg-1.0.0-py3-none-any.whl", tags) == 16


def test_short_filename_scores_zero():
    assert score_wheel("pkg-1.0.0.whl", ["linux_x86_64", "any"]) == 0
    assert score_wheel("garbage", ["linux_x86_64", "any"]) == 0


@pytest.mark.parametrize("target", [t for t in TargetPlatform if t is not TargetPlatform.ALL])
def test_first_tag_never_scores_below_later_tag(target):
    tags = platform_tags(target)
    for later in tags[1:]:
        first = score_wheel(f"pkg-1.0-cp314-cp314-{tags[0]}.whl", tags)
        other = score_wheel(f"pkg-1.0-cp314-cp314-{later}.whl", tags)
        assert first >= other


def test_select_prefers_platform_specific_build():
    tags = platform_tags(TargetPlatform.LINUX_X86_64)
    candidates = [
        _release("fastpkg-2.0-cp314-cp314-win_amd64.whl"),
        _release("fastpkg-2.0-cp314-cp314-linux_x86_64.whl"),
        _release("fastpkg-2.0-cp313-cp313-linux_x86_64.whl"),
    ]
    best = select_best_wheel(candidates, tags, "cp314")
    assert best.filename == "fastpkg-2.0-cp314-cp314-linux_x86_64.whl"


def test_select_falls_back_to_universal_wheel():
    tags = platform_tags(TargetPlatform.MACOS_AARCH64)
    candidates = [
        _release("pkg-1.0-cp314-cp314-win_amd64.whl"),
        _release("pkg-1.0-py3-none-any.whl"),
    ]
    assert select_best_wheel(candidates, tags, "cp314").filename == "pkg-1.0-py3-none-any.whl"


def test_select_raises_when_nothing_matches():
    tags = platform_tags(TargetPlatform.LINUX_AARCH64)
    with pytest.raises(NoCompatibleWheelError):
        select_best_wheel([_release("pkg-1.0-cp314-cp314-win_arm64.whl")], tags, "cp314")
    with pytest.raises(NoCompatibleWheelError):
        select_best_wheel([], tags)


def test_interpreter_compatibility():
    assert interpreter_compatible("pkg-1.0-py3-none-any.whl", "cp314")
    assert interpreter_compatible("pkg-1.0-cp310-abi3-linux_x86_64.whl", "cp314")
    assert interpreter_compatible("pkg-1.0-cp314-cp314-linux_x86_64.whl", "cp314")
    assert not interpreter_compatible("pkg-1.0-cp313-cp313-linux_x86_64.whl", "cp314")
    assert not interpreter_compatible("not-a-wheel.whl", "cp314")


NUMPY_CP312 = [
    "numpy-2.1.0-cp312-cp312-macosx_10_13_x86_64.whl",
    "numpy-2.1.0-cp312-cp312-macosx_11_0_arm64.whl",
    "numpy-2.1.0-cp312-cp312-macosx_14_0_arm64.whl",
    "numpy-2.1.0-cp312-cp312-macosx_14_0_x86_64.whl",
    "numpy-2.1.0-cp312-cp312-manylinux_2_17_aarch64.manylinux2014_aarch64.whl",
    "numpy-2.1.0-cp312-cp312-manylinux_2_17_x86_64.manylinux2014_x86_64.whl",
    "numpy-2.1.0-cp312-cp312-musllinux_1_1_x86_64.whl",
    "numpy-2.1.0-cp312-cp312-musllinux_1_2_aarch64.whl",
    "numpy-2.1.0-cp312-cp312-win32.whl",
    "numpy-2.1.0-cp312-cp312-win_amd64.whl",
]


@pytest.mark.parametrize(
    "target, expected",
    [
        (TargetPlatform.LINUX_X86_64, "numpy-2.1.0-cp312-cp312-manylinux_2_17_x86_64.manylinux2014_x86_64.whl"),
        (TargetPlatform.LINUX_AARCH64, "numpy-2.1.0-cp312-cp312-manylinux_2_17_aarch64.manylinux2014_aarch64.whl"),
        (TargetPlatform.MACOS_X86_64, "numpy-2.1.0-cp312-cp312-macosx_10_13_x86_64.whl"),
        (TargetPlatform.MACOS_AARCH64, "numpy-2.1.0-cp312-cp312-macosx_11_0_arm64.whl"),
        (TargetPlatform.WINDOWS_X86_64, "numpy-2.1.0-cp312-cp312-win_amd64.whl"),
    ],
)
def test_select_picks_the_target_architecture_from_real_release(target, expected):
    candidates = [_release(name) for name in NUMPY_CP312]
    assert select_best_wheel(candidates, platform_tags(target), "cp312").filename == expected


def test_any_only_matches_the_literal_tag():
    assert not matches_platform("numpy-2.1.0-cp312-cp312-manylinux_2_17_aarch64.manylinux2014_aarch64.whl", ["any"])
    assert matches_platform("pkg-1.0-py3-none-any.whl", ["any"])
    assert matches_platform("numpy-2.1.0-cp312-cp312-manylinux_2_17_x86_64.manylinux2014_x86_64.whl", ["manylinux2014_x86_64"])
    assert not matches_platform("pkg-1.0.whl", ["any"])


def test_universal2_wheel_serves_both_macos_targets():
    candidates = [_release("pkg-1.0-cp312-cp312-macosx_10_9_universal2.whl")]
    for target in (TargetPlatform.MACOS_X86_64, TargetPlatform.MACOS_AARCH64):
        assert select_best_wheel(candidates, platform_tags(target), "cp312").filename.endswith("universal2.whl")


def test_windows_target_ignores_linux_and_macos_builds():
    candidates = [_release(name) for name in NUMPY_CP312 if "win" not in name]
    with pytest.raises(NoCompatibleWheelError):
        select_best_wheel(candidates, platform_tags(TargetPlatform.WINDOWS_X86_64), "cp312")
