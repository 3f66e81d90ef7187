from __future__ import annotations

import platform
import sys
from enum import Enum
from typing import Dict, List, Optional, Tuple


class TargetPlatform(str, Enum):
    """Build targets accepted by ``--target``."""

    LINUX_X86_64 = "linux-x86_64"
    LINUX_AARCH64 = "linux-aarch64"
    WINDOWS_X86_64 = "windows-x86_64"
    WINDOWS_AARCH64 = "windows-aarch64"
    MACOS_X86_64 = "macos-x86_64"
    MACOS_AARCH64 = "macos-aarch64"
    ALL = "all"

    @classmethod
    def parse(cls, value: str) -> "TargetPlatform":
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid = ", ".join(member.value for member in cls)
            raise ValueError(f"Unknown target platform '{value}'. Expected one of: {valid}.") from None

    def get_target_list(self) -> List["TargetPlatform"]:
        if self is TargetPlatform.ALL:
            return [member for member in TargetPlatform if member is not TargetPlatform.ALL]
        return [self]

    @property
    def os_name(self) -> Optional[str]:
        if self is TargetPlatform.ALL:
            return None
        return self.value.split("-", 1)[0]

    @property
    def arch(self) -> Optional[str]:
        if self is TargetPlatform.ALL:
            return None
        return self.value.split("-", 1)[1]

    @property
    def is_windows(self) -> bool:
        return self.os_name == "windows"

    @property
    def executable_extension(self) -> str:
        return ".exe" if self.is_windows else ""


class OptimizeLevel(str, Enum):
    """Runtime optimization strategy applied before archiving."""

    SIZE = "size"
    SPEED = "speed"
    COMPATIBILITY = "compatibility"
    BALANCED = "balanced"


_MACOS_VERSIONS = [(10, minor) for minor in range(9, 16)] + [(major, 0) for major in range(11, 16)]


def _manylinux_tags(arch: str) -> Tuple[str, ...]:
    # glibc 2.17 is the python-build-standalone floor
    return (
        f"manylinux_2_17_{arch}",
        f"manylinux2014_{arch}",
        f"manylinux_2_28_{arch}",
        f"manylinux_2_12_{arch}",
        f"manylinux2010_{arch}",
        f"manylinux_2_5_{arch}",
        f"manylinux1_{arch}",
        f"linux_{arch}",
    )


def _macos_tags(arch: str, oldest: Tuple[int, int]) -> Tuple[str, ...]:
    native = [f"macosx_{major}_{minor}_{arch}" for major, minor in _MACOS_VERSIONS if (major, minor) >= oldest]
    universal = [f"macosx_{major}_{minor}_universal2" for major, minor in _MACOS_VERSIONS]
    return (*native, *universal)


# Preferred tag first, oldest baseline leading; the universal tag is always last.
PLATFORM_TAGS: Dict[TargetPlatform, Tuple[str, ...]] = {
    TargetPlatform.LINUX_X86_64: (*_manylinux_tags("x86_64"), "any"),
    TargetPlatform.LINUX_AARCH64: (*_manylinux_tags("aarch64"), "any"),
    TargetPlatform.WINDOWS_X86_64: ("win_amd64", "any"),
    TargetPlatform.WINDOWS_AARCH64: ("win_arm64", "any"),
    TargetPlatform.MACOS_X86_64: (*_macos_tags("x86_64", (10, 9)), "any"),
    TargetPlatform.MACOS_AARCH64: (*_macos_tags("arm64", (11, 0)), "any"),
    TargetPlatform.ALL: ("any",),
}

# Rust-style triples shared by uv and python-build-standalone release assets.
_TRIPLES: Dict[TargetPlatform, str] = {
    TargetPlatform.LINUX_X86_64: "x86_64-unknown-linux-gnu",
    TargetPlatform.LINUX_AARCH64: "aarch64-unknown-linux-gnu",
    TargetPlatform.WINDOWS_X86_64: "x86_64-pc-windows-msvc",
    TargetPlatform.WINDOWS_AARCH64: "aarch64-pc-windows-msvc",
    TargetPlatform.MACOS_X86_64: "x86_64-apple-darwin",
    TargetPlatform.MACOS_AARCH64: "aarch64-apple-darwin",
}

_ZIG_TRIPLES: Dict[TargetPlatform, str] = {
    TargetPlatform.LINUX_X86_64: "x86_64-linux-gnu",
    TargetPlatform.LINUX_AARCH64: "aarch64-linux-gnu",
    TargetPlatform.WINDOWS_X86_64: "x86_64-windows-gnu",
    TargetPlatform.WINDOWS_AARCH64: "aarch64-windows-gnu",
    TargetPlatform.MACOS_X86_64: "x86_64-macos",
    TargetPlatform.MACOS_AARCH64: "aarch64-macos",
}


def platform_tags(target: TargetPlatform) -> List[str]:
    return list(PLATFORM_TAGS[target])


def primary_platform_tag(target: TargetPlatform) -> str:
    return PLATFORM_TAGS[target][0]


def uv_platform(target: TargetPlatform) -> Optional[str]:
    """Value for ``uv pip compile --python-platform``; ``None`` means unconstrained."""
    return _TRIPLES.get(target)


def distribution_triple(target: TargetPlatform) -> str:
    try:
        return _TRIPLES[target]
    except KeyError:
        raise ValueError(f"Target '{target.value}' does not name a single platform.") from None


def zig_target(target: TargetPlatform) -> str:
    return _ZIG_TRIPLES.get(target, "native")


def python_executable_path(target: TargetPlatform) -> str:
    return "python.exe" if target.is_windows else "bin/python3"


def site_packages_path(target: TargetPlatform, python_version: str) -> str:
    if target.is_windows:
        return "Lib/site-packages"
    return f"lib/python{python_version}/site-packages"


def stdlib_path(target: TargetPlatform, python_version: str) -> str:
    return "Lib" if target.is_windows else f"lib/python{python_version}"


def host_target() -> Optional[TargetPlatform]:
    """Best guess of the build host as a target, or ``None`` when unsupported."""
    machine = platform.machine().lower()
    arch = {"amd64": "x86_64", "x86_64": "x86_64", "arm64": "aarch64", "aarch64": "aarch64"}.get(machine)
    if sys.platform.startswith("linux"):
        os_name = "linux"
    elif sys.platform == "darwin":
        os_name = "macos"
    elif sys.platform == "win32":
        os_name = "windows"
    else:
        return None
    if arch is None:
        return None
    return TargetPlatform(f"{os_name}-{arch}")
