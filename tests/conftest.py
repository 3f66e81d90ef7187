import hashlib
import tarfile
import zipfile
from pathlib import Path

import pytest

from bundlr.config import build_config
from bundlr.errors import ServerError
from bundlr.process import CompletedCommand

STUB_BYTES = b"\x7fELF-fake-stub\n" * 8


def write_dummy_wheel(
    tmpdir: Path,
    name: str,
    version: str,
    python_tag: str = "py3",
    abi_tag: str = "none",
    platform_tag: str = "any",
) -> Path:
    wheel_name = f"{name}-{version}-{python_tag}-{abi_tag}-{platform_tag}.whl"
    wheel_path = tmpdir / wheel_name
    dist_info = f"{name.replace('-', '_')}-{version}.dist-info"
    with zipfile.ZipFile(wheel_path, "w") as zf:
        zf.writestr(f"{dist_info}/METADATA", f"Name: {name}\nVersion: {version}\n")
    return wheel_path


def sha256_of(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def write_fake_distribution(root: Path, python_version: str = "3.14") -> Path:
    """Lay out a tiny install tree shaped like a python-build-standalone linux build."""
    stdlib = root / "lib" / f"python{python_version}"
    for module in ("json", "tkinter", "unittest", "test", "email"):
        (stdlib / module).mkdir(parents=True, exist_ok=True)
        (stdlib / module / "__init__.py").write_text("# module\n")
    (stdlib / "pydoc.py").write_text("# pydoc\n")
    (stdlib / "os.py").write_text("# os\n")
    (stdlib / "__pycache__").mkdir(exist_ok=True)
    (stdlib / "__pycache__" / "os.cpython.pyc").write_bytes(b"\x00" * 32)
    (root / "bin").mkdir(parents=True, exist_ok=True)
    (root / "bin" / "python3").write_text("#!/bin/sh\n")
    (root / "include").mkdir(exist_ok=True)
    (root / "include" / "Python.h").write_text("/* header */\n")
    for docs in ("share/man/man1", "share/doc/python"):
        (root / docs).mkdir(parents=True, exist_ok=True)
    (root / "share" / "man" / "man1" / "python3.1").write_text(".TH PYTHON 1\n")
    (root / "share" / "doc" / "python" / "README").write_text("docs\n")
    return root


class FakeHttp:
    """Serves canned bodies by URL; anything else is a 404."""

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.requests = []

    def get(self, url, *, timeout=None):
        self.requests.append(url)
        if url not in self.responses:
            raise ServerError(f"{url} responded 404", url, 404)
        return self.responses[url]

    def download_file(self, url, dest, progress=None, *, timeout=None):
        body = self.get(url, timeout=timeout)
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(body)
        return dest


class FakeRunner:
    """Records commands; ``handler(argv, cwd)`` may return a CompletedCommand."""

    def __init__(self, handler=None, exit_code=0):
        self.handler = handler
        self.exit_code = exit_code
        self.commands = []

    def run(self, argv, cwd=None):
        return self.capture(argv, cwd=cwd).exit_code

    def capture(self, argv, cwd=None):
        self.commands.append([str(a) for a in argv])
        if self.handler is not None:
            result = self.handler(list(argv), cwd)
            if result is not None:
                return result
        return CompletedCommand(exit_code=self.exit_code, stdout="", stderr="")


class TarfileArchiver:
    """Archiver stand-in that writes the same single-root layout with tarfile."""

    def __init__(self):
        self.created = []

    def create(self, source_dir, archive_path):
        archive_path.parent.mkdir(parents=True, exist_ok=True)
        with tarfile.open(archive_path, "w:gz") as tf:
            tf.add(source_dir, arcname=source_dir.name)
        self.created.append(archive_path)
        return archive_path


class FakeStubBuilder:
    def __init__(self, data: bytes = STUB_BYTES):
        self.data = data
        self.built = []

    def build(self, target, work_dir):
        path = work_dir / f"bundlr_stub{target.executable_extension}"
        path.write_bytes(self.data)
        self.built.append(target)
        return path


@pytest.fixture(autouse=True)
def isolated_temp(tmp_path, monkeypatch):
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    monkeypatch.setenv("TMPDIR", str(scratch))
    monkeypatch.delenv("BUNDLR_CACHE_DIR", raising=False)
    return scratch


@pytest.fixture
def config(tmp_path):
    return build_config(cache_dir=tmp_path / "cache")
