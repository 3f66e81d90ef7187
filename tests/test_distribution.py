import io
import json
import os
import tarfile

import pytest

from bundlr.config import build_config
from bundlr.distribution import DistributionManager, distribution_url
from bundlr.errors import DistributionError, ResolutionError
from bundlr.targets import TargetPlatform
from bundlr.uv import FALLBACK_UV_VERSION, LATEST_RELEASE_API, UvManager

from conftest import FakeHttp


def _targz(files):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def test_distribution_url_format():
    url = distribution_url("3.14.2", "20251217", TargetPlatform.MACOS_AARCH64)
    assert url.endswith("/20251217/cpython-3.14.2+20251217-aarch64-apple-darwin-install_only.tar.gz")


def test_distribution_is_downloaded_once(tmp_path):
    config = build_config(cache_dir=tmp_path)
    url = distribution_url("3.14.2", config.python_build_release, TargetPlatform.LINUX_X86_64)
    http = FakeHttp({url: _targz({"python/bin/python3": b"#!", "python/lib/python3.14/os.py": b"#"})})
    manager = DistributionManager(config, http=http)

    root = manager.ensure_distribution("3.14", TargetPlatform.LINUX_X86_64)
    assert root == tmp_path / "python" / "linux-x86_64" / "3.14"
    assert (root / "bin" / "python3").exists()
    assert (root / "lib" / "python3.14" / "os.py").exists()

    manager.ensure_distribution("3.14", TargetPlatform.LINUX_X86_64)
    assert http.requests == [url]
    assert sorted(p.name for p in root.parent.iterdir()) == ["3.14"]


def test_distribution_download_failure(tmp_path):
    manager = DistributionManager(build_config(cache_dir=tmp_path), http=FakeHttp())
    with pytest.raises(DistributionError, match="windows-x86_64"):
        manager.ensure_distribution("3.13", TargetPlatform.WINDOWS_X86_64)
    assert not manager.install_dir("3.13", TargetPlatform.WINDOWS_X86_64).exists()


def test_uv_on_path_is_preferred(tmp_path, monkeypatch):
    monkeypatch.setattr("bundlr.uv.shutil.which", lambda name: "/usr/local/bin/uv")
    http = FakeHttp()
    assert str(UvManager(build_config(cache_dir=tmp_path), http=http).ensure_uv()) == "/usr/local/bin/uv"
    assert http.requests == []


def test_uv_is_downloaded_into_cache(tmp_path, monkeypatch):
    monkeypatch.setattr("bundlr.uv.shutil.which", lambda name: None)
    monkeypatch.setattr("bundlr.uv.host_target", lambda: TargetPlatform.LINUX_X86_64)
    config = build_config(cache_dir=tmp_path, uv_version="0.9.18")
    asset = "uv-x86_64-unknown-linux-gnu.tar.gz"
    http = FakeHttp(
        {f"https://github.com/astral-sh/uv/releases/download/0.9.18/{asset}": _targz({"uv-x86_64-unknown-linux-gnu/uv": b"bin"})}
    )
    exe = UvManager(config, http=http).ensure_uv()
    assert exe == tmp_path / "uv" / "0.9.18" / "uv"
    if os.name != "nt":
        assert os.access(exe, os.X_OK)
    assert not (tmp_path / "uv" / asset).exists()


def test_uv_download_failure_is_a_resolution_error(tmp_path, monkeypatch):
    monkeypatch.setattr("bundlr.uv.shutil.which", lambda name: None)
    monkeypatch.setattr("bundlr.uv.host_target", lambda: TargetPlatform.LINUX_X86_64)
    with pytest.raises(ResolutionError):
        UvManager(build_config(cache_dir=tmp_path, uv_version="0.9.18"), http=FakeHttp()).ensure_uv()


def test_latest_uv_version(tmp_path):
    config = build_config(cache_dir=tmp_path)
    http = FakeHttp({LATEST_RELEASE_API: json.dumps({"tag_name": "0.10.1"}).encode()})
    assert UvManager(config, http=http).latest_version() == "0.10.1"
    assert UvManager(config, http=FakeHttp()).latest_version() == FALLBACK_UV_VERSION
