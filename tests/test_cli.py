import gzip
import io
import json
import tarfile
from pathlib import Path

import pytest

from bundlr import cli
from bundlr.history import BuildHistory
from bundlr.models import BuildFailure, BuildMetadata, BuildResult, FailureKind
from bundlr.payload import append_payload
from bundlr.targets import OptimizeLevel, TargetPlatform

from conftest import STUB_BYTES


def test_parse_build_args():
    ns = cli.parse_args(
        [
            "build",
            "https://github.com/acme/mytool.git",
            "--target",
            "all",
            "--output-dir",
            "dist",
            "--python-version",
            "3.13",
            "--optimize-size",
            "--exclude-dev-deps",
            "--entry-point",
            "import mytool; mytool.main()",
        ]
    )
    assert ns.command == "build"
    assert ns.package == "https://github.com/acme/mytool.git"
    assert ns.target is TargetPlatform.ALL
    assert ns.output_dir == Path("dist")
    assert ns.optimize_level == "size"
    assert ns.exclude_dev_deps
    assert ns.entry_point == "import mytool; mytool.main()"


def test_build_defaults():
    ns = cli.parse_args(["build", "cowsay"])
    assert ns.target is TargetPlatform.LINUX_X86_64
    assert ns.optimize_level is None
    assert ns.mock_resolution is None


@pytest.mark.parametrize(
    "argv",
    [
        ["build"],
        ["build", "cowsay", "--optimize-size", "--optimize-speed"],
        ["build", "cowsay", "--target", "all", "--output", "cow"],
        ["build", "cowsay", "--target", "beos-x86"],
    ],
)
def test_invalid_build_args_exit_2(argv):
    with pytest.raises(SystemExit) as excinfo:
        cli.parse_args(argv)
    assert excinfo.value.code == 2


def _result(target, failure=None):
    return BuildResult(
        executable_path=f"cowsay-{target.value}-FAILED" if failure else f"/out/cowsay-{target.value}",
        target=target,
        size_bytes=0 if failure else 100,
        metadata=BuildMetadata("1.0.3", 0, "3.14", OptimizeLevel.BALANCED),
        build_duration_ms=5,
        failure=failure,
    )


class FakePipeline:
    results = []
    seen = {}

    def __init__(self, options, config, *, history=None, run_id=None):
        FakePipeline.seen = {"options": options, "config": config, "history": history}

    def execute(self):
        return FakePipeline.results


def test_main_returns_1_when_any_target_fails(tmp_path, monkeypatch):
    monkeypatch.setattr(cli, "BuildPipeline", FakePipeline)
    FakePipeline.results = [
        _result(TargetPlatform.LINUX_X86_64),
        _result(
            TargetPlatform.WINDOWS_X86_64,
            BuildFailure(FailureKind.ASSETS, "collect assets", "no wheel"),
        ),
    ]
    out = tmp_path / "dist"
    code = cli.main(
        ["build", "cowsay", "--target", "all", "--output-dir", str(out), "--cache-dir", str(tmp_path / "cache")]
    )
    assert code == 1
    options = FakePipeline.seen["options"]
    assert options.target is TargetPlatform.ALL
    assert FakePipeline.seen["config"].cache_dir == tmp_path / "cache"
    assert FakePipeline.seen["history"].path == tmp_path / "cache" / "history.db"

    manifest = json.loads((out / "bundlr-manifest.json").read_text())
    assert manifest["package"] == "cowsay"
    assert [e["status"] for e in manifest["entries"]] == ["built", "failed"]
    assert manifest["entries"][1]["metadata"] == {"stage": "collect assets", "kind": "assets"}


def test_main_returns_0_when_all_succeed(tmp_path, monkeypatch):
    monkeypatch.setattr(cli, "BuildPipeline", FakePipeline)
    FakePipeline.results = [_result(TargetPlatform.LINUX_X86_64)]
    manifest = tmp_path / "m.json"
    code = cli.main(
        [
            "build",
            "cowsay",
            "--cache-dir",
            str(tmp_path / "cache"),
            "--manifest",
            str(manifest),
            "--mock-resolution",
            "fallback",
            "--no-fail-fast",
            "--optimize-speed",
        ]
    )
    assert code == 0
    config = FakePipeline.seen["config"]
    assert config.fail_fast is False
    assert config.mock_resolution.value == "fallback"
    assert FakePipeline.seen["options"].optimize_level is OptimizeLevel.SPEED
    assert manifest.exists()


def _bundle(tmp_path):
    metadata = json.dumps({"package_name": "cowsay", "target_platform": "linux-x86_64"}).encode()
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        info = tarfile.TarInfo("bundle/metadata.json")
        info.size = len(metadata)
        tf.addfile(info, io.BytesIO(metadata))
    payload = tmp_path / "payload.tar.gz"
    payload.write_bytes(buf.getvalue())
    exe = tmp_path / "cowsay-linux-x86_64"
    exe.write_bytes(STUB_BYTES)
    append_payload(exe, payload)
    return exe


def test_inspect_prints_metadata(tmp_path, capsys):
    exe = _bundle(tmp_path)
    assert cli.main(["inspect", str(exe)]) == 0
    out = capsys.readouterr().out
    assert "checksum verified" in out
    assert '"package_name": "cowsay"' in out


def test_inspect_rejects_plain_file(tmp_path, capsys):
    exe = tmp_path / "plain"
    exe.write_bytes(STUB_BYTES + gzip.compress(b"not a tar"))
    assert cli.main(["inspect", str(exe)]) == 1
    assert "Cannot read bundle" in capsys.readouterr().err


def test_history_json(tmp_path, capsys):
    db = tmp_path / "history.db"
    history = BuildHistory(db)
    history.record_event(run_id="r", package="cowsay", target="linux-x86_64", python_version="3.14", status="failed")
    assert cli.main(["history", "--db", str(db), "--json", "--targets", "--package", "cowsay"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["top_failures"] == [{"package": "cowsay", "failures": 1}]
    assert payload["targets"][0]["failed"] == 1
    assert payload["summary"]["package"] == "cowsay"


def test_history_text(tmp_path, capsys):
    db = tmp_path / "history.db"
    BuildHistory(db).record_event(
        run_id="r", package="cowsay", target="linux-x86_64", python_version="3.14", status="built",
        output_path="/out/cowsay", size_bytes=10,
    )
    assert cli.main(["history", "--db", str(db)]) == 0
    out = capsys.readouterr().out
    assert "BUILT" in out
    assert "output: /out/cowsay (10 bytes)" in out
