import pytest

from bundlr.errors import InvalidUrlError, NetworkError, ServerError, TooManyRetriesError
from bundlr.http_client import HttpClient


def _client(monkeypatch, outcomes):
    sleeps = []
    client = HttpClient(sleep=sleeps.append)
    calls = []

    def fake_read(url, timeout):
        calls.append(url)
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(client, "_read", fake_read)
    return client, sleeps, calls


def test_retries_with_exponential_backoff(monkeypatch):
    url = "https://example.com/data"
    client, sleeps, calls = _client(
        monkeypatch, [NetworkError("reset", url), ServerError("busy", url, 503), b"ok"]
    )
    assert client.get(url) == b"ok"
    assert len(calls) == 3
    assert sleeps == [1.0, 2.0]


def test_client_errors_are_not_retried(monkeypatch):
    url = "https://example.com/missing"
    client, sleeps, calls = _client(monkeypatch, [ServerError("not found", url, 404)])
    with pytest.raises(ServerError):
        client.get(url)
    assert len(calls) == 1
    assert sleeps == []


def test_gives_up_after_max_retries(monkeypatch):
    url = "https://example.com/flaky"
    client, sleeps, _ = _client(monkeypatch, [NetworkError("down", url)] * 3)
    with pytest.raises(TooManyRetriesError) as excinfo:
        client.get(url)
    assert excinfo.value.attempts == 3
    assert isinstance(excinfo.value.last_error, NetworkError)
    assert sleeps == [1.0, 2.0]


@pytest.mark.parametrize("url", ["", "ftp://example.com/x", "https:///nohost", "not a url"])
def test_invalid_urls_are_rejected(url):
    with pytest.raises(InvalidUrlError):
        HttpClient().get(url)


def test_download_file_streams_to_destination(tmp_path):
    src = tmp_path / "source.bin"
    src.write_bytes(b"x" * 200_000)
    progress = []
    dest = HttpClient().download_file(src.as_uri(), tmp_path / "dl" / "copy.bin", lambda done, total: progress.append(done))
    assert dest.read_bytes() == src.read_bytes()
    assert progress[-1] == 200_000
    assert not (tmp_path / "dl" / "copy.bin.part").exists()


def test_failed_download_leaves_no_partial_file(tmp_path):
    client = HttpClient(max_retries=1)
    dest = tmp_path / "copy.bin"
    with pytest.raises(TooManyRetriesError):
        client.download_file((tmp_path / "absent.bin").as_uri(), dest)
    assert not dest.exists()
    assert not (tmp_path / "copy.bin.part").exists()
