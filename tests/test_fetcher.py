"""Tests for the Downloader: transports, retries and progress reporting."""

import hashlib
import threading
import time

import pytest
import requests

from conftest import make_spec, write_tarball
from quarry.modules.errors import MalformedResponseError, UnreachableError
from quarry.modules.events import PROGRESS
from quarry.modules.fetcher import Downloader, digest_of_file


class FakeResponse:
    def __init__(self, status=200, body=b"payload", headers=None):
        self.status_code = status
        self._body = body
        self.headers = {"Content-Length": str(len(body))} if headers is None else headers
        self.closed = False

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self._body), chunk_size):
            yield self._body[i:i + chunk_size]

    def close(self):
        self.closed = True


class FakeSession:
    """Returns (or raises) the queued outcomes in order."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def get(self, url, stream=False, timeout=None):
        self.calls.append(url)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class SlowSession:
    """Thread-safe session that holds each request open and records peak concurrency."""

    def __init__(self, delay, slow=None):
        self.delay = delay
        self.slow = slow or {}
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def get(self, url, stream=False, timeout=None):
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            time.sleep(self.slow.get(url, self.delay))
            return FakeResponse(body=url.encode())
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture
def sleeps():
    return []


def http_downloader(tmp_path, events, session, sleeps, retries=2):
    return Downloader(sources_dir=tmp_path / "sources", workers=2, retries=retries, backoff=0.5,
                      events=events, session=session, sleep=sleeps.append, chunk_size=3)


class TestHttp:
    """Streaming downloads over a fake requests session."""

    def test_success_writes_named_artifact(self, tmp_path, events, sleeps):
        session = FakeSession(FakeResponse(body=b"tarball-bytes"))
        dl = http_downloader(tmp_path, events, session, sleeps)
        path = dl.fetch(make_spec("hello", "2.12.1"))

        assert path.name == "hello_2.12.1.tar.gz"
        assert path.read_bytes() == b"tarball-bytes"
        assert not path.with_name(path.name + ".part").exists()

    def test_retries_transient_status_with_backoff(self, tmp_path, events, sleeps):
        session = FakeSession(FakeResponse(status=503), requests.ConnectionError("reset"), FakeResponse())
        dl = http_downloader(tmp_path, events, session, sleeps)
        dl.fetch(make_spec("hello"))

        assert len(session.calls) == 3
        assert sleeps == [0.5, 1.0]

    def test_backoff_doubles_from_base_delay(self, tmp_path, events, sleeps):
        session = FakeSession(*[FakeResponse(status=502)] * 4)
        dl = http_downloader(tmp_path, events, session, sleeps, retries=3)
        with pytest.raises(UnreachableError):
            dl.fetch(make_spec("hello"))
        assert sleeps == [0.5, 1.0, 2.0]

    def test_retries_exhausted(self, tmp_path, events, sleeps):
        session = FakeSession(*[requests.Timeout("slow")] * 3)
        dl = http_downloader(tmp_path, events, session, sleeps)
        with pytest.raises(UnreachableError) as exc:
            dl.fetch(make_spec("hello"))
        assert exc.value.attempts == 3

    def test_client_error_is_not_retried(self, tmp_path, events, sleeps):
        session = FakeSession(FakeResponse(status=404))
        dl = http_downloader(tmp_path, events, session, sleeps)
        with pytest.raises(UnreachableError, match="HTTP 404"):
            dl.fetch(make_spec("hello"))
        assert len(session.calls) == 1

    @pytest.mark.parametrize("error", [
        requests.exceptions.InvalidURL("Invalid URL 'http://': No host supplied"),
        requests.exceptions.TooManyRedirects("Exceeded 30 redirects."),
        requests.exceptions.ContentDecodingError("bad gzip"),
    ])
    def test_other_request_errors_are_unreachable_without_retry(self, tmp_path, events, sleeps, error):
        session = FakeSession(error)
        dl = http_downloader(tmp_path, events, session, sleeps)
        with pytest.raises(UnreachableError) as exc:
            dl.fetch(make_spec("hello"))

        assert exc.value.attempts == 1
        assert isinstance(exc.value.__cause__, type(error))
        assert len(session.calls) == 1
        assert sleeps == []

    def test_empty_body_is_malformed(self, tmp_path, events, sleeps):
        session = FakeSession(FakeResponse(body=b"", headers={}))
        dl = http_downloader(tmp_path, events, session, sleeps)
        with pytest.raises(MalformedResponseError):
            dl.fetch(make_spec("hello"))
        assert len(session.calls) == 1
        assert list((tmp_path / "sources").iterdir()) == []

    def test_short_body_is_malformed(self, tmp_path, events, sleeps):
        session = FakeSession(FakeResponse(body=b"abc", headers={"Content-Length": "10"}))
        dl = http_downloader(tmp_path, events, session, sleeps)
        with pytest.raises(MalformedResponseError):
            dl.fetch(make_spec("hello"))

    def test_progress_events(self, tmp_path, events, sleeps):
        seen = []
        events.register(PROGRESS, seen.append)
        session = FakeSession(FakeResponse(body=b"1234567"))
        http_downloader(tmp_path, events, session, sleeps).fetch(make_spec("hello"))

        assert [e.downloaded for e in seen] == [0, 3, 6, 7]
        assert all(e.total == 7 and e.package == "hello" for e in seen)


class TestLocal:
    """file:// and plain path sources."""

    def test_file_uri(self, tmp_path, downloader):
        archive = tmp_path / "up" / "zlib-1.3.tar.gz"
        digest = write_tarball(archive, "zlib-1.3", {"README": "zlib"})
        path = downloader.fetch(make_spec("zlib", "1.3.0", source=archive.as_uri()))

        assert digest_of_file(path) == digest

    def test_bare_path(self, tmp_path, downloader):
        src = tmp_path / "pkg.zip"
        src.write_bytes(b"PK-not-really")
        path = downloader.fetch(make_spec("pkg", source=str(src)))
        assert path.name == "pkg_1.0.0.zip"

    def test_missing_file(self, tmp_path, downloader):
        with pytest.raises(UnreachableError):
            downloader.fetch(make_spec("pkg", source=(tmp_path / "nope.tar.gz").as_uri()))

    def test_unsupported_scheme(self, downloader):
        with pytest.raises(UnreachableError, match="unsupported scheme"):
            downloader.fetch(make_spec("pkg", source="ftp://example.invalid/pkg.tar.gz"))


class TestFetchMany:
    """Concurrent fetching."""

    def test_yields_every_result(self, tmp_path, downloader):
        specs = []
        for i in range(6):
            src = tmp_path / "up" / f"p{i}.tar"
            src.parent.mkdir(parents=True, exist_ok=True)
            src.write_bytes(f"content {i}".encode())
            specs.append(make_spec(f"p{i}", source=src.as_uri()))
        specs.append(make_spec("broken", source=(tmp_path / "missing.tar").as_uri()))

        results = {r.spec.name: r for r in downloader.fetch_many(specs)}

        assert len(results) == 7
        assert not results["broken"].ok
        assert isinstance(results["broken"].error, UnreachableError)
        assert results["p3"].path.read_bytes() == b"content 3"

    def test_empty_input(self, downloader):
        assert list(downloader.fetch_many([])) == []

    def test_invalid_url_becomes_failed_result(self, tmp_path, events, sleeps):
        session = FakeSession(requests.exceptions.InvalidURL("No host supplied"), FakeResponse())
        # one worker keeps the queued outcomes in submission order
        dl = Downloader(sources_dir=tmp_path / "sources", workers=1, retries=2, backoff=0.5,
                        events=events, session=session, sleep=sleeps.append)

        results = list(dl.fetch_many([make_spec("x", source="http://"), make_spec("y")]))

        assert [r.spec.name for r in results] == ["x", "y"]
        assert isinstance(results[0].error, UnreachableError)
        assert results[1].ok

    def test_peak_transfers_bounded_by_workers(self, tmp_path, events):
        session = SlowSession(delay=0.05)
        dl = Downloader(sources_dir=tmp_path / "sources", workers=2, retries=0, events=events, session=session)
        specs = [make_spec(f"p{i}") for i in range(6)]

        results = list(dl.fetch_many(specs))

        assert all(r.ok for r in results)
        assert 1 <= session.peak <= 2

    def test_results_arrive_in_completion_order(self, tmp_path, events):
        session = SlowSession(delay=0.0, slow={"https://example.invalid/slow-1.0.0.tar.gz": 0.5})
        dl = Downloader(sources_dir=tmp_path / "sources", workers=3, retries=0, events=events, session=session)
        specs = [make_spec("slow"), make_spec("fast1"), make_spec("fast2")]

        names = [r.spec.name for r in dl.fetch_many(specs)]

        assert names[-1] == "slow"
        assert sorted(names[:2]) == ["fast1", "fast2"]


def test_digest_of_file(tmp_path):
    f = tmp_path / "blob"
    f.write_bytes(b"quarry")
    assert digest_of_file(f, "sha256") == hashlib.sha256(b"quarry").hexdigest()
