from fastapi.testclient import TestClient

from docsumm.core.config import Settings
from docsumm.transcript_worker.app import create_worker_app
from docsumm.transcripts.extractor import ProcessResult, YtDlpExtractor

from .test_extractor import VTT, ScriptedRunner, _result

KEY = {"x-transcript-worker-key": "worker-key"}
BODY = {"youtubeUrl": "https://youtu.be/dQw4w9WgXcQ", "requestId": "req-9", "preferredLanguages": ["EN"], "maxChars": 5}


def _client(*steps, key="worker-key"):
    cfg = Settings(_env_file=None, transcript_worker_key=key)
    runner = ScriptedRunner(*steps)

    async def title(url):
        return "Remote title"

    app = create_worker_app(cfg, extractor=YtDlpExtractor(runner=runner), title_fetcher=title)
    return TestClient(app), runner


def test_healthz():
    client, _ = _client()
    assert client.get("/healthz").json() == {"ok": True}


def test_success_returns_transcript():
    client, runner = _client(({"vid.en.vtt": VTT}, _result()))

    resp = client.post("/v1/youtube-transcript", json=BODY, headers=KEY)

    assert resp.status_code == 200
    data = resp.json()
    assert data["transcript"] == "extracted caption text"
    assert data["videoId"] == "dQw4w9WgXcQ"
    assert data["title"] == "Remote title"
    assert data["languageCode"] == "en"
    assert data["provider"] == "yt-dlp"
    assert data["requestId"] == "req-9"
    assert runner.calls[0][runner.calls[0].index("--sub-langs") + 1] == "en.*,en"


def test_auth_and_configuration():
    client, _ = _client(key=None)
    resp = client.post("/v1/youtube-transcript", json=BODY, headers=KEY)
    assert resp.status_code == 503
    assert resp.json() == {"code": "WORKER_UNAVAILABLE", "message": "TRANSCRIPT_WORKER_KEY is not configured", "retryable": True}

    client, _ = _client()
    resp = client.post("/v1/youtube-transcript", json=BODY, headers={"x-transcript-worker-key": "nope"})
    assert resp.status_code == 401


def test_invalid_url():
    client, runner = _client()
    resp = client.post("/v1/youtube-transcript", json={"youtubeUrl": "https://example.com"}, headers=KEY)
    assert resp.status_code == 422
    assert resp.json()["code"] == "URL_INVALID"
    assert runner.calls == []


def test_failure_classification():
    cases = [
        (ProcessResult(None, "", "", True), 504, "WORKER_TIMEOUT"),
        (_result(1, "HTTP Error 429: Too Many Requests"), 502, "TRANSCRIPT_BLOCKED"),
        (_result(0, ""), 422, "TRANSCRIPT_UNAVAILABLE"),
    ]
    for result, status, code in cases:
        client, _ = _client(({}, result))
        resp = client.post("/v1/youtube-transcript", json=BODY, headers=KEY)
        assert resp.status_code == status
        assert resp.json()["code"] == code

    client, _ = _client(({"vid.en.vtt": "WEBVTT\n"}, _result(1, "")))
    resp = client.post("/v1/youtube-transcript", json=BODY, headers=KEY)
    assert resp.status_code == 502
    assert resp.json() == {"code": "TRANSCRIPT_FETCH_FAILED", "message": "could not parse the subtitle file", "retryable": True}
