import json

import httpx
import pytest

from docsumm.core.errors import AppError, ErrorCode
from docsumm.transcripts.acquirer import (
    CaptionTrack,
    TranscriptAcquirer,
    rank_caption_tracks,
    request_variants,
)
from docsumm.transcripts.extractor import ExtractedTranscript

VIDEO_ID = "dQw4w9WgXcQ"
VIDEO_URL = f"https://youtu.be/{VIDEO_ID}"
CAPTION_BASE = "https://www.youtube.com/api/timedtext"

VTT = "WEBVTT\n\n00:00:00.000 --> 00:00:02.000\nthe captions say hello\n"
BLOCKED_HTML = "<html><body>Our systems have detected unusual traffic from your computer network.</body></html>"


def _track(language, kind=None):
    url = f"{CAPTION_BASE}?v={VIDEO_ID}&lang={language}&sig=signed"
    if kind:
        url += f"&kind={kind}"
    track = {"languageCode": language, "baseUrl": url}
    if kind:
        track["kind"] = kind
    return track


def _player(tracks=None, title="A talk"):
    player = {"videoDetails": {"videoId": VIDEO_ID, "title": title}}
    if tracks is not None:
        player["captions"] = {"playerCaptionsTracklistRenderer": {"captionTracks": tracks}}
    return player


class FakeExtractor:
    def __init__(self, result=None):
        self.result = result
        self.calls = []

    async def extract(self, video_id, *, max_chars):
        self.calls.append((video_id, max_chars))
        return self.result


def _acquirer(handler, extractor=None, languages=("ko", "en", "ja")):
    return TranscriptAcquirer(
        preferred_languages=languages,
        max_chars=14_000,
        extractor=extractor,
        transport=httpx.MockTransport(handler),
    )


async def test_only_english_auto_track_is_selected():
    requested = []

    def handler(request: httpx.Request):
        if request.url.path == "/youtubei/v1/player":
            body = json.loads(request.content)
            assert body["videoId"] == VIDEO_ID
            return httpx.Response(200, json=_player([_track("en", "asr")]))
        requested.append(request.url.params.get("lang"))
        return httpx.Response(200, text=VTT, headers={"content-type": "text/vtt"})

    result = await _acquirer(handler).acquire(VIDEO_URL)

    assert result.transcript == "the captions say hello"
    assert result.language_code == "en"
    assert result.video_id == VIDEO_ID
    assert result.title == "A talk"
    assert result.normalized_url == f"https://www.youtube.com/watch?v={VIDEO_ID}"
    assert requested == ["en"]


async def test_human_track_beats_preferred_auto_track():
    def handler(request: httpx.Request):
        if request.url.path == "/youtubei/v1/player":
            return httpx.Response(200, json=_player([_track("ko", "asr"), _track("en")]))
        lang = request.url.params.get("lang")
        return httpx.Response(200, text=VTT.replace("hello", lang), headers={"content-type": "text/vtt"})

    result = await _acquirer(handler).acquire(VIDEO_URL)

    assert result.language_code == "en"
    assert result.transcript == "the captions say en"


async def test_without_tracks_preferred_languages_are_probed():
    probed = []

    def handler(request: httpx.Request):
        if request.url.path == "/youtubei/v1/player":
            return httpx.Response(200, json=_player(tracks=None, title=""))
        lang = request.url.params.get("lang")
        probed.append(lang)
        if lang == "en":
            payload = {"events": [{"segs": [{"utf8": "probed english"}]}]}
            return httpx.Response(200, json=payload)
        return httpx.Response(404)

    result = await _acquirer(handler).acquire(VIDEO_URL)

    assert result.transcript == "probed english"
    assert result.language_code == "en"
    assert result.title == "(unknown)"
    assert probed[0] == "ko"
    assert "ja" not in probed


async def test_watch_page_is_used_when_structured_call_fails():
    player = _player([_track("en")])
    page = f"<html><script>var ytInitialPlayerResponse = {json.dumps(player)};</script></html>"

    def handler(request: httpx.Request):
        if request.url.path == "/youtubei/v1/player":
            return httpx.Response(403)
        if request.url.path == "/watch":
            return httpx.Response(200, text=page, headers={"content-type": "text/html"})
        return httpx.Response(200, text=VTT, headers={"content-type": "text/vtt"})

    result = await _acquirer(handler).acquire(VIDEO_URL)
    assert result.transcript == "the captions say hello"


async def test_consent_wall_on_watch_page_is_blocked():
    def handler(request: httpx.Request):
        if request.url.path == "/youtubei/v1/player":
            return httpx.Response(500)
        return httpx.Response(200, text="<html>Before you continue to YouTube</html>", headers={"content-type": "text/html"})

    with pytest.raises(AppError) as exc:
        await _acquirer(handler).acquire(VIDEO_URL)
    assert exc.value.code == ErrorCode.TRANSCRIPT_BLOCKED


async def test_unparseable_watch_page_is_metadata_failure():
    def handler(request: httpx.Request):
        if request.url.path == "/youtubei/v1/player":
            return httpx.Response(500)
        return httpx.Response(200, text="<html><body>fine page, no data</body></html>", headers={"content-type": "text/html"})

    with pytest.raises(AppError) as exc:
        await _acquirer(handler).acquire(VIDEO_URL)
    assert exc.value.code == ErrorCode.METADATA_FETCH_FAILED


async def test_blocked_captions_fall_back_to_extractor():
    extractor = FakeExtractor(ExtractedTranscript(transcript="extracted words", language_code="ja"))

    def handler(request: httpx.Request):
        if request.url.path == "/youtubei/v1/player":
            return httpx.Response(200, json=_player([_track("en", "asr")]))
        return httpx.Response(200, text=BLOCKED_HTML, headers={"content-type": "text/html"})

    result = await _acquirer(handler, extractor).acquire(VIDEO_URL)

    assert result.transcript == "extracted words"
    assert result.language_code == "ja"
    assert extractor.calls == [(VIDEO_ID, 14_000)]


async def test_blocked_everywhere_reports_blocked():
    extractor = FakeExtractor(None)

    def handler(request: httpx.Request):
        if request.url.path == "/youtubei/v1/player":
            return httpx.Response(200, json=_player([_track("en")]))
        return httpx.Response(200, text=BLOCKED_HTML, headers={"content-type": "text/html"})

    with pytest.raises(AppError) as exc:
        await _acquirer(handler, extractor).acquire(VIDEO_URL)

    assert exc.value.code == ErrorCode.TRANSCRIPT_BLOCKED
    assert len(extractor.calls) == 1


async def test_missing_captions_report_unavailable_without_extractor():
    extractor = FakeExtractor(ExtractedTranscript(transcript="unused", language_code="en"))

    def handler(request: httpx.Request):
        if request.url.path == "/youtubei/v1/player":
            return httpx.Response(200, json=_player([_track("en")]))
        return httpx.Response(404)

    with pytest.raises(AppError) as exc:
        await _acquirer(handler, extractor).acquire(VIDEO_URL)

    assert exc.value.code == ErrorCode.TRANSCRIPT_UNAVAILABLE
    assert extractor.calls == []


async def test_invalid_url_is_rejected_before_any_request():
    def handler(request: httpx.Request):
        raise AssertionError("no request expected")

    with pytest.raises(AppError) as exc:
        await _acquirer(handler).acquire("https://example.com/video")
    assert exc.value.code == ErrorCode.URL_INVALID


def test_rank_and_variants():
    tracks = [
        CaptionTrack("ja", "https://x/ja", "asr"),
        CaptionTrack("en", "https://x/en"),
        CaptionTrack("ko", None),
        CaptionTrack("ko-KR", "https://x/ko", "asr"),
    ]
    ranked = rank_caption_tracks(tracks, ["ko", "en", "ja"])
    assert [t.language_code for t in ranked] == ["en", "ko-KR", "ja"]

    urls = request_variants(CaptionTrack("en", f"{CAPTION_BASE}?v={VIDEO_ID}&lang=en&sig=s", "asr"), VIDEO_ID)
    assert urls[0].endswith("sig=s")
    assert "fmt=json3" in urls[1] and "sig=s" in urls[1]
    assert "fmt=vtt" in urls[2] and "sig=s" in urls[2]
    assert all("sig" not in u for u in urls[3:])
    assert len(urls) == len(set(urls)) == 6
