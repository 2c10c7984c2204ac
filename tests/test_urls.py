import pytest

from docsumm.transcripts.urls import extract_video_id, is_valid_video_url, normalize_video_url


@pytest.mark.parametrize(
    "value",
    [
        "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
        "https://youtube.com/watch?v=dQw4w9WgXcQ&t=42s",
        "https://m.youtube.com/watch?v=dQw4w9WgXcQ",
        "https://music.youtube.com/watch?v=dQw4w9WgXcQ",
        "https://youtu.be/dQw4w9WgXcQ?si=abc",
        "youtu.be/dQw4w9WgXcQ",
        "www.youtube.com/shorts/dQw4w9WgXcQ",
        "https://www.youtube.com/embed/dQw4w9WgXcQ",
        "https://www.youtube.com/live/dQw4w9WgXcQ",
        "Check this out (https://youtu.be/dQw4w9WgXcQ).",
    ],
)
def test_accepted_forms_normalize_to_watch_url(value):
    assert extract_video_id(value) == "dQw4w9WgXcQ"
    assert normalize_video_url(value) == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


@pytest.mark.parametrize(
    "value",
    [
        "",
        "not a url",
        "https://vimeo.com/123456789",
        "https://www.youtube.com/watch?v=abc",
        "https://www.youtube.com/channel/UC123456",
        "https://notyoutube.com/watch?v=dQw4w9WgXcQ",
    ],
)
def test_rejected_forms(value):
    assert extract_video_id(value) is None
    assert not is_valid_video_url(value)
