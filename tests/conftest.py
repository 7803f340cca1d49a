"""Shared fixtures and in-memory stand-ins for the external services."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from errors import EmbeddingError, FeedError, MalformedRecapError
from meeting_ingestion_pipeline import MeetingPipeline
from meeting_store import MeetingStore
from models import FeedVideo, Recap, TranscriptSegment
from transcript_service import TranscriptAvailable, TranscriptUnavailable

SENTENCE = "The council discussed the water main replacement on Fourth Street."


def make_segments(count: int = 12) -> tuple[TranscriptSegment, ...]:
    return tuple(
        TranscriptSegment(
            text=f"{SENTENCE} Item {i}.",
            offset_ms=i * 5000,
            duration_ms=5000,
        )
        for i in range(count)
    )


def make_video(video_id: str, title: str = "City Council Meeting - January 15, 2025") -> FeedVideo:
    return FeedVideo(
        video_id=video_id,
        title=title,
        published_at="2025-01-16T02:00:00+00:00",
        video_url=f"https://www.youtube.com/watch?v={video_id}",
        channel_id="UCtestchannel",
    )


def make_recap(summary: str = "The council approved the budget.") -> Recap:
    return Recap(
        summary=summary,
        article="Residents heard about the budget.",
        topics=["Budget"],
        decisions=["Approved the FY26 budget 5-0"],
        public_comments=["A resident asked about potholes"],
    )


class Clock:
    """Controllable clock for stale-window tests."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2025, 1, 20, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class FakeDiscovery:
    def __init__(self, videos=None, error: Exception | None = None):
        self.videos = list(videos or [])
        self.error = error
        self.calls = 0

    def fetch_feed(self):
        self.calls += 1
        if self.error:
            raise self.error
        return list(self.videos)


class FakeTranscripts:
    """Returns a canned result per video id; captions by default."""

    def __init__(self, results=None):
        self.results = dict(results or {})
        self.calls: list[str] = []

    def fetch(self, video_id):
        self.calls.append(video_id)
        return self.results.get(
            video_id, TranscriptAvailable(segments=make_segments(), source="primary"),
        )


class FakeEmbedder:
    def __init__(self, fail_on: str | None = None, dims: int = 3):
        self.fail_on = fail_on
        self.dims = dims
        self.calls = 0

    def is_available(self) -> bool:
        return True

    def embed_chunks(self, chunks):
        self.calls += 1
        if self.fail_on is not None:
            raise EmbeddingError(f"Embedding failed for chunk 0: {self.fail_on}")
        return [self.embed_text(c.content) for c in chunks]

    def embed_text(self, text):
        vector = [0.0] * self.dims
        vector[len(text) % self.dims] = 1.0
        return vector


class FakeRecaps:
    """Returns recaps in order; a 'malformed' entry raises MalformedRecapError."""

    def __init__(self, *recaps, malformed_for: set[str] | None = None):
        self.recaps = list(recaps)
        self.malformed_for = malformed_for or set()
        self.transcripts: list[str] = []

    def is_available(self) -> bool:
        return True

    def generate(self, transcript):
        self.transcripts.append(transcript)
        if any(marker in transcript for marker in self.malformed_for):
            raise MalformedRecapError("Malformed recap: no JSON object in model response")
        if self.recaps:
            return self.recaps.pop(0)
        return make_recap(f"Recap #{len(self.transcripts)}")


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(tmp_path, clock):
    return MeetingStore(data_dir=tmp_path / "data", clock=clock)


@pytest.fixture
def make_pipeline(store):
    def _make(videos=None, transcripts=None, embedder=None, recaps=None, feed_error=None):
        return MeetingPipeline(
            store=store,
            discovery=FakeDiscovery(videos, error=feed_error),
            transcripts=transcripts or FakeTranscripts(),
            embedder=embedder or FakeEmbedder(),
            recaps=recaps or FakeRecaps(),
        )
    return _make


@pytest.fixture
def no_captions():
    return TranscriptUnavailable(reason="TranscriptsDisabled")


@pytest.fixture
def feed_error():
    return FeedError("Failed to fetch RSS feed: 503 Server Error")
