"""
Data model shared by the pipeline stages.

Internal names are snake_case; ``to_api()`` renders the camelCase shape used at
the transport boundary.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

# ---------------------------------------------------------------------------
# Meeting status
# ---------------------------------------------------------------------------
PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
NO_CAPTIONS = "no_captions"

STATUSES = (PENDING, PROCESSING, COMPLETED, FAILED, NO_CAPTIONS)
TERMINAL_STATUSES = (COMPLETED, FAILED, NO_CAPTIONS)

# Allowed status edges. A new run re-enters through PROCESSING.
TRANSITIONS = {
    PENDING: {PROCESSING},
    PROCESSING: {PROCESSING, COMPLETED, FAILED, NO_CAPTIONS},
    COMPLETED: {PROCESSING},
    FAILED: {PROCESSING},
    NO_CAPTIONS: {PROCESSING},
}


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, set())


# ---------------------------------------------------------------------------
# Recap
# ---------------------------------------------------------------------------

@dataclass
class Recap:
    summary: str
    article: str = ""
    topics: list[str] = field(default_factory=list)
    decisions: list[str] = field(default_factory=list)
    public_comments: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_api(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "article": self.article,
            "topics": list(self.topics),
            "decisions": list(self.decisions),
            "publicComments": list(self.public_comments),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Recap | None":
        if not data:
            return None
        return cls(
            summary=data.get("summary", ""),
            article=data.get("article", ""),
            topics=list(data.get("topics", [])),
            decisions=list(data.get("decisions", [])),
            public_comments=list(
                data.get("public_comments", data.get("publicComments", []))
            ),
        )


# ---------------------------------------------------------------------------
# Meeting / MeetingVersion
# ---------------------------------------------------------------------------

@dataclass
class Meeting:
    id: str
    video_id: str
    title: str
    status: str = PENDING
    version: int = 1
    meeting_date: str | None = None  # ISO YYYY-MM-DD
    published_at: str | None = None
    video_url: str | None = None
    channel_id: str | None = None
    transcript: str | None = None
    chunk_count: int = 0
    recap: Recap | None = None
    error_message: str | None = None
    run_id: str | None = None
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["recap"] = self.recap.to_dict() if self.recap else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Meeting":
        known_fields = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in known_fields}
        filtered["recap"] = Recap.from_dict(filtered.get("recap"))
        return cls(**filtered)

    def to_api(self, include_transcript: bool = False) -> dict[str, Any]:
        data = {
            "id": self.id,
            "videoId": self.video_id,
            "title": self.title,
            "publishedAt": self.published_at,
            "meetingDate": self.meeting_date,
            "videoUrl": self.video_url,
            "channelId": self.channel_id,
            "recap": self.recap.to_api() if self.recap else None,
            "status": self.status,
            "errorMessage": self.error_message,
            "chunkCount": self.chunk_count,
            "version": self.version,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if include_transcript:
            data["transcriptRaw"] = self.transcript
        return data


@dataclass(frozen=True)
class MeetingVersion:
    """Immutable snapshot of a meeting's recap at one version."""
    meeting_id: str
    version: int
    recap: Recap | None
    transcript: str | None
    chunk_count: int
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "meeting_id": self.meeting_id,
            "version": self.version,
            "recap": self.recap.to_dict() if self.recap else None,
            "transcript": self.transcript,
            "chunk_count": self.chunk_count,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MeetingVersion":
        return cls(
            meeting_id=data["meeting_id"],
            version=data["version"],
            recap=Recap.from_dict(data.get("recap")),
            transcript=data.get("transcript"),
            chunk_count=data.get("chunk_count", 0),
            created_at=data.get("created_at", ""),
        )

    def to_api(self) -> dict[str, Any]:
        return {
            "meetingId": self.meeting_id,
            "version": self.version,
            "recap": self.recap.to_api() if self.recap else None,
            "transcriptRaw": self.transcript,
            "chunkCount": self.chunk_count,
            "createdAt": self.created_at,
        }


# ---------------------------------------------------------------------------
# Transcript segments and chunks
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TranscriptSegment:
    text: str
    offset_ms: int
    duration_ms: int
    paragraph_end: bool = False


@dataclass(frozen=True)
class Chunk:
    chunk_index: int
    content: str
    start_seconds: int
    end_seconds: int


@dataclass
class StoredChunk:
    meeting_id: str
    video_id: str
    chunk_index: int
    content: str
    start_seconds: int
    end_seconds: int
    embedding: list[float]
    meeting_date: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StoredChunk":
        return cls(**data)


# ---------------------------------------------------------------------------
# Feed and run results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FeedVideo:
    video_id: str
    title: str
    published_at: str
    video_url: str
    channel_id: str


@dataclass
class RunSummary:
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    no_captions: int = 0

    def to_api(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "noCaptions": self.no_captions,
        }
