"""
Ingest API
==========
Request handlers for the ingestion service: trigger a run, query ingest
status, list/restore recap versions, upload a transcript, and search chunks.

Handlers take an already-decoded JSON body and return a ``Response``. Runs
come back as a started ``ProgressStream``; ``Response.sse()`` renders it as
Server-Sent Events frames for whatever HTTP layer is mounted in front.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterator

import requests

from config import PROCESSING
from embedder import Embedder
from errors import (
    EmbeddingError,
    FeedError,
    MeetingNotFoundError,
    RestoreError,
    ValidationError,
    VersionNotFoundError,
)
from feed_discovery import FeedDiscovery
from meeting_ingestion_pipeline import MODE_FULL, MODES, MeetingPipeline
from meeting_store import MeetingStore
from progress import ProgressStream, to_sse

log = logging.getLogger("api")

YOUTUBE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{11}$")
DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass
class Response:
    status: int
    body: dict[str, Any] | None = None
    stream: ProgressStream | None = None

    def sse(self) -> Iterator[str]:
        if self.stream is None:
            raise ValueError("Response has no event stream")
        for event in self.stream:
            yield to_sse(event)


def _error(status: int, message: str) -> Response:
    return Response(status, {"error": message})


# ---------------------------------------------------------------------------
# Request validation
# ---------------------------------------------------------------------------

def _as_object(body: Any) -> dict[str, Any]:
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _optional_str(body: dict[str, Any], key: str) -> str | None:
    value = body.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"'{key}' must be a string")
    return value.strip() or None


def _valid_video_id(video_id: str) -> bool:
    return bool(YOUTUBE_ID_RE.match(video_id)) or video_id.startswith("manual-")


def _valid_date(value: str) -> bool:
    if not DATE_RE.match(value):
        return False
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        return False
    return True


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

class CouncilIngestAPI:
    def __init__(
        self,
        pipeline: MeetingPipeline | None = None,
        store: MeetingStore | None = None,
        discovery: FeedDiscovery | None = None,
        embedder: Embedder | None = None,
    ) -> None:
        if pipeline is None:
            store = store or MeetingStore()
            discovery = discovery or FeedDiscovery()
            embedder = embedder or Embedder()
            pipeline = MeetingPipeline(store=store, discovery=discovery, embedder=embedder)
        self.pipeline = pipeline
        self.store = store or pipeline.store
        self.discovery = discovery or pipeline.discovery
        self.embedder = embedder or pipeline.embedder

    # ---- runs --------------------------------------------------------------

    def trigger(self, body: Any = None) -> Response:
        """Start a batch run, or a single-video run when ``videoId`` is given."""
        try:
            body = _as_object(body)
            force = body.get("force", False)
            if not isinstance(force, bool):
                raise ValidationError("'force' must be a boolean")
            video_id = _optional_str(body, "videoId")
            mode = _optional_str(body, "mode")
            title = _optional_str(body, "title")
            published_at = _optional_str(body, "publishedAt")
            if video_id is not None and not _valid_video_id(video_id):
                raise ValidationError(f"Invalid videoId: {video_id}")
            if mode is not None and mode not in MODES:
                raise ValidationError(f"'mode' must be one of: {', '.join(MODES)}")
            if mode is not None and video_id is None:
                raise ValidationError("'mode' requires 'videoId'")
        except ValidationError as exc:
            return _error(400, str(exc))

        if video_id is None:
            log.info("Batch run requested (force=%s)", force)
            stream = ProgressStream(
                lambda emit: self.pipeline.run_batch(emit, force=force),
                name="ingest-batch",
            )
        else:
            log.info("Single run requested for %s (%s)", video_id, mode or MODE_FULL)
            stream = ProgressStream(
                lambda emit: self.pipeline.run_single(
                    emit, video_id, mode=mode or MODE_FULL,
                    title=title, published_at=published_at,
                ),
                name=f"ingest-{video_id}",
            )
        return Response(200, stream=stream.start())

    def upload_transcript(self, body: Any) -> Response:
        """Ingest a manually supplied transcript."""
        try:
            body = _as_object(body)
            title = _optional_str(body, "title")
            meeting_date = _optional_str(body, "meetingDate")
            transcript = body.get("transcript")
            video_id = _optional_str(body, "videoId")
            if not title:
                raise ValidationError("'title' is required")
            if not meeting_date or not _valid_date(meeting_date):
                raise ValidationError("'meetingDate' must be a date in YYYY-MM-DD format")
            if not isinstance(transcript, str):
                raise ValidationError("'transcript' is required")
            min_chars = PROCESSING["min_upload_chars"]
            if len(transcript.strip()) < min_chars:
                raise ValidationError(f"'transcript' must be at least {min_chars} characters")
            if video_id is not None and not _valid_video_id(video_id):
                raise ValidationError(f"Invalid videoId: {video_id}")
        except ValidationError as exc:
            return _error(400, str(exc))

        log.info("Transcript upload for %r (%s, %d chars)", title, meeting_date, len(transcript))
        stream = ProgressStream(
            lambda emit: self.pipeline.run_upload(
                emit, title, meeting_date, transcript, video_id=video_id,
            ),
            name="ingest-upload",
        )
        return Response(200, stream=stream.start())

    # ---- queries -----------------------------------------------------------

    def query(self, include_feed: bool = False) -> Response:
        """Ingest stats and recent meetings, optionally joined with the live feed."""
        body: dict[str, Any] = {
            "stats": self.store.stats(),
            "recentMeetings": [m.to_api() for m in self.store.recent()],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if include_feed:
            try:
                videos = self.discovery.fetch_feed()
            except FeedError as exc:
                return _error(502, str(exc))
            feed = []
            for video in videos:
                existing = self.store.get_by_video_id(video.video_id)
                feed.append({
                    "videoId": video.video_id,
                    "title": video.title,
                    "publishedAt": video.published_at,
                    "videoUrl": video.video_url,
                    "dbStatus": existing.status if existing else None,
                })
            body["feedVideos"] = feed
        return Response(200, body)

    def list_versions(self, meeting_id: str) -> Response:
        meeting = self.store.get(meeting_id)
        if meeting is None:
            return _error(404, f"Meeting {meeting_id} not found")
        return Response(200, {
            "meetingId": meeting_id,
            "currentVersion": meeting.version,
            "versions": [v.to_api() for v in self.store.list_versions(meeting_id)],
        })

    def restore_version(self, meeting_id: str, body: Any) -> Response:
        try:
            body = _as_object(body)
            version = body.get("version")
            if isinstance(version, bool) or not isinstance(version, int) or version < 1:
                raise ValidationError("'version' must be a positive integer")
        except ValidationError as exc:
            return _error(400, str(exc))

        try:
            meeting = self.store.restore_version(meeting_id, version)
        except (MeetingNotFoundError, VersionNotFoundError) as exc:
            return _error(404, str(exc))
        except RestoreError as exc:
            return _error(409, str(exc))
        return Response(200, {"success": True, "newVersion": meeting.version})

    def search(self, body: Any) -> Response:
        """Semantic search over stored chunks."""
        try:
            body = _as_object(body)
            query = _optional_str(body, "query")
            date_from = _optional_str(body, "dateFrom")
            date_to = _optional_str(body, "dateTo")
            limit = body.get("limit", PROCESSING["search_limit"])
            if not query:
                raise ValidationError("'query' is required")
            for key, value in (("dateFrom", date_from), ("dateTo", date_to)):
                if value is not None and not _valid_date(value):
                    raise ValidationError(f"'{key}' must be a date in YYYY-MM-DD format")
            if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
                raise ValidationError("'limit' must be a positive integer")
        except ValidationError as exc:
            return _error(400, str(exc))

        try:
            query_embedding = self.embedder.embed_text(query)
        except (EmbeddingError, requests.RequestException) as exc:
            log.error("Search embedding failed: %s", exc)
            return _error(502, f"Embedding failed: {exc}")

        results = self.store.search_chunks(
            query_embedding, limit=limit, date_from=date_from, date_to=date_to,
        )
        return Response(200, {"query": query, "results": results})
