#!/usr/bin/env python3
"""
Council Meeting Recap – Ingestion Pipeline
==========================================
Discovers new council meeting videos, acquires their transcripts, chunks and
embeds them for semantic search, generates structured AI recaps, and keeps a
versioned recap history.

Videos in one run are processed one after another. A failure in any stage
fails that video only; the rest of the batch continues.

Usage:
    python meeting_ingestion_pipeline.py                          # new/retry feed videos
    python meeting_ingestion_pipeline.py --force                  # reprocess whole feed
    python meeting_ingestion_pipeline.py --video-id ID            # one video, full run
    python meeting_ingestion_pipeline.py --video-id ID --mode recap_only
    python meeting_ingestion_pipeline.py --upload transcript.txt --title T --meeting-date 2025-01-15
    python meeting_ingestion_pipeline.py --stats [--feed]
    python meeting_ingestion_pipeline.py --versions MEETING_ID
    python meeting_ingestion_pipeline.py --restore MEETING_ID VERSION
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator

from chunker import chunk_segments, text_to_segments
from config import FEED_CONFIG
from embedder import Embedder
from errors import (
    EmbeddingError,
    FeedError,
    MalformedRecapError,
    PipelineError,
    SupersededRunError,
    TranscriptFetchError,
    TransientError,
)
from feed_discovery import FeedDiscovery, derive_meeting_date
from meeting_store import MeetingStore
from models import (
    COMPLETED,
    FAILED,
    NO_CAPTIONS,
    PENDING,
    PROCESSING,
    FeedVideo,
    Meeting,
    RunSummary,
    StoredChunk,
)
from progress import Emit, ProgressEvent, RunAborted
from recap_generator import RecapGenerator
from transcript_service import (
    TranscriptAvailable,
    TranscriptError,
    TranscriptService,
    TranscriptUnavailable,
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger("pipeline")

MODE_FULL = "full"
MODE_RECAP_ONLY = "recap_only"
MODE_UPLOAD = "upload"
MODES = (MODE_FULL, MODE_RECAP_ONLY)


def describe_failure(exc: BaseException) -> str:
    """Error message stored on a failed meeting."""
    if isinstance(exc, (MalformedRecapError, TransientError)):
        return str(exc)
    return f"{type(exc).__name__}: {exc}"


# ---------------------------------------------------------------------------
# Run context
# ---------------------------------------------------------------------------

@dataclass
class RunContext:
    """State for one triggered run, passed explicitly through every stage."""
    emit: Emit
    summary: RunSummary = field(default_factory=RunSummary)
    feed_videos: list[FeedVideo] = field(default_factory=list)
    current: int | None = None
    total: int | None = None

    @property
    def label(self) -> str:
        if self.total:
            return f"[{self.current}/{self.total}]"
        return "[1/1]"

    def progress(
        self, step: str, message: str, video_id: str | None = None,
        status: str | None = None, **data: Any,
    ) -> None:
        self.emit(ProgressEvent(
            step=step,
            message=f"{self.label} {message}" if video_id else message,
            video_id=video_id,
            current=self.current,
            total=self.total,
            status=status,
            data=data,
        ))


# ---------------------------------------------------------------------------
# Pipeline Orchestrator
# ---------------------------------------------------------------------------

class MeetingPipeline:
    """End-to-end pipeline: discover → transcript → chunk → embed → recap → store."""

    def __init__(
        self,
        store: MeetingStore | None = None,
        discovery: FeedDiscovery | None = None,
        transcripts: TranscriptService | None = None,
        embedder: Embedder | None = None,
        recaps: RecapGenerator | None = None,
    ) -> None:
        self.store = store or MeetingStore()
        self.discovery = discovery or FeedDiscovery()
        self.transcripts = transcripts or TranscriptService()
        self.embedder = embedder or Embedder()
        self.recaps = recaps or RecapGenerator()

    # ---- entry points ------------------------------------------------------

    def run_batch(self, emit: Emit, force: bool = False) -> RunSummary:
        """Discover feed videos and ingest every new or retryable one."""
        ctx = RunContext(emit=emit)
        log.info("=" * 60)
        log.info("Council meeting ingestion (force=%s)", force)
        log.info("=" * 60)
        self._warn_missing_services()

        with self._run_guard(ctx):
            try:
                ctx.feed_videos = self.discovery.fetch_feed()
            except FeedError as exc:
                raise RunAborted(str(exc), ctx.summary) from exc
            ctx.progress(
                "feed", f"Found {len(ctx.feed_videos)} videos in RSS feed",
                count=len(ctx.feed_videos),
            )

            eligible = self._select_eligible(ctx, force)
            ctx.progress(
                "filter",
                f"{len(eligible)} new/retry videos, {ctx.summary.skipped} skipped",
                newCount=len(eligible), skipped=ctx.summary.skipped,
            )

            ctx.total = len(eligible)
            for idx, video in enumerate(eligible, 1):
                ctx.current = idx
                log.info("-" * 50)
                log.info("[%d/%d] %s", idx, ctx.total, video.title[:60])
                self._ingest_video(ctx, video.video_id, MODE_FULL, {
                    "title": video.title,
                    "published_at": video.published_at,
                    "meeting_date": derive_meeting_date(video.title, video.published_at),
                    "video_url": video.video_url,
                    "channel_id": video.channel_id,
                })

            self._log_summary(ctx.summary)
        return ctx.summary

    def run_single(
        self,
        emit: Emit,
        video_id: str,
        mode: str = MODE_FULL,
        title: str | None = None,
        published_at: str | None = None,
    ) -> RunSummary:
        """Run one video directly (manual retry or recap regeneration)."""
        if mode not in MODES:
            raise ValueError(f"Unknown mode: {mode}")
        ctx = RunContext(emit=emit)
        self._warn_missing_services()

        existing = self.store.get_by_video_id(video_id)
        if existing is None and not title:
            raise RunAborted(f"Meeting not found for video {video_id}", RunSummary(failed=1))
        if mode == MODE_RECAP_ONLY and (existing is None or not existing.transcript):
            raise RunAborted(
                f"No existing transcript for video {video_id}. Use full reprocess instead.",
                RunSummary(failed=1),
            )

        meta: dict[str, Any] = {}
        if title:
            meta = {
                "title": title,
                "published_at": published_at,
                "meeting_date": derive_meeting_date(title, published_at),
                "video_url": FEED_CONFIG["video_url"].format(video_id=video_id),
            }
        with self._run_guard(ctx):
            self._ingest_video(ctx, video_id, mode, meta)
        return ctx.summary

    def run_upload(
        self,
        emit: Emit,
        title: str,
        meeting_date: str,
        transcript: str,
        video_id: str | None = None,
    ) -> RunSummary:
        """Ingest a manually supplied transcript, bypassing transcript acquisition."""
        ctx = RunContext(emit=emit)
        self._warn_missing_services()

        video_id = video_id or f"manual-{meeting_date}-{uuid.uuid4().hex[:6]}"
        meta = {
            "title": title,
            "meeting_date": meeting_date,
            "video_url": (
                None if video_id.startswith("manual-")
                else FEED_CONFIG["video_url"].format(video_id=video_id)
            ),
        }
        with self._run_guard(ctx):
            self._ingest_video(ctx, video_id, MODE_UPLOAD, meta, uploaded_transcript=transcript)
        return ctx.summary

    # ---- per-video boundary ------------------------------------------------

    @contextmanager
    def _run_guard(self, ctx: RunContext) -> Iterator[None]:
        """Turn an unexpected run-level error into an abort carrying the counts so far."""
        try:
            yield
        except RunAborted:
            raise
        except Exception as exc:
            log.exception("Run aborted")
            raise RunAborted(str(exc), ctx.summary) from exc

    def _ingest_video(
        self,
        ctx: RunContext,
        video_id: str,
        mode: str,
        meta: dict[str, Any],
        uploaded_transcript: str | None = None,
    ) -> None:
        meeting: Meeting | None = None
        run_id: str | None = None
        try:
            claim = self.store.claim(video_id, **meta)
            if claim is None:
                current = self.store.get_by_video_id(video_id)
                status = current.status if current else None
                ctx.summary.skipped += 1
                ctx.progress("skipped", f"Already processing: {video_id}", video_id, status=status)
                return

            meeting, run_id = claim
            outcome = self._process(ctx, meeting, run_id, mode, uploaded_transcript)
        except SupersededRunError as exc:
            log.warning("Run for %s was superseded: %s", video_id, exc)
            ctx.summary.failed += 1
            ctx.progress("error", f"Run superseded: {exc}", video_id)
            return
        except Exception as exc:
            log.exception("Failed to process %s", video_id)
            message = describe_failure(exc)
            ctx.summary.failed += 1
            if meeting is not None and run_id is not None:
                self._record_failure(meeting, run_id, message)
            ctx.progress("error", message, video_id, status=FAILED, error=message)
            return

        if outcome == NO_CAPTIONS:
            ctx.summary.no_captions += 1
        else:
            ctx.summary.processed += 1

    def _record_failure(self, meeting: Meeting, run_id: str, message: str) -> None:
        try:
            self.store.mark_status(meeting.id, run_id, FAILED, message)
        except SupersededRunError:
            log.warning(
                "Run for %s was superseded before its failure was recorded", meeting.video_id,
            )
        except Exception:
            log.exception("Could not record failure for %s", meeting.video_id)

    def _process(
        self,
        ctx: RunContext,
        meeting: Meeting,
        run_id: str,
        mode: str,
        uploaded_transcript: str | None,
    ) -> str:
        video_id = meeting.video_id
        stored_chunks: list[StoredChunk] | None = None

        if mode == MODE_RECAP_ONLY:
            transcript_text = meeting.transcript or ""
            chunk_count = meeting.chunk_count
        else:
            # Step 1: Transcript
            if mode == MODE_UPLOAD:
                segments = text_to_segments(uploaded_transcript or "")
                if not segments:
                    raise PipelineError("Transcript could not be parsed into segments")
                ctx.progress(
                    "transcript",
                    f"Using uploaded transcript ({len(uploaded_transcript or ''):,} chars)",
                    video_id, segmentCount=len(segments),
                )
            else:
                result = self.transcripts.fetch(video_id)
                if isinstance(result, TranscriptAvailable):
                    segments = list(result.segments)
                    ctx.progress(
                        "transcript", f"Got {len(segments)} transcript segments",
                        video_id, segmentCount=len(segments), source=result.source,
                    )
                elif isinstance(result, TranscriptUnavailable):
                    self.store.mark_status(meeting.id, run_id, NO_CAPTIONS)
                    ctx.progress(
                        "transcript", "No captions available", video_id,
                        status=NO_CAPTIONS, reason=result.reason,
                    )
                    return NO_CAPTIONS
                elif isinstance(result, TranscriptError):
                    raise TranscriptFetchError(result.message)
                else:
                    raise TypeError(f"Unexpected transcript result: {result!r}")
            self.store.touch(meeting.id, run_id)

            # Step 2: Chunk
            chunks = chunk_segments(segments)
            if not chunks:
                raise PipelineError("Transcript produced no chunks")
            transcript_text = " ".join(c.content for c in chunks)
            chunk_count = len(chunks)
            ctx.progress("chunk", f"Created {chunk_count} chunks", video_id, chunkCount=chunk_count)

            # Step 3: Embeddings
            vectors = self.embedder.embed_chunks(chunks)
            if len(vectors) != chunk_count:
                raise EmbeddingError(
                    f"Got {len(vectors)} embeddings for {chunk_count} chunks"
                )
            self.store.touch(meeting.id, run_id)
            ctx.progress(
                "embeddings", f"Embeddings: {chunk_count}/{chunk_count}", video_id,
                embeddingsDone=chunk_count, embeddingsTotal=chunk_count,
            )
            stored_chunks = [
                StoredChunk(
                    meeting_id=meeting.id,
                    video_id=video_id,
                    chunk_index=chunk.chunk_index,
                    content=chunk.content,
                    start_seconds=chunk.start_seconds,
                    end_seconds=chunk.end_seconds,
                    embedding=vector,
                    meeting_date=meeting.meeting_date,
                )
                for chunk, vector in zip(chunks, vectors)
            ]

        # Step 4: Recap
        recap = self.recaps.generate(transcript_text)
        self.store.touch(meeting.id, run_id)
        ctx.progress(
            "recap",
            f"Recap: {len(recap.topics)} topics, {len(recap.decisions)} decisions",
            video_id, topicCount=len(recap.topics), decisionCount=len(recap.decisions),
        )

        # Step 5: Store (chunks only on runs that rebuilt them)
        stored = self.store.store_results(
            meeting.id, run_id, recap, transcript_text, chunk_count, stored_chunks,
        )
        ctx.progress("store", f"Stored version {stored.version}", video_id, version=stored.version)
        ctx.progress("done", f"Completed: {stored.title}", video_id, status=COMPLETED)
        return COMPLETED

    # ---- helpers -----------------------------------------------------------

    def _select_eligible(self, ctx: RunContext, force: bool) -> list[FeedVideo]:
        eligible: list[FeedVideo] = []
        for video in ctx.feed_videos:
            existing = self.store.get_by_video_id(video.video_id)
            if existing is None or force:
                eligible.append(video)
            elif existing.status in (FAILED, NO_CAPTIONS, PENDING):
                eligible.append(video)
            elif existing.status == PROCESSING and self.store.is_stale(existing):
                log.info("Retrying stale processing record %s", video.video_id)
                eligible.append(video)
            else:
                log.debug("Skipping %s (%s)", video.video_id, existing.status)
                ctx.summary.skipped += 1
        return eligible

    def _warn_missing_services(self) -> None:
        if hasattr(self.embedder, "is_available") and not self.embedder.is_available():
            log.warning("OpenAI key not set (OPENAI_API_KEY); embeddings will fail")
        if hasattr(self.recaps, "is_available") and not self.recaps.is_available():
            log.warning("Anthropic key not set (ANTHROPIC_API_KEY); recaps will fail")

    @staticmethod
    def _log_summary(summary: RunSummary) -> None:
        log.info("=" * 60)
        log.info(
            "Run summary: %d processed, %d skipped, %d failed, %d no captions",
            summary.processed, summary.skipped, summary.failed, summary.no_captions,
        )
        log.info("=" * 60)


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def _print_stream(response: Any) -> int:
    if response.stream is None:
        print(json.dumps(response.body, indent=2))
        return 0 if response.status < 400 else 1
    final: dict[str, Any] = {}
    for event in response.stream:
        payload = event.to_api()
        if event.kind == "complete":
            final = payload
        else:
            print(payload["message"])
    print(json.dumps(final, indent=2))
    return 0 if final.get("success") else 1


def main() -> None:
    from api import CouncilIngestAPI

    parser = argparse.ArgumentParser(
        description="Council Meeting Recap – Ingestion Pipeline",
    )
    parser.add_argument("--force", action="store_true", help="Reprocess every feed video")
    parser.add_argument("--video-id", type=str, help="Process a single video")
    parser.add_argument("--mode", choices=MODES, default=MODE_FULL, help="Single-video mode")
    parser.add_argument("--title", type=str, help="Title for a new video or upload")
    parser.add_argument("--published-at", type=str, help="Publish timestamp for a new video")
    parser.add_argument("--upload", type=Path, help="Ingest a transcript text file")
    parser.add_argument("--meeting-date", type=str, help="Meeting date (YYYY-MM-DD) for --upload")
    parser.add_argument("--stats", action="store_true", help="Show ingest stats")
    parser.add_argument("--feed", action="store_true", help="With --stats, include the live feed")
    parser.add_argument("--versions", type=str, metavar="MEETING_ID", help="List recap versions")
    parser.add_argument(
        "--restore", nargs=2, metavar=("MEETING_ID", "VERSION"), help="Restore a recap version",
    )
    parser.add_argument("--search", type=str, metavar="QUERY", help="Semantic search over chunks")
    args = parser.parse_args()

    api = CouncilIngestAPI()

    if args.stats:
        response = api.query(include_feed=args.feed)
    elif args.versions:
        response = api.list_versions(args.versions)
    elif args.search:
        response = api.search({"query": args.search})
    elif args.restore:
        meeting_id, version = args.restore
        response = api.restore_version(meeting_id, {"version": int(version)})
    elif args.upload:
        body: dict[str, Any] = {
            "title": args.title,
            "meetingDate": args.meeting_date,
            "transcript": args.upload.read_text(),
        }
        if args.video_id:
            body["videoId"] = args.video_id
        response = api.upload_transcript(body)
    elif args.video_id:
        body = {"videoId": args.video_id, "mode": args.mode}
        if args.title:
            body["title"] = args.title
        if args.published_at:
            body["publishedAt"] = args.published_at
        response = api.trigger(body)
    else:
        response = api.trigger({"force": args.force})

    sys.exit(_print_stream(response))


if __name__ == "__main__":
    main()
