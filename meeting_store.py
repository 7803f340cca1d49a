"""
Meeting store (JSON-backed)
===========================
Persists Meeting records, the append-only MeetingVersion history, and each
meeting's embedded chunk set.

Layout under the data directory::

    meetings.json          {video_id: Meeting}
    versions.json          [MeetingVersion, ...]   append-only
    chunks/<meeting>.json  [StoredChunk, ...]      replaced whole per run

Every file is written to a temp file and moved into place with os.replace, so
readers see either the previous file or the new one. Each write goes to disk
before the in-memory copy is replaced, so a failed write changes nothing.
Status changes and claims are serialized by one in-process lock; the status
field is the only lock a run holds.
"""

from __future__ import annotations

import copy
import json
import logging
import math
import os
import threading
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Sequence

from config import DATA_DIR, FEED_CONFIG, PROCESSING
from errors import (
    InvalidTransitionError,
    MeetingNotFoundError,
    RestoreError,
    SupersededRunError,
    VersionNotFoundError,
)
from models import (
    COMPLETED,
    FAILED,
    NO_CAPTIONS,
    PENDING,
    PROCESSING as STATUS_PROCESSING,
    Meeting,
    MeetingVersion,
    Recap,
    StoredChunk,
    can_transition,
)

log = logging.getLogger("store")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def cosine_similarity(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class MeetingStore:
    """JSON file-backed store of meetings, versions, and chunk sets."""

    def __init__(
        self,
        data_dir: Path = DATA_DIR,
        stale_after: timedelta = timedelta(minutes=PROCESSING["stale_after_minutes"]),
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.data_dir = Path(data_dir)
        self.meetings_path = self.data_dir / "meetings.json"
        self.versions_path = self.data_dir / "versions.json"
        self.chunks_dir = self.data_dir / "chunks"
        self.stale_after = stale_after
        self._clock = clock
        self._lock = threading.RLock()
        self._ensure_dirs()
        self.meetings: dict[str, Meeting] = self._load_meetings()
        self.versions: list[MeetingVersion] = self._load_versions()
        self._chunks: dict[str, tuple[StoredChunk, ...]] = self._load_chunks()

    # ---- loading / saving --------------------------------------------------

    def _ensure_dirs(self) -> None:
        for d in (self.data_dir, self.chunks_dir):
            d.mkdir(parents=True, exist_ok=True)

    def _load_meetings(self) -> dict[str, Meeting]:
        raw = self._read_json(self.meetings_path, {})
        return {vid: Meeting.from_dict(m) for vid, m in raw.items()}

    def _load_versions(self) -> list[MeetingVersion]:
        raw = self._read_json(self.versions_path, [])
        return [MeetingVersion.from_dict(v) for v in raw]

    def _load_chunks(self) -> dict[str, tuple[StoredChunk, ...]]:
        chunk_sets: dict[str, tuple[StoredChunk, ...]] = {}
        for path in sorted(self.chunks_dir.glob("*.json")):
            raw = self._read_json(path, [])
            chunk_sets[path.stem] = tuple(StoredChunk.from_dict(c) for c in raw)
        return chunk_sets

    @staticmethod
    def _read_json(path: Path, default: Any) -> Any:
        if not path.exists():
            return default
        try:
            return json.loads(path.read_text())
        except (json.JSONDecodeError, KeyError) as exc:
            log.warning("Corrupt store file %s, starting fresh: %s", path.name, exc)
            return default

    @staticmethod
    def _atomic_write(path: Path, payload: Any, indent: int | None = 2) -> None:
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        tmp_path.write_text(json.dumps(payload, indent=indent, default=str))
        os.replace(tmp_path, path)

    # ---- reads -------------------------------------------------------------

    def now(self) -> datetime:
        return self._clock()

    def get_by_video_id(self, video_id: str) -> Meeting | None:
        with self._lock:
            meeting = self.meetings.get(video_id)
            return copy.deepcopy(meeting) if meeting else None

    def get(self, meeting_id: str) -> Meeting | None:
        with self._lock:
            meeting = self._find(meeting_id)
            return copy.deepcopy(meeting) if meeting else None

    def is_stale(self, meeting: Meeting) -> bool:
        """A processing meeting whose last write is older than the stale window."""
        if meeting.status != STATUS_PROCESSING:
            return False
        if not meeting.updated_at:
            return True
        updated = datetime.fromisoformat(meeting.updated_at)
        return self.now() - updated > self.stale_after

    def recent(self, limit: int = PROCESSING["recent_meetings_limit"]) -> list[Meeting]:
        with self._lock:
            ordered = sorted(self.meetings.values(), key=lambda m: m.updated_at, reverse=True)
            return [copy.deepcopy(m) for m in ordered[:limit]]

    def stats(self) -> dict[str, Any]:
        with self._lock:
            meetings = list(self.meetings.values())
        dates = [m.meeting_date for m in meetings if m.meeting_date]
        return {
            "totalMeetings": len(meetings),
            "completedCount": sum(1 for m in meetings if m.status == COMPLETED),
            "failedCount": sum(1 for m in meetings if m.status == FAILED),
            "noCaptionsCount": sum(1 for m in meetings if m.status == NO_CAPTIONS),
            "pendingCount": sum(
                1 for m in meetings if m.status in (PENDING, STATUS_PROCESSING)
            ),
            "latestMeetingDate": max(dates) if dates else None,
        }

    def list_versions(self, meeting_id: str) -> list[MeetingVersion]:
        """History rows for a meeting, newest first. The live recap is not included."""
        with self._lock:
            rows = [v for v in self.versions if v.meeting_id == meeting_id]
        return sorted(rows, key=lambda v: v.version, reverse=True)

    def get_chunks(self, meeting_id: str) -> list[StoredChunk]:
        with self._lock:
            return list(self._chunks.get(meeting_id, ()))

    def search_chunks(
        self,
        query_embedding: list[float],
        limit: int = PROCESSING["search_limit"],
        min_similarity: float = PROCESSING["search_min_similarity"],
        date_from: str | None = None,
        date_to: str | None = None,
    ) -> list[dict[str, Any]]:
        """Rank stored chunks by cosine similarity to the query vector."""
        with self._lock:
            chunk_sets = list(self._chunks.items())
            titles = {m.id: m.title for m in self.meetings.values()}

        scored: list[tuple[float, StoredChunk]] = []
        for meeting_id, chunks in chunk_sets:
            if meeting_id not in titles:
                continue
            for chunk in chunks:
                if date_from and (not chunk.meeting_date or chunk.meeting_date < date_from):
                    continue
                if date_to and (not chunk.meeting_date or chunk.meeting_date > date_to):
                    continue
                similarity = cosine_similarity(query_embedding, chunk.embedding)
                if similarity >= min_similarity:
                    scored.append((similarity, chunk))

        scored.sort(key=lambda pair: pair[0], reverse=True)
        video_url = FEED_CONFIG["video_url"]
        return [
            {
                "content": chunk.content,
                "meetingId": chunk.meeting_id,
                "meetingTitle": titles[chunk.meeting_id],
                "meetingDate": chunk.meeting_date,
                "videoId": chunk.video_id,
                "youtubeLink": (
                    video_url.format(video_id=chunk.video_id) + f"&t={chunk.start_seconds}"
                ),
                "similarity": round(similarity, 4),
                "startSeconds": chunk.start_seconds,
                "endSeconds": chunk.end_seconds,
            }
            for similarity, chunk in scored[:limit]
        ]

    # ---- run lifecycle -----------------------------------------------------

    def claim(
        self,
        video_id: str,
        title: str | None = None,
        published_at: str | None = None,
        meeting_date: str | None = None,
        video_url: str | None = None,
        channel_id: str | None = None,
    ) -> tuple[Meeting, str] | None:
        """
        Move a meeting into processing and hand back a run id that owns it.

        Returns None, writing nothing, when the meeting is already processing
        and not stale. A stale processing meeting is taken over by the new run.
        Creates the meeting (pending, then processing) if it does not exist.
        """
        with self._lock:
            now = self.now().isoformat()
            existing = self.meetings.get(video_id)
            if existing is None:
                if not title:
                    raise MeetingNotFoundError(f"Meeting not found for video {video_id}")
                meeting = Meeting(
                    id=uuid.uuid4().hex,
                    video_id=video_id,
                    title=title,
                    status=PENDING,
                    created_at=now,
                    updated_at=now,
                )
            else:
                if existing.status == STATUS_PROCESSING:
                    if not self.is_stale(existing):
                        log.info("Video %s is already processing, not claiming", video_id)
                        return None
                    log.warning(
                        "Superseding stale run %s for %s (last update %s)",
                        existing.run_id, video_id, existing.updated_at,
                    )
                meeting = copy.deepcopy(existing)

            if title:
                meeting.title = title
            meeting.published_at = published_at or meeting.published_at
            meeting.meeting_date = meeting_date or meeting.meeting_date
            meeting.video_url = video_url or meeting.video_url
            meeting.channel_id = channel_id or meeting.channel_id

            self._transition(meeting, STATUS_PROCESSING)
            run_id = uuid.uuid4().hex
            meeting.run_id = run_id
            meeting.error_message = None
            meeting.updated_at = now
            self._commit(meeting)
            if existing is None:
                log.info("Created meeting %s for video %s", meeting.id, video_id)
            return copy.deepcopy(meeting), run_id

    def touch(self, meeting_id: str, run_id: str) -> None:
        """Heartbeat: keep an active run out of the stale window."""
        with self._lock:
            meeting = self._owned(meeting_id, run_id)
            meeting.updated_at = self.now().isoformat()
            self._commit(meeting)

    def mark_status(
        self, meeting_id: str, run_id: str, status: str, error_message: str | None = None,
    ) -> Meeting:
        """End a run in failed or no_captions."""
        with self._lock:
            meeting = self._owned(meeting_id, run_id)
            self._transition(meeting, status)
            meeting.error_message = error_message
            meeting.run_id = None
            meeting.updated_at = self.now().isoformat()
            self._commit(meeting)
            return copy.deepcopy(meeting)

    def store_results(
        self,
        meeting_id: str,
        run_id: str,
        recap: Recap,
        transcript: str,
        chunk_count: int,
        chunks: list[StoredChunk] | None = None,
    ) -> Meeting:
        """
        Complete a run. If the meeting already holds a recap, that content is
        snapshotted into the history before being overwritten and the version
        is bumped. ``chunks`` (full runs only) replaces the chunk set whole.

        Nothing in memory changes unless every file write succeeds. A failed
        write leaves the run owning a processing meeting, so it can still be
        marked failed.
        """
        with self._lock:
            meeting = self._owned(meeting_id, run_id)
            if not can_transition(meeting.status, COMPLETED):
                raise InvalidTransitionError(meeting.video_id, meeting.status, COMPLETED)

            versions = None
            if meeting.recap is not None:
                versions = self._with_snapshot(meeting)
                meeting.version += 1

            meeting.recap = copy.deepcopy(recap)
            meeting.transcript = transcript
            meeting.chunk_count = chunk_count
            meeting.status = COMPLETED
            meeting.error_message = None
            meeting.run_id = None
            meeting.updated_at = self.now().isoformat()

            if chunks is None:
                self._commit(meeting, versions)
            else:
                self._write_chunks(meeting.id, chunks)
                try:
                    self._commit(meeting, versions)
                except Exception:
                    self._write_chunks(meeting.id, self._chunks.get(meeting.id))
                    raise
                self._chunks[meeting.id] = tuple(chunks)
            log.info("Stored results for %s (version %d)", meeting.video_id, meeting.version)
            return copy.deepcopy(meeting)

    # ---- versions ----------------------------------------------------------

    def restore_version(self, meeting_id: str, target_version: int) -> Meeting:
        """
        Make a historical snapshot the current recap again.

        The current content is snapshotted first and the version is bumped, so
        the restore itself can be undone by restoring that new snapshot.
        """
        with self._lock:
            found = self._find(meeting_id)
            if found is None:
                raise MeetingNotFoundError(f"Meeting {meeting_id} not found")
            if found.status != COMPLETED:
                raise RestoreError(
                    f"Meeting {meeting_id} is {found.status}; only completed meetings can be restored"
                )

            target = next(
                (v for v in self.versions
                 if v.meeting_id == meeting_id and v.version == target_version),
                None,
            )
            if target is None:
                raise VersionNotFoundError(f"Version {target_version} not found")

            meeting = copy.deepcopy(found)
            versions = self._with_snapshot(meeting)
            meeting.recap = copy.deepcopy(target.recap)
            meeting.transcript = target.transcript
            meeting.chunk_count = target.chunk_count
            meeting.version += 1
            meeting.updated_at = self.now().isoformat()
            self._commit(meeting, versions)
            log.info(
                "Restored version %d of %s as version %d",
                target_version, meeting.video_id, meeting.version,
            )
            return copy.deepcopy(meeting)

    # ---- internal ----------------------------------------------------------

    def _find(self, meeting_id: str) -> Meeting | None:
        for meeting in self.meetings.values():
            if meeting.id == meeting_id:
                return meeting
        return None

    def _owned(self, meeting_id: str, run_id: str) -> Meeting:
        """A working copy of the meeting, if ``run_id`` still owns it."""
        meeting = self._find(meeting_id)
        if meeting is None:
            raise MeetingNotFoundError(f"Meeting {meeting_id} not found")
        if meeting.run_id != run_id:
            raise SupersededRunError(
                f"Run {run_id} no longer owns meeting {meeting.video_id}"
            )
        return copy.deepcopy(meeting)

    @staticmethod
    def _transition(meeting: Meeting, target: str) -> None:
        if not can_transition(meeting.status, target):
            raise InvalidTransitionError(meeting.video_id, meeting.status, target)
        meeting.status = target

    def _commit(self, meeting: Meeting, versions: list[MeetingVersion] | None = None) -> None:
        """Write the updated meeting (and history) to disk, then swap it into memory."""
        meetings = dict(self.meetings)
        meetings[meeting.video_id] = meeting
        if versions is not None:
            self._atomic_write(self.versions_path, [v.to_dict() for v in versions])
        try:
            self._atomic_write(
                self.meetings_path, {vid: m.to_dict() for vid, m in meetings.items()},
            )
        except Exception:
            if versions is not None:
                self._atomic_write(self.versions_path, [v.to_dict() for v in self.versions])
            raise
        self.meetings = meetings
        if versions is not None:
            self.versions = versions

    def _with_snapshot(self, meeting: Meeting) -> list[MeetingVersion]:
        """The history plus the meeting's current content (never overwrites a row)."""
        exists = any(
            v.meeting_id == meeting.id and v.version == meeting.version
            for v in self.versions
        )
        if exists:
            log.warning("Version %d of %s already recorded", meeting.version, meeting.video_id)
            return list(self.versions)
        return self.versions + [MeetingVersion(
            meeting_id=meeting.id,
            version=meeting.version,
            recap=copy.deepcopy(meeting.recap),
            transcript=meeting.transcript,
            chunk_count=meeting.chunk_count,
            created_at=self.now().isoformat(),
        )]

    def _write_chunks(self, meeting_id: str, chunks: Sequence[StoredChunk] | None) -> None:
        path = self.chunks_dir / f"{meeting_id}.json"
        if chunks is None:
            path.unlink(missing_ok=True)
            return
        self._atomic_write(path, [c.to_dict() for c in chunks], indent=None)
