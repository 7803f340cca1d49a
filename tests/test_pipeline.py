from __future__ import annotations

from unittest import mock

import pytest

from conftest import (
    FakeEmbedder,
    FakeRecaps,
    FakeTranscripts,
    make_recap,
    make_segments,
    make_video,
)
from errors import EmbeddingError, MalformedRecapError, SupersededRunError
from meeting_ingestion_pipeline import describe_failure
from meeting_store import MeetingStore
from models import (
    COMPLETED,
    FAILED,
    NO_CAPTIONS,
    PENDING,
    PROCESSING,
    Meeting,
    TranscriptSegment,
)
from progress import RunAborted
from transcript_service import TranscriptAvailable, TranscriptError, TranscriptUnavailable

FULL_ORDER = ["transcript", "chunk", "embeddings", "recap", "store", "done"]

UPLOAD_TEXT = (
    "Mayor Scott called the meeting to order. Roll call was taken.\n\n"
    + " ".join(
        f"Council member {i} spoke about the proposed sidewalk program."
        for i in range(12)
    )
)


def steps(events, video_id=None):
    return [e.step for e in events if video_id is None or e.video_id == video_id]


def zoning_segments():
    return tuple(
        TranscriptSegment(f"The zoning variance for lot {i} was discussed.", i * 4000, 4000)
        for i in range(10)
    )


# ---------------------------------------------------------------------------
# Batch runs
# ---------------------------------------------------------------------------

def test_batch_mixed_outcomes(make_pipeline, store):
    transcripts = FakeTranscripts({
        "AAAAAAAAAAA": TranscriptUnavailable(reason="TranscriptsDisabled"),
        "CCCCCCCCCCC": TranscriptAvailable(segments=zoning_segments(), source="primary"),
    })
    pipeline = make_pipeline(
        videos=[make_video("AAAAAAAAAAA"), make_video("BBBBBBBBBBB"), make_video("CCCCCCCCCCC")],
        transcripts=transcripts,
        recaps=FakeRecaps(malformed_for={"zoning variance"}),
    )
    events = []

    summary = pipeline.run_batch(events.append)

    assert summary.to_api() == {"processed": 1, "skipped": 0, "failed": 1, "noCaptions": 1}
    assert store.get_by_video_id("AAAAAAAAAAA").status == NO_CAPTIONS
    assert store.get_by_video_id("BBBBBBBBBBB").status == COMPLETED
    failed = store.get_by_video_id("CCCCCCCCCCC")
    assert failed.status == FAILED
    assert failed.error_message.startswith("Malformed recap")

    assert steps(events)[:2] == ["feed", "filter"]
    assert steps(events, "AAAAAAAAAAA") == ["transcript"]
    assert "error" not in steps(events, "AAAAAAAAAAA")
    assert steps(events, "BBBBBBBBBBB") == FULL_ORDER
    assert steps(events, "CCCCCCCCCCC") == ["transcript", "chunk", "embeddings", "error"]


def test_batch_counters(make_pipeline):
    pipeline = make_pipeline(videos=[make_video("AAAAAAAAAAA"), make_video("BBBBBBBBBBB")])
    events = []

    pipeline.run_batch(events.append)

    done = [e for e in events if e.step == "done"]
    assert [(e.current, e.total) for e in done] == [(1, 2), (2, 2)]
    assert done[0].message.startswith("[1/2]")


def test_batch_skips_completed_and_live_processing(make_pipeline, store):
    pipeline = make_pipeline(videos=[
        make_video("AAAAAAAAAAA"), make_video("BBBBBBBBBBB"), make_video("CCCCCCCCCCC"),
    ])
    pipeline.run_batch(lambda e: None)
    store.claim("BBBBBBBBBBB")
    events = []

    summary = pipeline.run_batch(events.append)

    assert summary.to_api() == {"processed": 0, "skipped": 3, "failed": 0, "noCaptions": 0}
    assert steps(events) == ["feed", "filter"]
    assert events[1].data == {"newCount": 0, "skipped": 3}


def test_batch_retries_failed_no_captions_and_pending(make_pipeline, store):
    store.meetings["AAAAAAAAAAA"] = Meeting(id="m-a", video_id="AAAAAAAAAAA", title="A", status=FAILED)
    store.meetings["BBBBBBBBBBB"] = Meeting(id="m-b", video_id="BBBBBBBBBBB", title="B", status=NO_CAPTIONS)
    store.meetings["CCCCCCCCCCC"] = Meeting(id="m-c", video_id="CCCCCCCCCCC", title="C", status=PENDING)
    pipeline = make_pipeline(videos=[
        make_video("AAAAAAAAAAA"), make_video("BBBBBBBBBBB"), make_video("CCCCCCCCCCC"),
    ])

    summary = pipeline.run_batch(lambda e: None)

    assert summary.processed == 3
    for vid in ("AAAAAAAAAAA", "BBBBBBBBBBB", "CCCCCCCCCCC"):
        assert store.get_by_video_id(vid).status == COMPLETED


def test_batch_force_reprocesses_completed(make_pipeline, store):
    pipeline = make_pipeline(videos=[make_video("AAAAAAAAAAA")])
    pipeline.run_batch(lambda e: None)

    summary = pipeline.run_batch(lambda e: None, force=True)

    assert summary.processed == 1
    assert store.get_by_video_id("AAAAAAAAAAA").version == 2


def test_batch_feed_failure_aborts(make_pipeline, feed_error):
    pipeline = make_pipeline(feed_error=feed_error)

    with pytest.raises(RunAborted, match="RSS feed"):
        pipeline.run_batch(lambda e: None)


def test_meeting_date_taken_from_title(make_pipeline, store):
    pipeline = make_pipeline(videos=[
        make_video("AAAAAAAAAAA", "City Council Meeting - March 3, 2025"),
        make_video("BBBBBBBBBBB", "Council Work Session"),
    ])

    pipeline.run_batch(lambda e: None)

    assert store.get_by_video_id("AAAAAAAAAAA").meeting_date == "2025-03-03"
    assert store.get_by_video_id("BBBBBBBBBBB").meeting_date == "2025-01-16"


# ---------------------------------------------------------------------------
# Single-video runs
# ---------------------------------------------------------------------------

def test_single_run_event_order(make_pipeline, store):
    pipeline = make_pipeline()
    events = []

    summary = pipeline.run_single(
        events.append, "AAAAAAAAAAA", title="Council Meeting", published_at="2025-02-01T00:00:00Z",
    )

    assert summary.processed == 1
    assert steps(events) == FULL_ORDER
    embeddings = events[2]
    assert embeddings.data["embeddingsDone"] == embeddings.data["embeddingsTotal"]
    meeting = store.get_by_video_id("AAAAAAAAAAA")
    assert meeting.status == COMPLETED
    assert meeting.version == 1
    assert meeting.run_id is None
    assert len(store.get_chunks(meeting.id)) == meeting.chunk_count > 0


def test_single_run_unknown_video_without_title(make_pipeline, store):
    pipeline = make_pipeline()

    with pytest.raises(RunAborted, match="not found") as excinfo:
        pipeline.run_single(lambda e: None, "AAAAAAAAAAA")

    assert excinfo.value.summary.failed == 1
    assert store.get_by_video_id("AAAAAAAAAAA") is None


def test_no_captions_is_never_failed(make_pipeline, store, no_captions):
    pipeline = make_pipeline(transcripts=FakeTranscripts({"AAAAAAAAAAA": no_captions}))
    events = []

    summary = pipeline.run_single(events.append, "AAAAAAAAAAA", title="Council Meeting")

    assert summary.no_captions == 1
    assert summary.failed == 0
    assert store.get_by_video_id("AAAAAAAAAAA").status == NO_CAPTIONS
    assert [(e.step, e.status) for e in events] == [("transcript", NO_CAPTIONS)]


def test_transcript_error_fails_meeting(make_pipeline, store):
    transcripts = FakeTranscripts({
        "AAAAAAAAAAA": TranscriptError(message="primary: blocked; fallback: blocked", blocked=True),
    })
    pipeline = make_pipeline(transcripts=transcripts)
    events = []

    summary = pipeline.run_single(events.append, "AAAAAAAAAAA", title="Council Meeting")

    assert summary.failed == 1
    meeting = store.get_by_video_id("AAAAAAAAAAA")
    assert meeting.status == FAILED
    assert "blocked" in meeting.error_message
    assert steps(events) == ["error"]


def test_reprocess_bumps_version_and_keeps_history(make_pipeline, store):
    first, second = make_recap("First recap"), make_recap("Second recap")
    pipeline = make_pipeline(recaps=FakeRecaps(first, second))
    pipeline.run_single(lambda e: None, "AAAAAAAAAAA", title="Council Meeting")

    pipeline.run_single(lambda e: None, "AAAAAAAAAAA")

    meeting = store.get_by_video_id("AAAAAAAAAAA")
    assert meeting.version == 2
    assert meeting.recap.summary == "Second recap"
    versions = store.list_versions(meeting.id)
    assert [v.version for v in versions] == [1]
    assert versions[0].recap.summary == "First recap"


def test_recap_only_reuses_transcript_and_chunks(make_pipeline, store):
    transcripts = FakeTranscripts()
    embedder = FakeEmbedder()
    recaps = FakeRecaps()
    pipeline = make_pipeline(transcripts=transcripts, embedder=embedder, recaps=recaps)
    pipeline.run_single(lambda e: None, "AAAAAAAAAAA", title="Council Meeting")
    meeting = store.get_by_video_id("AAAAAAAAAAA")
    chunks_before = store.get_chunks(meeting.id)
    events = []

    summary = pipeline.run_single(events.append, "AAAAAAAAAAA", mode="recap_only")

    assert summary.processed == 1
    assert steps(events) == ["recap", "store", "done"]
    assert transcripts.calls == ["AAAAAAAAAAA"]
    assert embedder.calls == 1
    assert recaps.transcripts[1] == meeting.transcript
    after = store.get_by_video_id("AAAAAAAAAAA")
    assert after.version == 2
    assert after.chunk_count == meeting.chunk_count
    assert store.get_chunks(meeting.id) == chunks_before


def test_recap_only_without_transcript_aborts(make_pipeline, store):
    store.meetings["AAAAAAAAAAA"] = Meeting(id="m-a", video_id="AAAAAAAAAAA", title="A", status=FAILED)
    pipeline = make_pipeline()

    with pytest.raises(RunAborted, match="No existing transcript"):
        pipeline.run_single(lambda e: None, "AAAAAAAAAAA", mode="recap_only")

    assert store.get_by_video_id("AAAAAAAAAAA").status == FAILED


def test_second_trigger_while_processing_is_noop(make_pipeline, store):
    pipeline = make_pipeline()
    pipeline.run_single(lambda e: None, "AAAAAAAAAAA", title="Council Meeting")
    store.claim("AAAAAAAAAAA")
    before = store.get_by_video_id("AAAAAAAAAAA")
    events = []

    summary = pipeline.run_single(events.append, "AAAAAAAAAAA")

    assert summary.skipped == 1
    assert [(e.step, e.status) for e in events] == [("skipped", PROCESSING)]
    after = store.get_by_video_id("AAAAAAAAAAA")
    assert (after.status, after.version, after.updated_at) == (
        before.status, before.version, before.updated_at,
    )


def test_stale_processing_is_taken_over(make_pipeline, store, clock):
    pipeline = make_pipeline()
    pipeline.run_single(lambda e: None, "AAAAAAAAAAA", title="Council Meeting")
    meeting, stale_run = store.claim("AAAAAAAAAAA")
    clock.advance(minutes=16)

    summary = pipeline.run_single(lambda e: None, "AAAAAAAAAAA")

    assert summary.processed == 1
    assert store.get_by_video_id("AAAAAAAAAAA").status == COMPLETED
    with pytest.raises(SupersededRunError):
        store.store_results(meeting.id, stale_run, make_recap("stale"), "text", 1)
    assert store.get_by_video_id("AAAAAAAAAAA").recap.summary != "stale"


def test_embedding_failure_keeps_prior_chunks(make_pipeline, store):
    make_pipeline().run_single(lambda e: None, "AAAAAAAAAAA", title="Council Meeting")
    meeting = store.get_by_video_id("AAAAAAAAAAA")
    prior_chunks = store.get_chunks(meeting.id)
    failing = make_pipeline(
        transcripts=FakeTranscripts({
            "AAAAAAAAAAA": TranscriptAvailable(segments=make_segments(40), source="fallback"),
        }),
        embedder=FakeEmbedder(fail_on="connection reset"),
    )

    summary = failing.run_single(lambda e: None, "AAAAAAAAAAA")

    assert summary.failed == 1
    after = store.get_by_video_id("AAAAAAAAAAA")
    assert after.status == FAILED
    assert after.error_message.startswith("Embedding failed for chunk")
    assert after.version == 1
    assert store.get_chunks(meeting.id) == prior_chunks


# ---------------------------------------------------------------------------
# Persistence failures
# ---------------------------------------------------------------------------

def test_claim_failure_fails_only_that_video(make_pipeline, store):
    pipeline = make_pipeline(videos=[
        make_video("AAAAAAAAAAA"), make_video("BBBBBBBBBBB"), make_video("CCCCCCCCCCC"),
    ])
    real_claim = store.claim

    def claim(video_id, **meta):
        if video_id == "BBBBBBBBBBB":
            raise OSError("disk full")
        return real_claim(video_id, **meta)

    events = []
    with mock.patch.object(store, "claim", side_effect=claim):
        summary = pipeline.run_batch(events.append)

    assert summary.to_api() == {"processed": 2, "skipped": 0, "failed": 1, "noCaptions": 0}
    assert store.get_by_video_id("AAAAAAAAAAA").status == COMPLETED
    assert store.get_by_video_id("BBBBBBBBBBB") is None
    assert store.get_by_video_id("CCCCCCCCCCC").status == COMPLETED
    errors = [e for e in events if e.step == "error"]
    assert [(e.video_id, e.data["error"]) for e in errors] == [("BBBBBBBBBBB", "OSError: disk full")]
    assert steps(events, "CCCCCCCCCCC") == FULL_ORDER


def test_results_write_failure_recorded_as_failed(make_pipeline, store, clock, tmp_path):
    make_pipeline().run_single(lambda e: None, "AAAAAAAAAAA", title="Council Meeting")
    meeting = store.get_by_video_id("AAAAAAAAAAA")
    prior_chunks = store.get_chunks(meeting.id)
    real_write = MeetingStore._atomic_write

    def write(path, payload, indent=2):
        if path.name == "meetings.json" and payload["AAAAAAAAAAA"]["status"] == COMPLETED:
            raise OSError("disk full")
        return real_write(path, payload, indent)

    events = []
    with mock.patch.object(store, "_atomic_write", side_effect=write):
        summary = make_pipeline().run_single(events.append, "AAAAAAAAAAA")

    assert summary.failed == 1
    assert steps(events)[-1] == "error"
    after = store.get_by_video_id("AAAAAAAAAAA")
    assert after.status == FAILED
    assert after.error_message == "OSError: disk full"
    assert after.version == 1
    assert after.recap.summary == meeting.recap.summary
    assert store.list_versions(meeting.id) == []
    assert store.get_chunks(meeting.id) == prior_chunks

    reloaded = MeetingStore(data_dir=tmp_path / "data", clock=clock)
    on_disk = reloaded.get_by_video_id("AAAAAAAAAAA")
    assert (on_disk.status, on_disk.version) == (FAILED, 1)
    assert reloaded.list_versions(meeting.id) == []


def test_unrecordable_failure_still_counted(make_pipeline, store):
    pipeline = make_pipeline(
        videos=[make_video("AAAAAAAAAAA"), make_video("BBBBBBBBBBB")],
        transcripts=FakeTranscripts({
            "AAAAAAAAAAA": TranscriptAvailable(segments=zoning_segments(), source="primary"),
        }),
        recaps=FakeRecaps(malformed_for={"zoning variance"}),
    )
    events = []

    with mock.patch.object(store, "mark_status", side_effect=OSError("read-only file system")):
        summary = pipeline.run_batch(events.append)

    assert summary.to_api() == {"processed": 1, "skipped": 0, "failed": 1, "noCaptions": 0}
    assert steps(events, "AAAAAAAAAAA")[-1] == "error"
    assert steps(events, "BBBBBBBBBBB") == FULL_ORDER
    assert store.get_by_video_id("AAAAAAAAAAA").status == PROCESSING


def test_unexpected_run_error_keeps_counts(make_pipeline):
    pipeline = make_pipeline(videos=[make_video("AAAAAAAAAAA"), make_video("BBBBBBBBBBB")])

    with mock.patch.object(pipeline, "_log_summary", side_effect=RuntimeError("log sink closed")):
        with pytest.raises(RunAborted, match="log sink closed") as excinfo:
            pipeline.run_batch(lambda e: None)

    assert excinfo.value.summary.processed == 2


@pytest.mark.parametrize("exc, message", [
    (MalformedRecapError("Malformed recap: missing summary"), "Malformed recap: missing summary"),
    (EmbeddingError("Embedding failed for chunk 2"), "Embedding failed for chunk 2"),
    (OSError("disk full"), "OSError: disk full"),
])
def test_describe_failure(exc, message):
    assert describe_failure(exc) == message


# ---------------------------------------------------------------------------
# Manual uploads
# ---------------------------------------------------------------------------

def test_upload_creates_meeting_at_version_one(make_pipeline, store):
    transcripts = FakeTranscripts()
    pipeline = make_pipeline(transcripts=transcripts)
    events = []

    summary = pipeline.run_upload(events.append, "Special Session", "2025-02-10", UPLOAD_TEXT)

    assert summary.processed == 1
    assert steps(events) == FULL_ORDER
    assert transcripts.calls == []
    video_id = events[0].video_id
    assert video_id.startswith("manual-2025-02-10-")
    meeting = store.get_by_video_id(video_id)
    assert meeting.status == COMPLETED
    assert meeting.version == 1
    assert meeting.meeting_date == "2025-02-10"
    assert meeting.video_url is None
    assert "sidewalk program" in meeting.transcript


def test_upload_for_existing_video_versions_recap(make_pipeline, store):
    pipeline = make_pipeline()
    pipeline.run_single(lambda e: None, "AAAAAAAAAAA", title="Council Meeting")

    pipeline.run_upload(
        lambda e: None, "Council Meeting", "2025-01-15", UPLOAD_TEXT, video_id="AAAAAAAAAAA",
    )

    meeting = store.get_by_video_id("AAAAAAAAAAA")
    assert meeting.version == 2
    assert meeting.video_url == "https://www.youtube.com/watch?v=AAAAAAAAAAA"
