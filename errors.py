"""
Error taxonomy for the ingestion pipeline.

Unavailable   -> NoCaptionsError      (terminal, meeting ends in no_captions)
Transient     -> TransientError       (retryable, meeting ends in failed)
Malformed     -> MalformedRecapError  (model output did not parse, failed)
Validation    -> ValidationError      (bad request, pipeline never starts)
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for every error raised by the pipeline."""


# ---------------------------------------------------------------------------
# Stage failures
# ---------------------------------------------------------------------------

class TransientError(PipelineError):
    """Network, rate-limit, or upstream-blocking failure. Safe to retry later."""


class FeedError(TransientError):
    pass


class TranscriptFetchError(TransientError):
    """Captions could not be fetched (blocked or errored), they may still exist."""


class TranscriptBlockedError(TranscriptFetchError):
    """Upstream refused the request (bot check, IP block, rate limit)."""


class EmbeddingError(TransientError):
    pass


class RecapTransportError(TransientError):
    pass


class NoCaptionsError(PipelineError):
    """Captions genuinely do not exist for the video."""

    def __init__(self, video_id: str, reason: str = ""):
        self.video_id = video_id
        self.reason = reason
        message = f"No captions available for video {video_id}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class MalformedRecapError(PipelineError):
    """Generative output did not parse into the recap structure."""


# ---------------------------------------------------------------------------
# Request / state errors
# ---------------------------------------------------------------------------

class ValidationError(PipelineError):
    pass


class InvalidTransitionError(PipelineError):
    def __init__(self, video_id: str, current: str, target: str):
        self.video_id = video_id
        self.current = current
        self.target = target
        super().__init__(
            f"Illegal status change for {video_id}: {current} -> {target}"
        )


class SupersededRunError(PipelineError):
    """The run no longer owns the meeting; a newer run claimed it."""


class MeetingNotFoundError(PipelineError):
    pass


class VersionNotFoundError(PipelineError):
    pass


class RestoreError(PipelineError):
    """The meeting is not in a state that allows restoring a version."""
