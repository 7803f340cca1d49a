"""
Transcript Acquisition
======================
Fetch caption text for one video and classify the outcome.

Two acquisition paths are tried in order:

1. youtube-transcript-api, a lightweight timedtext fetch.
2. yt-dlp, a heavier extraction that resolves caption tracks through the full
   player response. Only used when the primary path was blocked or errored.

Every attempt on either path builds its own HTTP session carrying YouTube's
consent cookies; sessions are never reused across attempts.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Callable, Union

import requests
import yt_dlp
from yt_dlp.utils import DownloadError
from youtube_transcript_api import (
    CouldNotRetrieveTranscript,
    NoTranscriptFound,
    RequestBlocked,
    TranscriptsDisabled,
    VideoUnavailable,
    YouTubeTranscriptApi,
)

from config import FEED_CONFIG, TRANSCRIPT_CONFIG
from errors import NoCaptionsError, TranscriptBlockedError, TranscriptFetchError
from models import TranscriptSegment
from retry import RetryPolicy, is_transient

log = logging.getLogger("transcript")

BLOCKED_MARKERS = (
    "sign in to confirm",
    "not a bot",
    "http error 429",
    "too many requests",
    "consent",
)
UNAVAILABLE_MARKERS = (
    "video unavailable",
    "private video",
    "has been removed",
)
VTT_TIMING_RE = re.compile(
    r"(?P<start>\d{1,2}:\d{2}:\d{2}\.\d{3}|\d{2}:\d{2}\.\d{3})\s+-->\s+"
    r"(?P<end>\d{1,2}:\d{2}:\d{2}\.\d{3}|\d{2}:\d{2}\.\d{3})"
)
VTT_TAG_RE = re.compile(r"<[^>]+>")


# ---------------------------------------------------------------------------
# Tagged results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TranscriptAvailable:
    segments: tuple[TranscriptSegment, ...]
    source: str  # "primary" | "fallback"

    @property
    def text(self) -> str:
        return " ".join(s.text for s in self.segments)


@dataclass(frozen=True)
class TranscriptUnavailable:
    """Captions do not exist upstream. Terminal."""
    reason: str


@dataclass(frozen=True)
class TranscriptError:
    """Fetch was blocked or failed transiently. Retry later."""
    message: str
    blocked: bool = False


TranscriptResult = Union[TranscriptAvailable, TranscriptUnavailable, TranscriptError]


def _retry_unless_blocked(exc: BaseException) -> bool:
    return is_transient(exc) and not isinstance(exc, TranscriptBlockedError)


class TranscriptService:
    """Acquire transcripts with a primary and a fallback path."""

    def __init__(
        self,
        languages: list[str] | None = None,
        primary_policy: RetryPolicy | None = None,
        fallback_policy: RetryPolicy | None = None,
    ):
        self.languages = languages or list(TRANSCRIPT_CONFIG["languages"])
        self.primary_policy = primary_policy or RetryPolicy(
            max_attempts=TRANSCRIPT_CONFIG["primary_attempts"],
            is_retryable=_retry_unless_blocked,
        )
        self.fallback_policy = fallback_policy or RetryPolicy(
            max_attempts=TRANSCRIPT_CONFIG["fallback_attempts"],
            is_retryable=_retry_unless_blocked,
        )

    def fetch(self, video_id: str) -> TranscriptResult:
        log.info("Fetching transcript for %s", video_id)
        primary = self._run_path("primary", self._fetch_primary, self.primary_policy, video_id)
        if not isinstance(primary, TranscriptError):
            return primary

        log.warning(
            "Primary transcript fetch %s for %s: %s; trying fallback",
            "blocked" if primary.blocked else "failed", video_id, primary.message,
        )
        fallback = self._run_path("fallback", self._fetch_fallback, self.fallback_policy, video_id)
        if not isinstance(fallback, TranscriptError):
            return fallback

        return TranscriptError(
            message=(
                f"Transcript fetch failed for {video_id}: "
                f"primary: {primary.message}; fallback: {fallback.message}"
            ),
            blocked=primary.blocked or fallback.blocked,
        )

    # ---- acquisition paths -------------------------------------------------

    def _run_path(
        self,
        name: str,
        fetcher: Callable[[str], list[TranscriptSegment]],
        policy: RetryPolicy,
        video_id: str,
    ) -> TranscriptResult:
        try:
            segments = policy.call(fetcher, video_id)
        except NoCaptionsError as exc:
            log.info("No captions for %s (%s path): %s", video_id, name, exc.reason)
            return TranscriptUnavailable(reason=exc.reason or str(exc))
        except TranscriptBlockedError as exc:
            return TranscriptError(message=str(exc), blocked=True)
        except TranscriptFetchError as exc:
            return TranscriptError(message=str(exc))

        text_len = sum(len(s.text) for s in segments)
        if text_len < TRANSCRIPT_CONFIG["min_transcript_chars"]:
            log.info("Transcript too short (%d chars) for %s", text_len, video_id)
            return TranscriptUnavailable(reason=f"transcript too short ({text_len} chars)")

        log.info(
            "Got %d segments (%d chars) for %s via %s path",
            len(segments), text_len, video_id, name,
        )
        return TranscriptAvailable(segments=tuple(segments), source=name)

    def _fetch_primary(self, video_id: str) -> list[TranscriptSegment]:
        api = YouTubeTranscriptApi(http_client=self._consent_session())
        try:
            fetched = api.fetch(video_id, languages=self.languages)
        except (TranscriptsDisabled, NoTranscriptFound, VideoUnavailable) as exc:
            raise NoCaptionsError(video_id, type(exc).__name__) from exc
        except RequestBlocked as exc:
            raise TranscriptBlockedError(f"request blocked ({type(exc).__name__})") from exc
        except CouldNotRetrieveTranscript as exc:
            raise TranscriptFetchError(f"could not retrieve transcript ({type(exc).__name__})") from exc
        except requests.RequestException as exc:
            raise TranscriptFetchError(f"network error: {exc}") from exc

        return [
            TranscriptSegment(
                text=snippet.text,
                offset_ms=round(snippet.start * 1000),
                duration_ms=round(snippet.duration * 1000),
            )
            for snippet in fetched
        ]

    def _fetch_fallback(self, video_id: str) -> list[TranscriptSegment]:
        session = self._consent_session()
        opts = {
            "skip_download": True,
            "quiet": True,
            "no_warnings": True,
            "ignoreconfig": True,
            "http_headers": {"User-Agent": TRANSCRIPT_CONFIG["user_agent"]},
        }
        url = FEED_CONFIG["video_url"].format(video_id=video_id)
        try:
            with yt_dlp.YoutubeDL(opts) as ydl:
                for cookie in session.cookies:
                    ydl.cookiejar.set_cookie(cookie)
                info = ydl.extract_info(url, download=False)
        except DownloadError as exc:
            message = str(exc).lower()
            if any(marker in message for marker in UNAVAILABLE_MARKERS):
                raise NoCaptionsError(video_id, "video unavailable") from exc
            if any(marker in message for marker in BLOCKED_MARKERS):
                raise TranscriptBlockedError(f"yt-dlp blocked: {exc}") from exc
            raise TranscriptFetchError(f"yt-dlp error: {exc}") from exc

        track = self._pick_caption_track(info or {})
        if not track:
            raise NoCaptionsError(video_id, "no caption tracks")

        try:
            resp = session.get(track["url"], timeout=TRANSCRIPT_CONFIG["timeout"])
            resp.raise_for_status()
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else None
            if status in (403, 429):
                raise TranscriptBlockedError(f"caption download refused ({status})") from exc
            raise TranscriptFetchError(f"caption download failed: {exc}") from exc
        except requests.RequestException as exc:
            raise TranscriptFetchError(f"caption download failed: {exc}") from exc

        if track["ext"] == "json3":
            return parse_json3_captions(resp.text)
        return parse_vtt_captions(resp.text)

    # ---- helpers -----------------------------------------------------------

    @staticmethod
    def _consent_session() -> requests.Session:
        session = requests.Session()
        session.headers.update({
            "User-Agent": TRANSCRIPT_CONFIG["user_agent"],
            "Accept-Language": "en-US,en;q=0.9",
        })
        for name, value in TRANSCRIPT_CONFIG["consent_cookies"].items():
            session.cookies.set(name, value, domain=TRANSCRIPT_CONFIG["cookie_domain"])
        return session

    def _pick_caption_track(self, info: dict) -> dict | None:
        """Prefer uploaded subtitles over auto captions, json3 over vtt."""
        for source in ("subtitles", "automatic_captions"):
            tracks_by_lang = info.get(source) or {}
            for lang in self.languages + [f"{lang}-orig" for lang in self.languages]:
                tracks = tracks_by_lang.get(lang) or []
                for fmt in TRANSCRIPT_CONFIG["caption_formats"]:
                    for track in tracks:
                        if track.get("ext") == fmt and track.get("url"):
                            return track
        return None


# ---------------------------------------------------------------------------
# Caption formats
# ---------------------------------------------------------------------------

def parse_json3_captions(raw: str) -> list[TranscriptSegment]:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise TranscriptFetchError(f"unreadable json3 captions: {exc}") from exc

    segments: list[TranscriptSegment] = []
    for event in data.get("events", []):
        segs = event.get("segs")
        if not segs:
            continue
        text = "".join(s.get("utf8", "") for s in segs).replace("\n", " ").strip()
        if text:
            segments.append(TranscriptSegment(
                text=text,
                offset_ms=int(event.get("tStartMs", 0)),
                duration_ms=int(event.get("dDurationMs", 0)),
            ))
    return segments


def _vtt_ms(stamp: str) -> int:
    parts = stamp.split(":")
    seconds = float(parts[-1])
    minutes = int(parts[-2])
    hours = int(parts[-3]) if len(parts) == 3 else 0
    return round(((hours * 60 + minutes) * 60 + seconds) * 1000)


def parse_vtt_captions(raw: str) -> list[TranscriptSegment]:
    segments: list[TranscriptSegment] = []
    last_text = ""
    for block in re.split(r"\n\s*\n", raw):
        lines = [line.strip() for line in block.strip().splitlines()]
        timing_index = next(
            (i for i, line in enumerate(lines) if VTT_TIMING_RE.search(line)), None,
        )
        if timing_index is None:
            continue
        timing = VTT_TIMING_RE.search(lines[timing_index])
        text = " ".join(
            VTT_TAG_RE.sub("", line) for line in lines[timing_index + 1:]
        ).strip()
        # Auto captions repeat the previous line as a rolling window
        if not text or text == last_text:
            continue
        last_text = text
        start = _vtt_ms(timing.group("start"))
        segments.append(TranscriptSegment(
            text=text,
            offset_ms=start,
            duration_ms=max(_vtt_ms(timing.group("end")) - start, 0),
        ))
    return segments
