"""
Feed Discovery
==============
Poll the council channel's YouTube RSS feed and return candidate videos.

The RSS format is small and stable, so entries are pulled out with regular
expressions rather than a full XML parser.
"""

from __future__ import annotations

import html
import logging
import re
from datetime import datetime, timezone

import requests

from config import FEED_CONFIG, PROCESSING
from errors import FeedError
from models import FeedVideo
from retry import RetryPolicy

log = logging.getLogger("feed")

ENTRY_RE = re.compile(r"<entry>(.*?)</entry>", re.DOTALL)
VIDEO_ID_RE = re.compile(r"<yt:videoId>(.*?)</yt:videoId>")
TITLE_RE = re.compile(r"<title>(.*?)</title>", re.DOTALL)
PUBLISHED_RE = re.compile(r"<published>(.*?)</published>")
CHANNEL_ID_RE = re.compile(r"<yt:channelId>(.*?)</yt:channelId>")

DATE_PATTERNS = [
    # "January 15, 2025" or "Jan 15, 2025"
    re.compile(r"(?P<month>[A-Za-z]+)\.?\s+(?P<day>\d{1,2}),?\s+(?P<year>\d{4})"),
    # "01/15/2025" or "1-15-2025"
    re.compile(r"(?P<month>\d{1,2})[/\-](?P<day>\d{1,2})[/\-](?P<year>\d{4})"),
    # "2025-01-15"
    re.compile(r"(?P<year>\d{4})-(?P<month>\d{1,2})-(?P<day>\d{1,2})"),
]

MONTH_MAP = {
    "january": 1, "february": 2, "march": 3, "april": 4,
    "may": 5, "june": 6, "july": 7, "august": 8,
    "september": 9, "october": 10, "november": 11, "december": 12,
    "jan": 1, "feb": 2, "mar": 3, "apr": 4,
    "jun": 6, "jul": 7, "aug": 8, "sep": 9, "sept": 9,
    "oct": 10, "nov": 11, "dec": 12,
}


def parse_youtube_rss(xml: str, default_channel_id: str = "") -> list[FeedVideo]:
    """Extract video entries from a YouTube channel RSS document."""
    videos: list[FeedVideo] = []
    for entry_match in ENTRY_RE.finditer(xml):
        block = entry_match.group(1)
        video_id_match = VIDEO_ID_RE.search(block)
        title_match = TITLE_RE.search(block)
        if not video_id_match or not title_match:
            continue

        video_id = video_id_match.group(1).strip()
        published_match = PUBLISHED_RE.search(block)
        channel_match = CHANNEL_ID_RE.search(block)
        videos.append(FeedVideo(
            video_id=video_id,
            title=html.unescape(title_match.group(1).strip()),
            published_at=(
                published_match.group(1).strip() if published_match
                else datetime.now(timezone.utc).isoformat()
            ),
            video_url=FEED_CONFIG["video_url"].format(video_id=video_id),
            channel_id=channel_match.group(1).strip() if channel_match else default_channel_id,
        ))
    return videos


def extract_meeting_date(title: str) -> str:
    """Pull an ISO date out of a video title, or return ''."""
    for pattern in DATE_PATTERNS:
        for m in pattern.finditer(title):
            parts = m.groupdict()
            try:
                month = parts["month"]
                if month.isdigit():
                    month_int = int(month)
                else:
                    month_int = MONTH_MAP.get(month.lower(), 0)
                if month_int == 0:
                    continue
                candidate = datetime(int(parts["year"]), month_int, int(parts["day"]))
                return candidate.strftime("%Y-%m-%d")
            except (ValueError, KeyError):
                continue
    return ""


def derive_meeting_date(title: str, published_at: str | None) -> str | None:
    """Date from the title, falling back to the publish date."""
    from_title = extract_meeting_date(title)
    if from_title:
        return from_title
    if published_at:
        return published_at.split("T")[0]
    return None


class FeedDiscovery:
    """Fetch the channel feed and filter out non-meeting uploads."""

    def __init__(
        self,
        channel_id: str = FEED_CONFIG["channel_id"],
        retry_policy: RetryPolicy | None = None,
    ):
        self.channel_id = channel_id
        self.rss_url = FEED_CONFIG["rss_url"].format(channel_id=channel_id)
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=PROCESSING["feed_attempts"],
        )
        self.session = requests.Session()
        self.session.headers.update({
            "User-Agent": "CouncilRecap/1.0 (civic meeting archive)",
        })

    def fetch_feed(self) -> list[FeedVideo]:
        """Return the current feed listing. Raises FeedError on failure."""
        log.info("Fetching RSS feed %s", self.rss_url)
        try:
            xml = self.retry_policy.call(self._get_rss)
        except requests.RequestException as exc:
            raise FeedError(f"Failed to fetch RSS feed: {exc}") from exc

        videos = [v for v in parse_youtube_rss(xml, self.channel_id) if self._is_meeting(v)]
        log.info("Found %d videos in RSS feed", len(videos))
        return videos

    def _get_rss(self) -> str:
        resp = self.session.get(self.rss_url, timeout=FEED_CONFIG["timeout"])
        resp.raise_for_status()
        return resp.text

    @staticmethod
    def _is_meeting(video: FeedVideo) -> bool:
        lower = video.title.lower()
        return not any(term in lower for term in FEED_CONFIG["ignore_title_terms"])
