"""
Centralized configuration for the council meeting recap pipeline.

Feed source, API settings, prompt templates, and processing limits live here.
Point the pipeline at another channel by editing FEED_CONFIG without touching
pipeline code.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# ---------------------------------------------------------------------------
# Project paths
# ---------------------------------------------------------------------------
BASE_DIR = Path(__file__).resolve().parent
DATA_DIR = Path(os.environ.get("COUNCIL_DATA_DIR", BASE_DIR / "council_data"))
CHUNKS_DIR = DATA_DIR / "chunks"

# ---------------------------------------------------------------------------
# Video feed (Sioux City Council YouTube channel)
# ---------------------------------------------------------------------------
FEED_CONFIG = {
    "channel_id": "UCrekGAbOEqDvdzn9w8FAcoQ",
    "rss_url": "https://www.youtube.com/feeds/videos.xml?channel_id={channel_id}",
    "video_url": "https://www.youtube.com/watch?v={video_id}",
    "ignore_title_terms": ["test", "placeholder"],
    "timeout": 30,
}

# ---------------------------------------------------------------------------
# Transcript acquisition
# ---------------------------------------------------------------------------
TRANSCRIPT_CONFIG = {
    "languages": ["en", "en-US"],
    "user_agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    ),
    # Consent state YouTube expects before it serves caption data
    "consent_cookies": {
        "CONSENT": "YES+cb.20240101-00-p0.en+FX+000",
        "SOCS": "CAI",
    },
    "cookie_domain": ".youtube.com",
    "caption_formats": ["json3", "vtt"],
    "min_transcript_chars": 100,
    "primary_attempts": 2,
    "fallback_attempts": 2,
    "timeout": 60,
}

# ---------------------------------------------------------------------------
# Recap prompts
# ---------------------------------------------------------------------------
RECAP_SYSTEM_PROMPT = """You are a local civic reporter. Your job is to make a city council meeting transparent and accessible to everyday residents. You write blog-post style recaps addressed directly to the people who live here.

Given a transcript (or summaries of sections of a transcript), produce a structured JSON recap with these fields:

1. "summary": A concise 2-4 sentence overview of the meeting's key business. This is used as a preview on the dashboard widget.

2. "article": A thorough, engaging blog-post style write-up of the meeting (800-2000 words). Use plain English, no jargon, no legalese. Structure it with markdown headings (##). Explain what decisions mean for residents: taxes, neighborhoods, commutes, utilities. Lead with the most impactful items. End with upcoming actions residents should know about (next votes, public comment opportunities, deadlines). Do NOT guess how long the meeting was; you only have the transcript text.

3. "decisions": An array of specific decisions made, votes taken, or ordinances passed or discussed. Include vote counts if mentioned.

4. "topics": An array of major topics or agenda items discussed.

5. "publicComments": An array of notable public comments or citizen concerns raised.

Respond ONLY with valid JSON in this exact format:
{
  "summary": "...",
  "article": "...",
  "decisions": ["...", "..."],
  "topics": ["...", "..."],
  "publicComments": ["...", "..."]
}

If a section has no entries, use an empty array []. Focus on substance over procedure."""

SECTION_SUMMARY_PROMPT = """You are covering a city council meeting for local residents. Summarize the key points, decisions, discussions, and any public comments from this portion of the transcript. Be thorough: include specifics like vote counts, dollar amounts, names of projects, and what things mean for residents."""

# ---------------------------------------------------------------------------
# API configuration
# ---------------------------------------------------------------------------
API_CONFIG = {
    "anthropic": {
        "api_key_env": "ANTHROPIC_API_KEY",
        "base_url": "https://api.anthropic.com/v1/messages",
        "version": "2023-06-01",
        "model": "claude-sonnet-4-20250514",
        "max_tokens": 8000,
        "timeout": 300,
        # Sections beyond this go through staged summarization first
        "max_transcript_chars": 600_000,
        "section_chars": 400_000,
    },
    "openai": {
        "api_key_env": "OPENAI_API_KEY",
        "base_url": "https://api.openai.com/v1/embeddings",
        "model": "text-embedding-3-small",
        "dimensions": 1536,
        "max_input_chars": 24_000,
        "timeout": 60,
    },
}

# ---------------------------------------------------------------------------
# Processing settings
# ---------------------------------------------------------------------------
PROCESSING = {
    "stale_after_minutes": 15,
    "chunk_max_chars": 4500,
    "words_per_minute": 150,
    "embed_concurrency": 5,
    "embed_attempts": 3,
    "recap_attempts": 3,
    "feed_attempts": 3,
    "retry_backoff_seconds": 2.0,
    "retry_max_backoff_seconds": 30.0,
    "min_upload_chars": 500,
    "recent_meetings_limit": 20,
    "search_limit": 5,
    "search_min_similarity": 0.3,
}

# ---------------------------------------------------------------------------
# Helper to get API keys
# ---------------------------------------------------------------------------

def get_api_key(service: str) -> str | None:
    """Retrieve an API key from the environment."""
    env_var = API_CONFIG[service]["api_key_env"]
    return os.environ.get(env_var)
