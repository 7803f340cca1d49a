"""
Recap Generator
===============
Produce a structured meeting recap (summary, article, topics, decisions,
public comments) from a full transcript using Claude.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

import requests

from config import (
    API_CONFIG,
    PROCESSING,
    RECAP_SYSTEM_PROMPT,
    SECTION_SUMMARY_PROMPT,
    get_api_key,
)
from errors import MalformedRecapError, RecapTransportError
from models import Recap
from retry import RetryPolicy

log = logging.getLogger("recap")

LIST_FIELDS = {
    "topics": "topics",
    "decisions": "decisions",
    "publicComments": "public_comments",
}


class RecapGenerator:
    """Use Claude to turn a transcript into a structured recap."""

    def __init__(self, retry_policy: RetryPolicy | None = None) -> None:
        self.api_key = get_api_key("anthropic")
        self.config = API_CONFIG["anthropic"]
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=PROCESSING["recap_attempts"],
        )
        self.session = requests.Session()

    def is_available(self) -> bool:
        return bool(self.api_key)

    def generate(self, transcript: str) -> Recap:
        """
        Generate a recap. Raises RecapTransportError when the model cannot be
        reached and MalformedRecapError when its answer does not parse.
        """
        max_chars = self.config["max_transcript_chars"]
        if len(transcript) <= max_chars:
            raw_text = self._complete(RECAP_SYSTEM_PROMPT, transcript)
            return parse_recap_response(raw_text)

        # Staged summarization for exceptionally long transcripts
        section_size = self.config["section_chars"]
        sections = [
            transcript[i:i + section_size]
            for i in range(0, len(transcript), section_size)
        ]
        log.info(
            "Transcript is %d chars (limit %d), summarizing %d sections first",
            len(transcript), max_chars, len(sections),
        )
        summaries: list[str] = []
        for idx, section in enumerate(sections, 1):
            log.info("Summarizing section %d/%d", idx, len(sections))
            summaries.append(self._complete(SECTION_SUMMARY_PROMPT, section))

        combined = "\n\n---\n\n".join(summaries)
        raw_text = self._complete(
            RECAP_SYSTEM_PROMPT,
            "Here are detailed summaries of different sections of a city council "
            f"meeting:\n\n{combined}",
        )
        return parse_recap_response(raw_text)

    # ---- transport ---------------------------------------------------------

    def _complete(self, system: str, prompt: str) -> str:
        if not self.api_key:
            raise RecapTransportError("Anthropic API key not set (ANTHROPIC_API_KEY)")
        try:
            return self.retry_policy.call(self._post_message, system, prompt)
        except requests.RequestException as exc:
            raise RecapTransportError(f"Claude API error: {exc}") from exc

    def _post_message(self, system: str, prompt: str) -> str:
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": self.config["version"],
            "content-type": "application/json",
        }
        payload = {
            "model": self.config["model"],
            "max_tokens": self.config["max_tokens"],
            "system": system,
            "messages": [{"role": "user", "content": prompt}],
        }
        response = self.session.post(
            self.config["base_url"],
            headers=headers,
            json=payload,
            timeout=self.config["timeout"],
        )
        response.raise_for_status()

        result = response.json()
        raw_text = ""
        for block in result.get("content", []):
            if block.get("type") == "text":
                raw_text += block["text"]
        return raw_text


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def extract_json(text: str) -> dict[str, Any] | None:
    """Pull a JSON object out of the model's response text."""
    # Try to find a JSON block in markdown fences
    fence_match = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", text, re.DOTALL)
    if fence_match:
        try:
            return json.loads(fence_match.group(1))
        except json.JSONDecodeError:
            pass

    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    # Find the outermost { ... }
    brace_match = re.search(r"\{.*\}", text, re.DOTALL)
    if brace_match:
        try:
            parsed = json.loads(brace_match.group(0))
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass

    return None


def parse_recap_response(text: str) -> Recap:
    """Validate the model's answer into a Recap or raise MalformedRecapError."""
    data = extract_json(text)
    if data is None:
        raise MalformedRecapError("Malformed recap: no JSON object in model response")

    summary = data.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        raise MalformedRecapError("Malformed recap: missing or empty 'summary'")

    article = data.get("article", "")
    if article is None:
        article = ""
    if not isinstance(article, str):
        raise MalformedRecapError("Malformed recap: 'article' is not a string")

    lists: dict[str, list[str]] = {}
    for key, attr in LIST_FIELDS.items():
        value = data.get(key, [])
        if value is None:
            value = []
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise MalformedRecapError(f"Malformed recap: '{key}' is not a list of strings")
        lists[attr] = [v.strip() for v in value if v.strip()]

    return Recap(summary=summary.strip(), article=article.strip(), **lists)
