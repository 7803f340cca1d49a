"""
Chunker
=======
Split transcript text into ordered, bounded-size chunks for embedding.

Chunks are packed from transcript segments (caption snippets or sentences) and
break preferentially at paragraph ends, then sentence ends, and only cut a
sentence when a single one is longer than the limit.
"""

from __future__ import annotations

import html
import re

from config import PROCESSING
from models import Chunk, TranscriptSegment

SENTENCE_RE = re.compile(r"[^.!?]+(?:[.!?]+[\"')\]]*|$)")
PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n+")
SENTENCE_END_RE = re.compile(r"[.!?][\"')\]]*$")
NOISE_RE = re.compile(r"\[(?:music|applause|laughter|inaudible)\]", re.IGNORECASE)
WHITESPACE_RE = re.compile(r"\s+")


def clean_transcript_text(text: str) -> str:
    """Decode entities, drop caption noise markers, collapse whitespace."""
    text = html.unescape(text).replace("\xa0", " ")
    text = NOISE_RE.sub("", text)
    return WHITESPACE_RE.sub(" ", text).strip()


def text_to_segments(
    text: str, words_per_minute: int = PROCESSING["words_per_minute"],
) -> list[TranscriptSegment]:
    """
    Split plain transcript text into sentence segments with estimated offsets.

    Plain text has no timing, so offsets are spread across an assumed
    duration at a fixed speaking rate.
    """
    paragraphs = [p for p in PARAGRAPH_SPLIT_RE.split(text) if p.strip()]
    sentences: list[tuple[str, bool]] = []
    for para in paragraphs:
        para_sentences = [
            clean_transcript_text(s) for s in SENTENCE_RE.findall(para)
        ]
        para_sentences = [s for s in para_sentences if s]
        for i, sentence in enumerate(para_sentences):
            sentences.append((sentence, i == len(para_sentences) - 1))

    total_words = sum(len(s.split()) for s, _ in sentences)
    if total_words == 0:
        return []

    ms_per_word = 60_000 / words_per_minute
    segments: list[TranscriptSegment] = []
    offset = 0.0
    for sentence, paragraph_end in sentences:
        duration = len(sentence.split()) * ms_per_word
        segments.append(TranscriptSegment(
            text=sentence,
            offset_ms=round(offset),
            duration_ms=round(duration),
            paragraph_end=paragraph_end,
        ))
        offset += duration
    return segments


def chunk_transcript(
    text: str, max_chars: int = PROCESSING["chunk_max_chars"],
) -> list[Chunk]:
    return chunk_segments(text_to_segments(text), max_chars)


def chunk_segments(
    segments: list[TranscriptSegment], max_chars: int = PROCESSING["chunk_max_chars"],
) -> list[Chunk]:
    """Pack segments into chunks of at most max_chars characters."""
    pieces: list[TranscriptSegment] = []
    for seg in segments:
        text = clean_transcript_text(seg.text)
        if not text:
            continue
        pieces.extend(_split_oversized(seg, text, max_chars))

    chunks: list[Chunk] = []
    current: list[TranscriptSegment] = []
    half = max_chars // 2

    for piece in pieces:
        while current and _joined_len(current) + 1 + len(piece.text) > max_chars:
            cut = _last_sentence_break(current, half)
            chunks.append(_make_chunk(len(chunks), current[:cut]))
            current = current[cut:]
        current.append(piece)
        if piece.paragraph_end and _joined_len(current) >= half:
            chunks.append(_make_chunk(len(chunks), current))
            current = []

    if current:
        chunks.append(_make_chunk(len(chunks), current))
    return chunks


# ---- helpers ---------------------------------------------------------------

def _joined_len(segments: list[TranscriptSegment]) -> int:
    return sum(len(s.text) for s in segments) + max(len(segments) - 1, 0)


def _last_sentence_break(segments: list[TranscriptSegment], min_chars: int) -> int:
    """
    Index just past the last segment ending a sentence, as long as the chunk
    keeps at least min_chars. Falls back to taking every segment.
    """
    for i in range(len(segments), 0, -1):
        head = segments[:i]
        if _joined_len(head) < min_chars:
            break
        if head[-1].paragraph_end or SENTENCE_END_RE.search(head[-1].text):
            return i
    return len(segments)


def _split_oversized(
    seg: TranscriptSegment, text: str, max_chars: int,
) -> list[TranscriptSegment]:
    if len(text) <= max_chars:
        return [TranscriptSegment(text, seg.offset_ms, seg.duration_ms, seg.paragraph_end)]

    parts: list[str] = []
    current = ""
    for word in text.split(" "):
        if len(word) > max_chars:
            if current:
                parts.append(current)
                current = ""
            parts.extend(word[i:i + max_chars] for i in range(0, len(word), max_chars))
            continue
        candidate = f"{current} {word}" if current else word
        if len(candidate) > max_chars:
            parts.append(current)
            current = word
        else:
            current = candidate
    if current:
        parts.append(current)

    total = sum(len(p) for p in parts)
    result: list[TranscriptSegment] = []
    offset = float(seg.offset_ms)
    for i, part in enumerate(parts):
        duration = seg.duration_ms * len(part) / total
        result.append(TranscriptSegment(
            text=part,
            offset_ms=round(offset),
            duration_ms=round(duration),
            paragraph_end=seg.paragraph_end and i == len(parts) - 1,
        ))
        offset += duration
    return result


def _make_chunk(index: int, segments: list[TranscriptSegment]) -> Chunk:
    start_ms = segments[0].offset_ms
    end_ms = segments[-1].offset_ms + segments[-1].duration_ms
    return Chunk(
        chunk_index=index,
        content=" ".join(s.text for s in segments),
        start_seconds=start_ms // 1000,
        end_seconds=end_ms // 1000,
    )
