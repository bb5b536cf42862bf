"""Split a podcast script into bounded, independently synthesizable chunks."""

from __future__ import annotations

import re

from podcast_engine.errors import ValidationError

HARD_CHUNK_LIMIT = 4000

# A speaker label at the start of a line, e.g. "Alice:" or "SPEAKER_A:".
SPEAKER_MARKER = re.compile(r"^([A-Z][\w]*(?: [\w]+)?):", re.MULTILINE)

_SENTENCE_END = re.compile(r"[.!?]")
_WHITESPACE = re.compile(r"\s")


def normalize_script(script: str) -> str:
    """Turn escaped ``\\n`` sequences into real newlines and trim the script."""
    return script.replace("\\n", "\n").strip()


def target_chunk_size(estimated_minutes: float) -> int:
    """Soft chunk size in characters; longer podcasts get smaller chunks.

    Smaller chunks keep each processing step inside its wall-clock budget
    when the whole job is long.
    """
    if estimated_minutes > 20:
        return 2000
    if estimated_minutes > 15:
        return 2500
    if estimated_minutes > 10:
        return 3000
    return 3500


def _last_match_end(pattern: re.Pattern[str], text: str, start: int, end: int) -> int:
    last = -1
    for match in pattern.finditer(text, start, end):
        last = match.end()
    return last


def _find_split(text: str, pos: int, target: int, hard_limit: int) -> int:
    """Pick the end offset of the chunk starting at ``pos``.

    Preference order inside the window ``[pos + 0.8t, pos + 1.2t]``: just
    before a speaker label, just after sentence punctuation, just after
    whitespace. Falls back to a hard cut at ``pos + target``.
    """
    window_start = pos + int(target * 0.8)
    window_end = min(pos + int(target * 1.2), pos + hard_limit, len(text))

    marker = SPEAKER_MARKER.search(text, window_start, window_end)
    if marker is not None and marker.start() > pos:
        return marker.start()

    sentence_end = _last_match_end(_SENTENCE_END, text, window_start, window_end)
    if sentence_end > pos:
        return sentence_end

    space_end = _last_match_end(_WHITESPACE, text, window_start, window_end)
    if space_end > pos:
        return space_end

    return pos + target


def chunk_script(
    script: str,
    estimated_minutes: float,
    *,
    hard_limit: int = HARD_CHUNK_LIMIT,
) -> list[str]:
    """Partition a script into ordered chunk texts.

    The chunks are contiguous slices of the normalized script, so joining
    them reproduces it exactly. No chunk is empty and none is longer than
    ``hard_limit`` characters.

    Args:
        script: Full dialogue script with speaker-labelled lines.
        estimated_minutes: Expected podcast duration, used to size chunks.
        hard_limit: Absolute per-chunk character ceiling.

    Returns:
        Chunk texts in index order.

    Raises:
        ValidationError: The script is empty after normalization.
    """
    text = normalize_script(script)
    if not text:
        raise ValidationError("Podcast script is empty")

    target = min(target_chunk_size(estimated_minutes), hard_limit)
    chunks: list[str] = []
    pos = 0

    while pos < len(text):
        if len(text) - pos <= target:
            end = len(text)
        else:
            end = _find_split(text, pos, target, hard_limit)

        # Safety net: never exceed the hard ceiling, always make progress.
        end = min(end, pos + hard_limit, len(text))
        if end <= pos:
            end = min(pos + target, len(text))

        chunks.append(text[pos:end])
        pos = end

    return chunks
