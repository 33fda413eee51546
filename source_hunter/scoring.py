"""
Relevance scoring for comments.

This module scores a comment's plain text for how likely it is to name the
source (song, anime, movie...) of a video, and reports the spans that triggered
each heuristic so consumers can highlight them.

Four independent heuristics are evaluated against the full text, in a fixed
order, and their points are summed and clamped to [0, 100]:

    source   "name: X", "song - X", "anime = X"   +80  highlight over X
    helper   "it's Some Title"                     +50  highlight over the title
    bracket  first "[...]" on a line               +40  highlight incl. brackets
    question "what?", "sauce ?"                    +10  no highlight

analyze() is pure and deterministic and never raises. All matching is linear in
the input length: the regexes have no ambiguous nested repetition and the
bracket search is done with str.find.
"""

import re
from typing import Iterable, List, Optional, Tuple

import structlog

from source_hunter.models.comment_models import (
    AnalysisResult, Highlight, KIND_SOURCE, KIND_HELPER, KIND_BRACKET,
)

logger = structlog.get_logger(__name__)


# Module-level constants
SOURCE_LABELS = ['name', 'source', 'sauce', 'title', 'track', 'song', 'movie', 'anime']

SOURCE_POINTS = 80
HELPER_POINTS = 50
BRACKET_POINTS = 40
QUESTION_POINTS = 10

MIN_SCORE = 0
MAX_SCORE = 100

SOURCE_PATTERN = re.compile(
    r'\b(?:' + '|'.join(SOURCE_LABELS) + r')[ \t]*[:=-]\s*(\S[^\n]*)',
    re.IGNORECASE
)
HELPER_PATTERN = re.compile(r"\b[Ii]t['’]?s\s+([A-Z][a-z]+(?:[ \t][A-Z][a-z]+)*)")
QUESTION_PATTERN = re.compile(r'\b(?:what|name|source|sauce)[ \t]*\?', re.IGNORECASE)

ZERO_RESULT = AnalysisResult(score=0, highlights=())


def _match_source(text: str) -> Optional[Highlight]:
    match = SOURCE_PATTERN.search(text)
    if not match:
        return None
    start, end = match.span(1)
    # Trailing whitespace is not part of the value
    value = match.group(1).rstrip()
    return Highlight(start=start, end=start + len(value), kind=KIND_SOURCE)


def _match_helper(text: str) -> Optional[Highlight]:
    match = HELPER_PATTERN.search(text)
    if not match:
        return None
    start, end = match.span(1)
    return Highlight(start=start, end=end, kind=KIND_HELPER)


def find_first_bracket(text: str) -> Optional[Tuple[int, int]]:
    """Locate the first "[...]" span that closes on the same line.

    Only the first "[" of each line can start a match: any later "[" on that
    line has the same (missing) closing bracket ahead of it. This keeps the
    search to a single pass over the text.

    Returns:
        (start, end) offsets with end exclusive, or None if no bracket pair exists
    """
    line_start = 0
    length = len(text)

    while line_start < length:
        line_end = text.find('\n', line_start)
        if line_end == -1:
            line_end = length

        open_at = text.find('[', line_start, line_end)
        if open_at != -1:
            close_at = text.find(']', open_at + 1, line_end)
            if close_at != -1:
                return open_at, close_at + 1

        line_start = line_end + 1

    return None


def _match_bracket(text: str) -> Optional[Highlight]:
    span = find_first_bracket(text)
    if span is None:
        return None
    return Highlight(start=span[0], end=span[1], kind=KIND_BRACKET)


def _score_text(text: str) -> AnalysisResult:
    score = 0
    highlights: List[Highlight] = []

    # 1. The answer
    source = _match_source(text)
    if source is not None:
        score += SOURCE_POINTS
        highlights.append(source)

    # 2. The helper
    helper = _match_helper(text)
    if helper is not None:
        score += HELPER_POINTS
        highlights.append(helper)

    # 3. The bracket
    bracket = _match_bracket(text)
    if bracket is not None:
        score += BRACKET_POINTS
        highlights.append(bracket)

    # 4. The question (context only)
    if QUESTION_PATTERN.search(text):
        score += QUESTION_POINTS

    return AnalysisResult(
        score=max(MIN_SCORE, min(MAX_SCORE, score)),
        highlights=tuple(highlights)
    )


def analyze(text) -> AnalysisResult:
    """
    Score a comment's text for source-identification relevance.

    Args:
        text: Plain comment text. Anything that is not a str scores 0.

    Returns:
        AnalysisResult with score in [0, 100] and the raw highlight spans in
        heuristic order (source, helper, bracket). Spans from different
        heuristics may overlap; use highlight_segments() to resolve them.

    Examples:
        >>> analyze("source: My Anime Name").score
        80
        >>> analyze("[Naruto]").highlights
        (Highlight(start=0, end=8, kind='bracket'),)
        >>> analyze("plain text with no signal")
        AnalysisResult(score=0, highlights=())
    """
    if not isinstance(text, str) or not text:
        return ZERO_RESULT

    try:
        return _score_text(text)
    except Exception as e:
        logger.warning(
            "comment_scoring_failed",
            error=str(e),
            error_type=type(e).__name__,
            text_length=len(text)
        )
        return ZERO_RESULT


def highlight_segments(text: str, highlights: Iterable[Highlight]) -> List[Tuple[str, Optional[str]]]:
    """
    Split text into (segment, kind) pieces for rendering.

    Highlights are ordered by start offset; when two overlap, the one starting
    first wins and ties go to the longer span. Overlapped remainders are
    dropped. Segments with kind None are plain text.

    Example:
        >>> highlight_segments("it's [Bleach]", analyze("it's [Bleach]").highlights)
        [("it's ", None), ('[Bleach]', 'bracket')]
    """
    ordered = sorted(highlights, key=lambda h: (h.start, -(h.end - h.start)))
    segments: List[Tuple[str, Optional[str]]] = []
    cursor = 0

    for highlight in ordered:
        start = max(highlight.start, cursor)
        end = min(highlight.end, len(text))
        if start >= end:
            continue
        if start > cursor:
            segments.append((text[cursor:start], None))
        segments.append((text[start:end], highlight.kind))
        cursor = end

    if cursor < len(text):
        segments.append((text[cursor:], None))

    return segments
