"""
Text measuring, wrapping and truncation for the PDF reports.

These functions take a ``measure`` callable (text -> width in points) rather
than a font so they can be used, and tested, without a PDF document.
"""

from typing import Callable, List, Optional

from reportlab.pdfbase.pdfmetrics import stringWidth

Measure = Callable[[str], float]

ELLIPSIS = '...'


def measure(font_name: str, font_size: float) -> Measure:
    """Return a width function for a standard PDF font at a given size"""
    def _width(text: str) -> float:
        return stringWidth(text, font_name, font_size)
    return _width


def _fitting_prefix_length(text: str, max_width: float, width_of: Measure) -> int:
    """Longest prefix of ``text`` that fits, but never less than one character"""
    fitted = 0
    for k in range(1, len(text) + 1):
        if width_of(text[:k]) > max_width:
            break
        fitted = k
    return max(fitted, 1)


def split_long_word(word: str, max_width: float, width_of: Measure) -> List[str]:
    """
    Hard-split a single token that is wider than ``max_width``.

    Pieces are cut at the longest prefix that fits. A glyph that is wider than
    ``max_width`` on its own still forms a one-character piece so the loop
    always makes progress.
    """
    pieces = []
    remaining = word
    while remaining and width_of(remaining) > max_width:
        cut = _fitting_prefix_length(remaining, max_width, width_of)
        pieces.append(remaining[:cut])
        remaining = remaining[cut:]
    if remaining:
        pieces.append(remaining)
    return pieces


def wrap_text(text: Optional[str], max_width: float, width_of: Measure) -> List[str]:
    """
    Greedy word-wrap of ``text`` into lines no wider than ``max_width``.

    Line breaks in the input are treated as spaces. Words are packed onto the
    current line while the joined line still fits; words that cannot fit on
    a line of their own are hard-split character by character.

    A line exactly ``max_width`` wide fits. Legacy reports used a strict
    comparison and pushed such a line's last word down, so exact-width
    lines can break differently from PDFs produced by the old system.

    Returns:
        The wrapped lines, or [''] for empty input
    """
    if not text:
        return ['']

    processed = text.replace('\r\n', ' ').replace('\r', ' ').replace('\n', ' ').strip()
    if not processed:
        return ['']

    words = processed.split(' ')
    lines: List[str] = []
    current = None

    for word in words:
        if current is None:
            candidate = word
        else:
            candidate = f"{current} {word}"

        if width_of(candidate) <= max_width:
            current = candidate
            continue

        if current is not None:
            lines.append(current)

        pieces = split_long_word(word, max_width, width_of)
        lines.extend(pieces[:-1])
        current = pieces[-1] if pieces else ''

    if current:
        lines.append(current)

    return lines or ['']


def truncate_text(text: Optional[str], max_width: float, width_of: Measure,
                  ellipsis: str = ELLIPSIS) -> str:
    """
    Shorten ``text`` to fit ``max_width``, marking the cut with an ellipsis.

    The returned string, ellipsis included, is never wider than ``max_width``
    unless the ellipsis alone is wider.
    """
    if not text:
        return ''
    if width_of(text) <= max_width:
        return text

    kept = text
    while kept and width_of(kept + ellipsis) > max_width:
        kept = kept[:-1]
    return kept.rstrip() + ellipsis
