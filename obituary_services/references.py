"""
Reference (File Number) Generation

Obituary references are 8 characters: a 4-letter prefix taken from the
surname followed by a 4-digit zero-padded sequence number, e.g. ERIC0004.
Image files scanned for an obituary reuse the reference, with a trailing
letter when more than one scan exists (ERIC0004, ERIC0004a, ERIC0004b...).
"""

import re
import logging
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

PREFIX_LENGTH = 4
SUFFIX_LENGTH = 4
MAX_SUFFIX = 10 ** SUFFIX_LENGTH - 1
PREFIX_FILLER = 'X'

_NON_LETTERS = re.compile(r'[^A-Za-z]')


class InvalidSurnameError(ValueError):
    """Raised when a surname has no letters to build a prefix from"""
    pass


class ReferenceOverflowError(Exception):
    """Raised when a prefix has used up every available sequence number"""
    pass


def reference_prefix(surname: str) -> str:
    """
    Derive the 4-letter reference prefix for a surname.

    Non-letters (spaces, hyphens, apostrophes, digits) are dropped and the
    first four letters are upper-cased. Surnames with fewer than four letters
    are padded with 'X' so every reference keeps its fixed 8-character width.

    Raises:
        InvalidSurnameError: if the surname contains no letters
    """
    cleaned = _NON_LETTERS.sub('', surname or '')
    if not cleaned:
        raise InvalidSurnameError(f"Cannot derive a reference prefix from surname {surname!r}")

    prefix = cleaned[:PREFIX_LENGTH].upper()
    return prefix.ljust(PREFIX_LENGTH, PREFIX_FILLER)


def _parse_suffix(reference: str, prefix: str) -> Optional[int]:
    """Return the numeric suffix of a well-formed reference for this prefix"""
    if not reference or len(reference) != PREFIX_LENGTH + SUFFIX_LENGTH:
        return None
    if reference[:PREFIX_LENGTH].upper() != prefix:
        return None
    suffix = reference[PREFIX_LENGTH:]
    if not suffix.isdigit():
        return None
    return int(suffix)


def format_reference(prefix: str, number: int) -> str:
    """Join a prefix and sequence number, e.g. ('SMIT', 7) -> 'SMIT0007'"""
    if number < 1 or number > MAX_SUFFIX:
        raise ReferenceOverflowError(
            f"Sequence number {number} for prefix {prefix} is outside 1-{MAX_SUFFIX}"
        )
    return f"{prefix}{number:0{SUFFIX_LENGTH}d}"


def generate_reference(surname: str, existing_references: Iterable[str]) -> str:
    """
    Generate the next free reference for a surname.

    The suffix is one more than the highest suffix already used by the same
    prefix (gaps are never reused), or 0001 when the prefix is unused. This
    function only reads the snapshot it is given; callers must persist the
    new record before another caller takes a fresh snapshot.

    Args:
        surname: The person's surname
        existing_references: All references currently stored

    Returns:
        The new 8-character reference

    Raises:
        InvalidSurnameError: if the surname contains no letters
        ReferenceOverflowError: if the prefix already reached 9999
    """
    prefix = reference_prefix(surname)

    highest = 0
    for reference in existing_references:
        number = _parse_suffix(reference, prefix)
        if number is not None and number > highest:
            highest = number

    if highest >= MAX_SUFFIX:
        logger.error(f"Reference prefix {prefix} exhausted at {highest}")
        raise ReferenceOverflowError(f"No sequence numbers left for prefix {prefix}")

    return format_reference(prefix, highest + 1)


def next_image_file_name(base_reference: str, existing_image_names: Iterable[str]) -> str:
    """
    Work out the file name for the next image scanned for an obituary.

    The first image takes the bare reference. Once that exists, further
    images get a single lowercase letter appended, continuing after the
    highest letter already in use.

    Raises:
        ReferenceOverflowError: if the letters a-z are all taken
    """
    base = base_reference[:PREFIX_LENGTH + SUFFIX_LENGTH]
    names = [name for name in existing_image_names if name.startswith(base)]

    if not names:
        return base

    letters = sorted(
        name[len(base):] for name in names
        if len(name) == len(base) + 1 and 'a' <= name[len(base):] <= 'z'
    )
    if not letters:
        return f"{base}a"

    last = letters[-1]
    if last == 'z':
        raise ReferenceOverflowError(f"No image letters left for {base}")
    return f"{base}{chr(ord(last) + 1)}"


def normalize_surname(surname: str) -> str:
    return (surname or '').strip().upper()


def normalize_given_names(given_names: str) -> str:
    """'mary ANNE' -> 'Mary Anne'"""
    return ' '.join(
        name[:1].upper() + name[1:].lower()
        for name in (given_names or '').strip().split(' ')
        if name
    )
