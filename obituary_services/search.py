"""
Dashboard search for obituaries.

Plain text matches names, references and batch numbers, including
"given surname" / "surname given" combinations. Queries starting with an
@keyword filter on one field, e.g.:

    @surname SMITH
    @deathDateFrom 1990-01-01 @deathDateTo 1999-12-31
    @proofread false
    @fileBox 2024 3
"""

import logging
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
Predicate = Callable[[Record], bool]

EXACT_FIELDS = {
    '@surname': 'surname',
    '@givenNames': 'given_names',
    '@maidenName': 'maiden_name',
}

CONTAINS_FIELDS = {
    '@fileNumber': 'reference',
    '@enteredBy': 'entered_by',
}

DATE_FIELDS = {
    '@birthDate': 'birth_date',
    '@deathDate': 'death_date',
    '@proofreadDate': 'proofread_date',
    '@enteredOn': 'entered_on',
}

DATE_RANGE_FIELDS = {
    '@birthDateFrom': ('@birthDateTo', 'birth_date'),
    '@deathDateFrom': ('@deathDateTo', 'death_date'),
    '@proofreadDateFrom': ('@proofreadDateTo', 'proofread_date'),
    '@enteredOnFrom': ('@enteredOnTo', 'entered_on'),
}

ALIAS_FIELDS = {
    '@aka.surname': 'surname',
    '@aka.otherNames': 'other_names',
}

KEYWORDS = sorted(
    list(EXACT_FIELDS) + list(CONTAINS_FIELDS) + list(DATE_FIELDS) + list(DATE_RANGE_FIELDS)
    + list(ALIAS_FIELDS) + ['@proofread', '@fileBox']
)


def _text(record: Record, field: str) -> str:
    value = record.get(field)
    return str(value).lower() if value else ''


def _contains(record: Record, field: str, needle: str) -> bool:
    return bool(needle) and needle.lower() in _text(record, field)


def parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.fromisoformat(str(value)).date()
    except ValueError:
        return None


def _never(record: Record) -> bool:
    return False


def _keyword_predicate(tokens: List[str]) -> Predicate:
    keyword = tokens[0]
    args = tokens[1:] + ['', '', '']
    first, second, third = args[0], args[1], args[2]

    if keyword in EXACT_FIELDS:
        field = EXACT_FIELDS[keyword]
        return lambda r: bool(first) and _text(r, field) == first.lower()

    if keyword in CONTAINS_FIELDS:
        field = CONTAINS_FIELDS[keyword]
        return lambda r: _contains(r, field, first)

    if keyword in DATE_FIELDS:
        field = DATE_FIELDS[keyword]
        wanted = parse_date(first)
        if wanted is None:
            return _never
        return lambda r: parse_date(r.get(field)) == wanted

    if keyword in DATE_RANGE_FIELDS:
        closing, field = DATE_RANGE_FIELDS[keyword]
        start, end = parse_date(first), parse_date(third)
        if second != closing or start is None or end is None:
            return _never

        def in_range(r: Record) -> bool:
            value = parse_date(r.get(field))
            return value is not None and start <= value <= end
        return in_range

    if keyword == '@proofread':
        wanted = first.lower() == 'true'
        return lambda r: bool(r.get('proofread')) == wanted

    if keyword in ALIAS_FIELDS:
        field = ALIAS_FIELDS[keyword]
        return lambda r: any(_contains(aka, field, first) for aka in r.get('also_known_as') or [])

    if keyword == '@fileBox':
        try:
            year, number = int(first), int(second)
        except ValueError:
            return _never
        return lambda r: str(r.get('file_box_year')) == str(year) and str(r.get('file_box_number')) == str(number)

    logger.info(f"Unknown search keyword {keyword}")
    return _never


def _name_predicate(search: str, tokens: List[str]) -> Predicate:
    t = tokens + [''] * 4
    pairs = []
    if t[1]:
        pairs += [
            ('given_names', t[0], 'surname', t[1]),
            ('surname', t[0], 'given_names', t[1]),
            ('given_names', t[0], 'maiden_name', t[1]),
            ('maiden_name', t[0], 'given_names', t[1]),
        ]
    if t[2]:
        pairs += [
            ('given_names', f"{t[0]} {t[1]}", 'surname', t[2]),
            ('surname', t[0], 'given_names', f"{t[1]} {t[2]}"),
            ('given_names', f"{t[0]} {t[1]}", 'maiden_name', t[2]),
            ('maiden_name', t[0], 'given_names', f"{t[1]} {t[2]}"),
        ]
    if t[3]:
        pairs.append(('given_names', f"{t[0]} {t[1]}", 'maiden_name', f"{t[2]} {t[3]}"))

    def predicate(r: Record) -> bool:
        for field in ('surname', 'given_names', 'reference', 'maiden_name', 'batch_number'):
            if _contains(r, field, search):
                return True
        return any(
            _contains(r, field_a, value_a) and _contains(r, field_b, value_b)
            for field_a, value_a, field_b, value_b in pairs
        )
    return predicate


def build_predicate(query: Optional[str]) -> Predicate:
    """Turn a dashboard search string into a record filter"""
    search = (query or '').strip()
    if not search:
        return lambda r: True

    tokens = [token.strip() for token in search.split(' ') if token.strip()]
    if tokens[0].startswith('@'):
        return _keyword_predicate(tokens)
    return _name_predicate(search, tokens)


def matches(record: Record, query: Optional[str]) -> bool:
    return build_predicate(query)(record)


def filter_obituaries(records: Iterable[Record], query: Optional[str]) -> List[Record]:
    """Return the records matching ``query``, ordered by reference"""
    predicate = build_predicate(query)
    matched = [record for record in records if predicate(record)]
    return sorted(matched, key=lambda r: r.get('reference') or '')
