"""
PDF Report Generation Service for the Obituary Archive

Generates three reports:
- Obituary Report: every detail of one obituary (600x800 pages)
- Search Results Report: a table of the obituaries matching a dashboard search (US Letter)
- Proofread Status Report: a table of all proofread or unproofread obituaries (US Letter)

Page sizes, margins, font sizes and column widths match the reports the
society has been issuing, so regenerated reports line up with older copies.
"""

import os
import base64
import logging
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .pdf_layout import (
    BOLD_FONT, FONT, MODERN_BLUE, MUTED_GREY,
    PdfLayoutEngine, PdfPage, draw_link_footer, fetch_remote_image
)
from .text_layout import measure, truncate_text

logger = logging.getLogger(__name__)

# Branding
DEFAULT_LOGO_URL = 'https://kdgs-admin-dashboard.vercel.app/kdgs.png'
SOCIETY_NAME = os.environ.get('SOCIETY_NAME', 'Kelowna & District Genealogical Society')
SOCIETY_SHORT_NAME = os.environ.get('SOCIETY_SHORT_NAME', 'KDGS')
SOCIETY_ADDRESS = os.environ.get('SOCIETY_ADDRESS', 'PO Box 21105 Kelowna BC Canada V1Y 9N8')
SOCIETY_WEBSITE_TEXT = os.environ.get('SOCIETY_WEBSITE_TEXT', 'kdgs.ca')
SOCIETY_WEBSITE_URL = os.environ.get('SOCIETY_WEBSITE_URL', 'https://kdgs.ca')
DEVELOPER_CREDIT = os.environ.get('DEVELOPER_CREDIT', 'Vyoniq Technologies')

# Report types for the proofread status report
REPORT_TYPES = ['proofread', 'unproofread']

# Obituary report layout
OBITUARY_PAGE_SIZE = (600, 800)
MARGIN = 50
TOP_MARGIN = 50
BOTTOM_MARGIN = 50
HEADER_FONT_SIZE = 20
SECTION_HEADER_FONT_SIZE = 14
TEXT_FONT_SIZE = 10
FOOTER_FONT_SIZE = 8
LINE_HEIGHT = 15
VALUE_X_OFFSET = 150
MAX_VALUE_WIDTH = OBITUARY_PAGE_SIZE[0] - VALUE_X_OFFSET - MARGIN
OBITUARY_REPORT_TITLE = 'Obituary Index Report'

# Table report layout
LETTER_SIZE = (612, 792)
RECORDS_PER_PAGE = 25
ROW_HEIGHT = 20
CELL_FONT_SIZE = 9
STACKED_IMAGE_FONT_SIZE = 7
STACKED_IMAGE_LINE_HEIGHT = 10
TABLE_BOTTOM_MARGIN = 80
LOGO_SIZE = (100, 50)

SEARCH_COLUMNS: List[Tuple[str, int]] = [
    ('#', 30),
    ('File #', 70),
    ('Surname', 100),
    ('Given Names', 100),
    ('Death Date', 80),
    ('Proofread', 70),
    ('Images', 50),
]

PROOFREAD_COLUMNS: List[Tuple[str, int]] = [
    ('File Number', 80),
    ('Surname', 80),
    ('Given Names', 100),
    ('Maiden Name', 80),
    ('Birth Date', 80),
    ('Death Date', 80),
    ('Proofread', 60),
]


# ========== Formatting helpers ==========

def _parse_date(value: Any) -> Optional[date]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.fromisoformat(str(value).replace('Z', '+00:00')).date()
    except ValueError:
        return None


def format_long_date(value: Any) -> str:
    """'2024-03-05' -> 'Tue Mar 05 2024'"""
    parsed = _parse_date(value)
    if parsed is None:
        return str(value) if value else ''
    return parsed.strftime('%a %b %d %Y')


def format_iso_date(value: Any) -> str:
    parsed = _parse_date(value)
    if parsed is None:
        return str(value) if value else ''
    return parsed.strftime('%Y-%m-%d')


def _yes_no(value: Any) -> str:
    return 'Yes' if value else 'No'


def _join(*parts: Any) -> str:
    return ' '.join(str(p) for p in parts if p).strip()


def to_data_uri(pdf_bytes: bytes) -> str:
    """Encode a PDF for JSON responses"""
    return 'data:application/pdf;base64,' + base64.b64encode(pdf_bytes).decode('ascii')


def fetch_logo():
    """The society logo, or None when it is not configured or cannot be fetched"""
    return fetch_remote_image(os.environ.get('KDGS_LOGO_URL', DEFAULT_LOGO_URL))


def _default_db(db):
    if db is None:
        from .archive_db import get_client
        db = get_client()
    return db


# ========== Obituary report ==========

def _obituary_page_header(reference: str, logo: Any) -> Callable[[PdfLayoutEngine, PdfPage], None]:
    def draw(engine: PdfLayoutEngine, page: PdfPage):
        if page.number == 1:
            if logo is not None:
                engine.draw_image(logo, page.width - MARGIN - LOGO_SIZE[0],
                                  TOP_MARGIN + 10 - LOGO_SIZE[1], *LOGO_SIZE)
            return

        # Continuation pages carry a running header instead of the logo
        engine.draw_text_line(f"{OBITUARY_REPORT_TITLE} - {reference} (continued)",
                              MARGIN, FOOTER_FONT_SIZE, color=MUTED_GREY)
        engine.draw_horizontal_rule(MUTED_GREY, 0.5)
        engine.advance(LINE_HEIGHT * 0.5)
    return draw


def _obituary_footer(engine: PdfLayoutEngine, page: PdfPage, total_pages: int):
    draw_link_footer(
        page,
        copyright_text=f"© {datetime.now().year} {SOCIETY_NAME}",
        website_text=SOCIETY_WEBSITE_TEXT,
        website_url=SOCIETY_WEBSITE_URL,
        developer_text=f" | Powered by {DEVELOPER_CREDIT}",
        x=MARGIN,
        y=BOTTOM_MARGIN - 10,
        size=FOOTER_FONT_SIZE
    )


def layout_obituary_report(obituary: Dict[str, Any], logo: Any = None) -> PdfLayoutEngine:
    """
    Lay out and render the full report for one obituary.

    Args:
        obituary: Hydrated obituary record (with relatives and also_known_as)
        logo: Optional image to place on the first page

    Returns:
        The finalized layout engine; the document is on ``pdf_bytes``
    """
    reference = obituary.get('reference', '')
    engine = PdfLayoutEngine(
        OBITUARY_PAGE_SIZE,
        margin=MARGIN,
        top_margin=TOP_MARGIN,
        bottom_margin=BOTTOM_MARGIN,
        line_height=LINE_HEIGHT,
        page_header=_obituary_page_header(reference, logo),
        title=f"{OBITUARY_REPORT_TITLE} - {reference}"
    )
    engine.start()

    engine.check_space_and_advance_page(HEADER_FONT_SIZE + LINE_HEIGHT)
    engine.draw_text(OBITUARY_REPORT_TITLE, MARGIN, HEADER_FONT_SIZE, bold=True, color=MODERN_BLUE)
    engine.advance(HEADER_FONT_SIZE + LINE_HEIGHT * 0.5)

    engine.draw_wrapped_key_value('File Number', reference, VALUE_X_OFFSET, MAX_VALUE_WIDTH, TEXT_FONT_SIZE)
    full_name = _join(obituary.get('title'), obituary.get('given_names'), obituary.get('surname'))
    engine.draw_wrapped_key_value('Full Name', full_name, VALUE_X_OFFSET, MAX_VALUE_WIDTH, TEXT_FONT_SIZE)
    engine.advance(LINE_HEIGHT * 0.5)

    def pair(key: str, value: Any):
        engine.draw_wrapped_key_value(key, str(value) if value not in (None, '') else '',
                                      VALUE_X_OFFSET, MAX_VALUE_WIDTH, TEXT_FONT_SIZE)
        engine.advance(LINE_HEIGHT * 0.25)

    engine.draw_section_header('Personal Information', SECTION_HEADER_FONT_SIZE)
    pair('Title', obituary.get('title'))
    pair('Given Names', obituary.get('given_names'))
    pair('Surname', obituary.get('surname'))
    pair('Maiden Name', obituary.get('maiden_name'))
    pair('Birth Date', format_long_date(obituary.get('birth_date')))
    pair('Place of Birth', obituary.get('birth_place'))
    pair('Death Date', format_long_date(obituary.get('death_date')))
    pair('Place of Death', obituary.get('death_place'))
    pair('Interment Place', obituary.get('cemetery'))
    engine.advance(LINE_HEIGHT * 0.5)

    aliases = obituary.get('also_known_as') or []
    if aliases:
        engine.draw_section_header('Also Known As', SECTION_HEADER_FONT_SIZE)
        for index, aka in enumerate(aliases, start=1):
            pair(f"AKA {index}", _join(aka.get('surname'), aka.get('other_names')))
        engine.advance(LINE_HEIGHT * 0.5)

    relatives = obituary.get('relatives') or []
    if relatives:
        engine.draw_section_header('Relatives', SECTION_HEADER_FONT_SIZE)
        for relative in relatives:
            pair(
                relative.get('relationship') or 'Relative',
                _join(relative.get('given_names'), relative.get('surname'),
                      '(Predeceased)' if relative.get('predeceased') else '')
            )
        engine.advance(LINE_HEIGHT * 0.5)

    engine.draw_section_header('Publication Details', SECTION_HEADER_FONT_SIZE)
    pair('Periodical', obituary.get('periodical'))
    pair('Publish Date', format_long_date(obituary.get('publish_date')))
    pair('Page', obituary.get('page'))
    pair('Column', obituary.get('column'))
    engine.advance(LINE_HEIGHT * 0.5)

    engine.draw_section_header('Additional Information', SECTION_HEADER_FONT_SIZE)
    pair('Proofread', _yes_no(obituary.get('proofread')))
    pair('Notes', obituary.get('notes'))

    engine.finalize(_obituary_footer)
    return engine


def build_obituary_pdf(obituary: Dict[str, Any], logo: Any = None) -> bytes:
    return layout_obituary_report(obituary, logo).pdf_bytes


def generate_obituary_pdf(reference: str, db=None) -> Optional[bytes]:
    """
    Generate the obituary report for a stored reference.

    Returns:
        The PDF bytes, or None if no obituary has that reference
    """
    obituary = _default_db(db).get_obituary(reference)
    if not obituary:
        logger.warning(f"Obituary {reference} not found for PDF generation")
        return None

    logo = fetch_logo()
    pdf_bytes = build_obituary_pdf(obituary, logo)
    logger.info(f"Generated obituary report for {reference}")
    return pdf_bytes


# ========== Table reports ==========

def _draw_column_headers(page: PdfPage, columns: Sequence[Tuple[str, int]], y: float):
    x = MARGIN
    for header, width in columns:
        page.draw_string(header, x, y, BOLD_FONT, 10)
        x += width


def _draw_logo(engine: PdfLayoutEngine, logo: Any):
    if logo is not None:
        engine.draw_image(logo, engine.page_width - 150, 70 - LOGO_SIZE[1], *LOGO_SIZE)


def _table_engine(page_header, title: str) -> PdfLayoutEngine:
    return PdfLayoutEngine(
        LETTER_SIZE,
        margin=MARGIN,
        top_margin=TOP_MARGIN,
        bottom_margin=TABLE_BOTTOM_MARGIN,
        line_height=ROW_HEIGHT,
        page_header=page_header,
        title=title
    )


def _flow_rows(
    engine: PdfLayoutEngine,
    records: Sequence[Dict[str, Any]],
    draw_row: Callable[[PdfLayoutEngine, Dict[str, Any], int], None],
    extra_height: Callable[[Dict[str, Any]], float] = lambda record: 0
):
    """
    Lay out table rows, at most RECORDS_PER_PAGE per page.

    A row that would run into the footer starts a new page early.
    """
    rows_on_page = 0
    for index, record in enumerate(records):
        extra = extra_height(record)
        if rows_on_page >= RECORDS_PER_PAGE:
            engine.new_page()
            rows_on_page = 0
        elif engine.check_space_and_advance_page(ROW_HEIGHT + extra):
            rows_on_page = 0

        draw_row(engine, record, index)
        engine.advance(ROW_HEIGHT + extra)
        rows_on_page += 1


def _draw_cells(engine: PdfLayoutEngine, columns: Sequence[Tuple[str, int]], cells: Sequence[str]) -> float:
    """Draw one row of text cells; returns the x where the next column starts"""
    x = MARGIN
    for (_, width), text in zip(columns, cells):
        engine.draw_text(text, x, CELL_FONT_SIZE)
        x += width
    return x


def _stacked_image_height(record: Dict[str, Any]) -> float:
    images = record.get('images') or []
    return (len(images) - 1) * STACKED_IMAGE_LINE_HEIGHT if len(images) > 1 else 0


def layout_search_results_report(
    search_query: str,
    obituaries: Sequence[Dict[str, Any]],
    total_results: Optional[int] = None,
    logo: Any = None,
    generated_at: Optional[datetime] = None,
    start_number: int = 1
) -> PdfLayoutEngine:
    """
    Lay out and render the search results table.

    Args:
        search_query: The dashboard search text, shown in the page header
        obituaries: Matching records, with their image names
        total_results: Count shown in the header (defaults to len(obituaries))
        logo: Optional logo drawn on every page
        generated_at: Timestamp for the header (defaults to now)
        start_number: Row number of the first record

    Returns:
        The finalized layout engine; the document is on ``pdf_bytes``
    """
    total = len(obituaries) if total_results is None else total_results
    generated = (generated_at or datetime.now()).strftime('%Y-%m-%d, %H:%M')
    width_of = measure(FONT, CELL_FONT_SIZE)

    def page_header(engine: PdfLayoutEngine, page: PdfPage):
        top = page.height - MARGIN
        query_text = truncate_text(f"Search Query: {search_query}", engine.content_width - 110,
                                   measure(BOLD_FONT, 12))
        page.draw_string(f"{SOCIETY_SHORT_NAME} Database - Search Results Report", MARGIN, top, BOLD_FONT, 14)
        page.draw_string(query_text, MARGIN, top - 30, BOLD_FONT, 12)
        page.draw_string(f"Total Results: {total}", MARGIN, top - 50, FONT, 10)
        page.draw_string(f"Generated: {generated}", MARGIN, top - 70, FONT, 10)
        _draw_logo(engine, logo)
        _draw_column_headers(page, SEARCH_COLUMNS, top - 100)
        engine.move_to(page.height - (top - 120))

    def draw_row(engine: PdfLayoutEngine, obituary: Dict[str, Any], index: int):
        cells = [
            str(start_number + index),
            obituary.get('reference') or '',
            truncate_text(obituary.get('surname') or '', SEARCH_COLUMNS[2][1] - 5, width_of),
            truncate_text(obituary.get('given_names') or '', SEARCH_COLUMNS[3][1] - 5, width_of),
            format_iso_date(obituary.get('death_date')),
            _yes_no(obituary.get('proofread')),
        ]
        image_x = _draw_cells(engine, SEARCH_COLUMNS, cells)

        images = obituary.get('images') or []
        if not images:
            engine.draw_text('None', image_x, CELL_FONT_SIZE)
        elif len(images) == 1:
            engine.draw_text(images[0], image_x, CELL_FONT_SIZE)
        else:
            for i, name in enumerate(images):
                engine.draw_text(name, image_x, STACKED_IMAGE_FONT_SIZE, dy=i * STACKED_IMAGE_LINE_HEIGHT)

    def footer(engine: PdfLayoutEngine, page: PdfPage, total_pages: int):
        page.draw_string(f"Compiled by {SOCIETY_NAME} {SOCIETY_ADDRESS}",
                         MARGIN, MARGIN + 15, FONT, FOOTER_FONT_SIZE)
        draw_link_footer(
            page,
            copyright_text=f"© {datetime.now().year} {SOCIETY_NAME}",
            website_text=SOCIETY_WEBSITE_TEXT,
            website_url=SOCIETY_WEBSITE_URL,
            developer_text=f" | Developed by {DEVELOPER_CREDIT}",
            x=MARGIN,
            y=MARGIN,
            size=FOOTER_FONT_SIZE
        )
        page.draw_right_string(f"Page {page.number} of {total_pages}",
                               page.width - MARGIN, MARGIN, FONT, FOOTER_FONT_SIZE)

    engine = _table_engine(page_header, f"{SOCIETY_SHORT_NAME} Search Results - {search_query}")
    engine.start()
    _flow_rows(engine, obituaries, draw_row, _stacked_image_height)
    engine.finalize(footer)
    return engine


def build_search_results_pdf(search_query: str, obituaries: Sequence[Dict[str, Any]], **kwargs) -> bytes:
    return layout_search_results_report(search_query, obituaries, **kwargs).pdf_bytes


def layout_proofread_report(
    report_type: str,
    obituaries: Sequence[Dict[str, Any]],
    logo: Any = None,
    generated_at: Optional[datetime] = None
) -> PdfLayoutEngine:
    """
    Lay out and render the proofread status report.

    Raises:
        ValueError: if report_type is not one of REPORT_TYPES
    """
    if report_type not in REPORT_TYPES:
        raise ValueError(f"Invalid report type: {report_type}. Must be one of {REPORT_TYPES}")

    title = f"{'Proofread' if report_type == 'proofread' else 'Unproofread'} Obituaries Report"
    generated = (generated_at or datetime.now()).strftime('%Y-%m-%d')
    width_of = measure(FONT, CELL_FONT_SIZE)

    def page_header(engine: PdfLayoutEngine, page: PdfPage):
        top = page.height - MARGIN
        page.draw_string(title, MARGIN, top, BOLD_FONT, 16)
        _draw_logo(engine, logo)
        _draw_column_headers(page, PROOFREAD_COLUMNS, top - 80)
        engine.move_to(page.height - (top - 100))

    def draw_row(engine: PdfLayoutEngine, obituary: Dict[str, Any], index: int):
        cells = [
            obituary.get('reference') or '',
            obituary.get('surname') or '',
            obituary.get('given_names') or '',
            obituary.get('maiden_name') or '',
            format_iso_date(obituary.get('birth_date')),
            format_iso_date(obituary.get('death_date')),
            _yes_no(obituary.get('proofread')),
        ]
        cells = [
            truncate_text(text, width - 5, width_of)
            for text, (_, width) in zip(cells, PROOFREAD_COLUMNS)
        ]
        _draw_cells(engine, PROOFREAD_COLUMNS, cells)

    def footer(engine: PdfLayoutEngine, page: PdfPage, total_pages: int):
        # Page count sits under the title; it is only known once layout is done
        page.draw_string(f"Page {page.number} of {total_pages}",
                         MARGIN, page.height - MARGIN - 20, FONT, 10)
        page.draw_string(f"Compiled by {SOCIETY_NAME} {SOCIETY_ADDRESS}",
                         MARGIN, MARGIN + 30, FONT, FOOTER_FONT_SIZE)
        page.draw_string(f"Generated on {generated}", MARGIN, MARGIN + 15, FONT, FOOTER_FONT_SIZE)
        draw_link_footer(
            page,
            copyright_text=f"© {datetime.now().year} {SOCIETY_NAME}",
            website_text=SOCIETY_WEBSITE_TEXT,
            website_url=SOCIETY_WEBSITE_URL,
            developer_text=f" | Developed by {DEVELOPER_CREDIT}",
            x=MARGIN,
            y=MARGIN,
            size=FOOTER_FONT_SIZE
        )

    engine = _table_engine(page_header, title)
    engine.start()
    _flow_rows(engine, obituaries, draw_row)
    engine.finalize(footer)
    return engine


def build_proofread_report_pdf(report_type: str, obituaries: Sequence[Dict[str, Any]], **kwargs) -> bytes:
    return layout_proofread_report(report_type, obituaries, **kwargs).pdf_bytes


def generate_search_results_pdf(search_query: str, db=None) -> Optional[bytes]:
    """
    Generate the search results report for a dashboard search.

    Returns:
        The PDF bytes, or None if nothing matches
    """
    obituaries = _default_db(db).search_obituaries(search_query)
    if not obituaries:
        logger.info(f"No obituaries match search {search_query!r}")
        return None

    pdf_bytes = build_search_results_pdf(search_query, obituaries, logo=fetch_logo())
    logger.info(f"Generated search results report with {len(obituaries)} rows")
    return pdf_bytes


def generate_proofread_report_pdf(report_type: str, db=None) -> Optional[bytes]:
    """
    Generate the proofread or unproofread obituaries report.

    Returns:
        The PDF bytes, or None if no obituary has that status

    Raises:
        ValueError: if report_type is not one of REPORT_TYPES
    """
    if report_type not in REPORT_TYPES:
        raise ValueError(f"Invalid report type: {report_type}. Must be one of {REPORT_TYPES}")

    obituaries = _default_db(db).get_obituaries_by_proofread(report_type == 'proofread')
    if not obituaries:
        logger.info(f"No obituaries for {report_type} report")
        return None

    pdf_bytes = build_proofread_report_pdf(report_type, obituaries, logo=fetch_logo())
    logger.info(f"Generated {report_type} report with {len(obituaries)} rows")
    return pdf_bytes
