"""
PDF Layout Engine

A small page-flow layer over the reportlab canvas. Reports are laid out top
down with a cursor (``LayoutCursor.y`` is the distance from the top edge of
the page); the engine converts to PDF coordinates (origin bottom-left) on
every draw and starts a new page whenever the next element would run past
the bottom margin.

Pages are kept as display lists until ``finalize()`` so footers that need the
total page count ("Page 2 of 5") can be stamped on every page before the
document is written out.
"""

import io
import os
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple

import requests
from reportlab.lib import colors
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from .text_layout import measure, wrap_text

logger = logging.getLogger(__name__)

FONT = 'Helvetica'
BOLD_FONT = 'Helvetica-Bold'

BLACK = colors.Color(0, 0, 0)
MODERN_BLUE = colors.Color(0.1, 0.4, 0.7)
LINK_BLUE = colors.Color(0, 0, 1)
MUTED_GREY = colors.HexColor('#6c757d')

LOGO_FETCH_TIMEOUT = float(os.environ.get('LOGO_FETCH_TIMEOUT', '10'))


class LayoutStateError(Exception):
    """Raised when the engine is drawn on after the document was finalized"""
    pass


class EngineState(Enum):
    IDLE = 'idle'
    PAGINATING = 'paginating'
    FINALIZING = 'finalizing'
    DONE = 'done'


@dataclass
class LayoutCursor:
    """Position of the next element: page index and offset from the page top"""
    page_index: int = -1
    y: float = 0.0


# ========== Display list ==========

@dataclass
class TextOp:
    text: str
    x: float
    y: float
    font: str
    size: float
    color: Any

    def render(self, canv):
        canv.setFont(self.font, self.size)
        canv.setFillColor(self.color)
        canv.drawString(self.x, self.y, self.text)


@dataclass
class LineOp:
    x1: float
    y1: float
    x2: float
    y2: float
    thickness: float
    color: Any

    def render(self, canv):
        canv.setStrokeColor(self.color)
        canv.setLineWidth(self.thickness)
        canv.line(self.x1, self.y1, self.x2, self.y2)


@dataclass
class ImageOp:
    image: Any
    x: float
    y: float
    width: float
    height: float

    def render(self, canv):
        canv.drawImage(self.image, self.x, self.y, width=self.width,
                       height=self.height, mask='auto')


@dataclass
class LinkOp:
    url: str
    rect: Tuple[float, float, float, float]

    def render(self, canv):
        canv.linkURL(self.url, self.rect, relative=0, thickness=0)


@dataclass
class PdfPage:
    """One page of the document, in PDF coordinates"""
    number: int
    width: float
    height: float
    ops: List[Any] = field(default_factory=list)

    def draw_string(self, text: str, x: float, y: float, font: str = FONT,
                    size: float = 10, color: Any = BLACK):
        self.ops.append(TextOp(text, x, y, font, size, color))

    def draw_right_string(self, text: str, right_x: float, y: float, font: str = FONT,
                          size: float = 10, color: Any = BLACK):
        width = measure(font, size)(text)
        self.draw_string(text, right_x - width, y, font, size, color)

    def draw_line(self, x1: float, y1: float, x2: float, y2: float,
                  thickness: float = 1, color: Any = BLACK):
        self.ops.append(LineOp(x1, y1, x2, y2, thickness, color))

    def draw_image(self, image: Any, x: float, y: float, width: float, height: float):
        self.ops.append(ImageOp(image, x, y, width, height))

    def add_link(self, url: str, rect: Tuple[float, float, float, float]):
        self.ops.append(LinkOp(url, rect))

    def texts(self) -> List[str]:
        return [op.text for op in self.ops if isinstance(op, TextOp)]

    def text_ops(self) -> List[TextOp]:
        return [op for op in self.ops if isinstance(op, TextOp)]

    def links(self) -> List[LinkOp]:
        return [op for op in self.ops if isinstance(op, LinkOp)]

    def render(self, canv):
        for op in self.ops:
            op.render(canv)


PageHook = Callable[['PdfLayoutEngine', PdfPage], None]
FooterHook = Callable[['PdfLayoutEngine', PdfPage, int], None]


class PdfLayoutEngine:
    """
    Flows text, rules and images down a sequence of fixed-size pages.

    Every drawing helper reserves its height through
    ``check_space_and_advance_page`` before drawing, so callers never track
    page breaks themselves. ``page_header`` is called for every new page
    (including the first) with the cursor at the top margin, and may draw
    and advance the cursor.

    Args:
        page_size: (width, height) in points
        margin: Left/right margin
        top_margin: Cursor position at the top of each page
        bottom_margin: Content never starts below page_height - bottom_margin
        line_height: Advance for one line of text
        page_header: Optional hook drawing the fixed elements of each page
        title: Optional document title stored in the PDF metadata
    """

    def __init__(
        self,
        page_size: Tuple[float, float],
        margin: float = 50,
        top_margin: float = 50,
        bottom_margin: float = 50,
        line_height: float = 15,
        page_header: Optional[PageHook] = None,
        title: Optional[str] = None
    ):
        self.page_width, self.page_height = page_size
        self.margin = margin
        self.top_margin = top_margin
        self.bottom_margin = bottom_margin
        self.line_height = line_height
        self.page_header = page_header
        self.title = title

        self.pages: List[PdfPage] = []
        self.cursor = LayoutCursor()
        self.state = EngineState.IDLE
        self.pdf_bytes: Optional[bytes] = None
        self._content_top = top_margin

    # ========== Geometry ==========

    @property
    def content_width(self) -> float:
        return self.page_width - 2 * self.margin

    @property
    def bottom_limit(self) -> float:
        return self.page_height - self.bottom_margin

    @property
    def usable_height(self) -> float:
        return self.bottom_limit - self._content_top

    @property
    def current_page(self) -> PdfPage:
        self._ensure_drawing()
        return self.pages[self.cursor.page_index]

    def pdf_y(self, offset_from_top: float) -> float:
        return self.page_height - offset_from_top

    @staticmethod
    def font_for(bold: bool) -> str:
        return BOLD_FONT if bold else FONT

    def wrap(self, text: Optional[str], max_width: float, size: float, bold: bool = False) -> List[str]:
        return wrap_text(text, max_width, measure(self.font_for(bold), size))

    # ========== Pagination ==========

    def start(self) -> PdfPage:
        """Allocate the first page and draw its header"""
        if self.state != EngineState.IDLE:
            raise LayoutStateError(f"Cannot start a layout in state {self.state.value}")
        self.state = EngineState.PAGINATING
        return self._allocate_page()

    def _ensure_drawing(self):
        if self.state == EngineState.IDLE:
            self.start()
        elif self.state != EngineState.PAGINATING:
            raise LayoutStateError(f"Cannot draw in state {self.state.value}")

    def _allocate_page(self) -> PdfPage:
        page = PdfPage(number=len(self.pages) + 1, width=self.page_width, height=self.page_height)
        self.pages.append(page)
        self.cursor.page_index = len(self.pages) - 1
        self.cursor.y = self.top_margin
        self._content_top = self.top_margin

        if self.page_header:
            self.page_header(self, page)
        self._content_top = self.cursor.y

        logger.debug(f"Allocated page {page.number}")
        return page

    def new_page(self) -> PdfPage:
        """Force a page break"""
        self._ensure_drawing()
        return self._allocate_page()

    def check_space_and_advance_page(self, required_height: float) -> bool:
        """
        Start a new page if ``required_height`` does not fit above the bottom margin.

        A page that has nothing on it below its header is never abandoned,
        so an element taller than a whole page is drawn once rather than
        producing an endless run of blank pages.

        Returns:
            True if a new page was allocated
        """
        self._ensure_drawing()
        if self.cursor.y + required_height <= self.bottom_limit:
            return False
        if self.cursor.y <= self._content_top:
            return False
        self._allocate_page()
        return True

    def advance(self, dy: float):
        self._ensure_drawing()
        self.cursor.y += dy

    def move_to(self, y: float):
        self._ensure_drawing()
        self.cursor.y = y

    # ========== Drawing primitives ==========

    def draw_text(self, text: str, x: float, size: float = 10, bold: bool = False,
                  color: Any = BLACK, dy: float = 0, font: Optional[str] = None):
        """Draw at the cursor (offset by ``dy``) without advancing it"""
        page = self.current_page
        page.draw_string(text, x, self.pdf_y(self.cursor.y + dy),
                         font or self.font_for(bold), size, color)

    def draw_text_line(self, text: str, x: float, size: float = 10, bold: bool = False,
                       color: Any = BLACK, font: Optional[str] = None):
        self.check_space_and_advance_page(self.line_height)
        self.draw_text(text, x, size, bold, color, font=font)
        self.cursor.y += self.line_height

    def draw_wrapped_lines(self, lines: List[str], x: float, size: float = 10,
                           bold: bool = False, color: Any = BLACK):
        for line in lines:
            self.draw_text_line(line, x, size, bold, color)

    def draw_wrapped_key_value(self, key: str, value: Optional[str], value_x: float,
                               max_width: float, size: float = 10):
        """
        Draw ``key:`` in bold at the margin with ``value`` wrapped in a column at ``value_x``.

        The whole block is kept on one page. A value taller than a full page
        is instead flowed line by line across pages.
        """
        lines = self.wrap(value or '', max_width, size)
        required = max(self.line_height, len(lines) * self.line_height)

        if required > self.usable_height:
            self.check_space_and_advance_page(self.line_height)
            self.draw_text(f"{key}:", self.margin, size, bold=True)
            self.draw_wrapped_lines(lines, value_x, size)
            return

        self.check_space_and_advance_page(required)
        start_y = self.cursor.y
        self.draw_text(f"{key}:", self.margin, size, bold=True)
        for i, line in enumerate(lines):
            self.draw_text(line, value_x, size, dy=i * self.line_height)
        self.cursor.y = start_y + required

    def draw_section_header(self, title: str, size: float = 14, color: Any = MODERN_BLUE):
        self.check_space_and_advance_page(size + self.line_height)
        self.draw_text(title, self.margin, size, bold=True, color=color)
        self.cursor.y += size * 0.75

        rule_y = self.pdf_y(self.cursor.y)
        self.current_page.draw_line(self.margin, rule_y, self.page_width - self.margin, rule_y,
                                    thickness=0.5, color=color)
        self.cursor.y += self.line_height

    def draw_horizontal_rule(self, color: Any = MODERN_BLUE, thickness: float = 1):
        needed = thickness + 4
        self.check_space_and_advance_page(needed)
        rule_y = self.pdf_y(self.cursor.y + thickness / 2)
        self.current_page.draw_line(self.margin, rule_y, self.page_width - self.margin, rule_y,
                                    thickness=thickness, color=color)
        self.cursor.y += needed

    def draw_image(self, image: Any, x: float, top: float, width: float, height: float):
        """Place an image whose top edge sits ``top`` points below the page top; the cursor stays put"""
        self._ensure_drawing()
        self.current_page.draw_image(image, x, self.pdf_y(top + height), width, height)

    # ========== Output ==========

    def finalize(self, footer: Optional[FooterHook] = None) -> bytes:
        """
        Stamp ``footer`` on every page and write the document.

        Returns:
            The PDF bytes (also kept on ``pdf_bytes``)
        """
        if self.state == EngineState.IDLE:
            self.start()
        if self.state != EngineState.PAGINATING:
            raise LayoutStateError(f"Cannot finalize in state {self.state.value}")

        self.state = EngineState.FINALIZING
        total_pages = len(self.pages)
        if footer:
            for page in self.pages:
                footer(self, page, total_pages)

        buffer = io.BytesIO()
        canv = canvas.Canvas(buffer, pagesize=(self.page_width, self.page_height))
        if self.title:
            canv.setTitle(self.title)
        for page in self.pages:
            canv.setPageSize((page.width, page.height))
            page.render(canv)
            canv.showPage()
        canv.save()

        self.pdf_bytes = buffer.getvalue()
        buffer.close()
        self.state = EngineState.DONE
        logger.info(f"Rendered PDF with {total_pages} page(s), {len(self.pdf_bytes)} bytes")
        return self.pdf_bytes


def draw_link_footer(
    page: PdfPage,
    copyright_text: str,
    website_text: str,
    website_url: str,
    developer_text: str,
    x: float,
    y: float,
    size: float = 8
):
    """
    Draw a footer line with a clickable website name in the middle.

    The link annotation covers exactly the measured width of
    ``website_text``.
    """
    width_of = measure(FONT, size)
    copyright_width = width_of(copyright_text + ' ')
    website_width = width_of(website_text)
    website_x = x + copyright_width

    page.draw_string(copyright_text, x, y, FONT, size, BLACK)
    page.draw_string(website_text, website_x, y, FONT, size, LINK_BLUE)
    page.draw_line(website_x, y - 1, website_x + website_width, y - 1, thickness=0.5, color=LINK_BLUE)
    page.draw_string(developer_text, website_x + website_width, y, FONT, size, BLACK)
    page.add_link(website_url, (website_x, y - 2, website_x + website_width, y - 2 + 10))


def fetch_remote_image(url: Optional[str], timeout: float = LOGO_FETCH_TIMEOUT) -> Optional[ImageReader]:
    """
    Download an image for embedding.

    Failures are logged and return None so a missing logo never stops a
    report from being generated.
    """
    if not url:
        return None

    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
        return ImageReader(io.BytesIO(response.content))
    except Exception as e:
        logger.warning(f"Could not load image from {url}: {e}")
        return None
