"""
Services module for the Obituary Archive
"""

from .references import (
    generate_reference,
    next_image_file_name,
    reference_prefix,
    InvalidSurnameError,
    ReferenceOverflowError
)

from .text_layout import (
    measure,
    wrap_text,
    truncate_text
)

from .pdf_layout import (
    PdfLayoutEngine,
    PdfPage,
    LayoutStateError,
    fetch_remote_image
)

from .pdf_report import (
    build_obituary_pdf,
    build_search_results_pdf,
    build_proofread_report_pdf,
    generate_obituary_pdf,
    to_data_uri,
    REPORT_TYPES
)

from .search import (
    filter_obituaries,
    matches
)

from .archive_db import (
    ArchiveDB,
    ArchiveDBError,
    get_client as get_archive_client
)

__all__ = [
    # References
    'generate_reference',
    'next_image_file_name',
    'reference_prefix',
    'InvalidSurnameError',
    'ReferenceOverflowError',
    # Text layout
    'measure',
    'wrap_text',
    'truncate_text',
    # PDF layout
    'PdfLayoutEngine',
    'PdfPage',
    'LayoutStateError',
    'fetch_remote_image',
    # PDF reports
    'build_obituary_pdf',
    'build_search_results_pdf',
    'build_proofread_report_pdf',
    'generate_obituary_pdf',
    'to_data_uri',
    'REPORT_TYPES',
    # Search
    'filter_obituaries',
    'matches',
    # Storage
    'ArchiveDB',
    'ArchiveDBError',
    'get_archive_client',
]
