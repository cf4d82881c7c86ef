import io
import logging
import PyPDF2
from typing import Optional

logger = logging.getLogger(__name__)


def validate_pdf(data: bytes) -> Optional[int]:
    """
    Validate PDF bytes and return page count
    Returns: page_count or None if invalid/corrupted
    """
    try:
        pdf_reader = PyPDF2.PdfReader(io.BytesIO(data))
        page_count = len(pdf_reader.pages)

        # Touch the first page so a broken page tree fails here
        if page_count > 0:
            _ = pdf_reader.pages[0].mediabox

        return page_count

    except Exception as e:
        logger.debug("PDF validation failed: %s", e)
        return None
