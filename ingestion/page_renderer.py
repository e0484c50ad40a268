"""
Page renderer for exam PDFs.

PyMuPDF (fitz) renders each page to PNG; the vision model reads the PNGs.
150 DPI keeps small print legible without blowing up the image tokens.
"""

from pathlib import Path
from typing import List, Optional, Tuple, Union

import fitz  # PyMuPDF

import config


class PageRenderError(Exception):
    """The PDF could not be opened or rendered"""


def count_pdf_pages(file_path: Union[str, Path]) -> int:
    """Number of pages in a PDF; raises PageRenderError for unreadable files"""
    try:
        with fitz.open(str(file_path)) as doc:
            if not doc.is_pdf:
                raise PageRenderError(f"Not a PDF: {Path(file_path).name}")
            if doc.page_count == 0:
                raise PageRenderError(f"PDF has no pages: {Path(file_path).name}")
            return doc.page_count
    except (RuntimeError, ValueError, OSError) as e:
        raise PageRenderError(f"Cannot open PDF {Path(file_path).name}: {e}") from e


def render_pdf_pages(
    file_path: Union[str, Path],
    output_dir: Union[str, Path],
    dpi: int = config.RENDER_DPI,
    page_numbers: Optional[List[int]] = None,
) -> List[Tuple[int, Path]]:
    """
    Render PDF page(s) to PNG files.

    Args:
        file_path: Path to the PDF file.
        output_dir: Directory to write PNGs (page_{n}.png).
        dpi: Render resolution.
        page_numbers: Optional 1-based page numbers to render; if None, render all pages.

    Returns:
        List of (page_no, image_path) with page_no 1-based.
    """
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    results: List[Tuple[int, Path]] = []

    try:
        with fitz.open(str(file_path)) as doc:
            total = doc.page_count
            indices = (
                [p - 1 for p in page_numbers if 1 <= p <= total]
                if page_numbers is not None
                else list(range(total))
            )
            matrix = fitz.Matrix(dpi / 72, dpi / 72)
            for i in indices:
                page_no = i + 1
                pix = doc[i].get_pixmap(matrix=matrix, alpha=False)
                img_path = out / f"page_{page_no}.png"
                pix.save(str(img_path))
                results.append((page_no, img_path))
    except (RuntimeError, ValueError, OSError) as e:
        raise PageRenderError(f"PDF render failed for {Path(file_path).name}: {e}") from e

    return results
