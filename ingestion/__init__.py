"""
Ingestion Package

Getting exam PDFs onto disk and into page images:
1. File store   - uploaded PDFs and rendered pages under STORAGE_DIR
2. Page render  - PyMuPDF renders each PDF page to PNG for the vision model
"""

from .file_store import LocalFileStore
from .page_renderer import PageRenderError, count_pdf_pages, render_pdf_pages
