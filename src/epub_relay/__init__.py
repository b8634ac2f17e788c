"""
EPUB Relay package.

This module provides a FastAPI application that downloads an EPUB, converts
it to PDF with calibre's `ebook-convert`, uploads the result to WebDAV and
streams progress to connected clients over Server-Sent Events at `/status`.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
