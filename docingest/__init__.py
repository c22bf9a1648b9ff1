"""
docingest: document ingestion pipeline.

Extracts normalized text from PDF, DOC/DOCX, TXT, MD and EPUB submissions
and fans it out to vector and graph stores while tracking every submission
through queued → processing → completed | failed.
"""

__version__ = "1.0.0"
