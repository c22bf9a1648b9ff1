"""
Document Processing Package
════════════════════════════

  formats.py     format detection (declared MIME/extension, filename, magic bytes)
  ocr.py         OCR collaborator: page renderers + recognition engines
  extractors.py  one extraction strategy per format, behind ExtractorSet
  chunking.py    fixed-size splitting used by the store adapters
"""
