"""
Ingestion pipeline for subsidy-application evidence documents.

Modules
-------
config       – Pipeline-specific settings (size limits, OCR knobs, thresholds …)
schemas      – Pydantic models for Evidence, ExtractedContent, TransformedTable
security     – Upload scanning: size / extension / MIME / signature / malware rules
pdf_parser   – PDF native text-layer extraction & page rendering (PyMuPDF)
ocr          – OCR engine (EasyOCR) with preprocessing and quality evaluation
tables       – Table parsing (CSV, pdfplumber, whitespace layout) + cell coercion
structured   – Regex rule table for market / competitor / financial data
extractors   – Per-format extraction (CSV, Excel, PDF, image, HTML, text)
transform    – Annotated tables with citation / explanation / caveat footnotes
"""
