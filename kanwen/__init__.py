"""
Kanwen - camera OCR reader for Traditional Chinese text.
"""

__version__ = "0.1.0"
