"""
Content: generation of grounded instructional content and its rendering.

Subpackages:
- generation/: prompt templates, structured output parsing, fallback
  content and the cached unit generator

Core modules:
- rendering: markdown rendering with allow-list sanitization
"""

from .rendering import ContentRenderer, sanitize_html

__all__ = [
    "ContentRenderer",
    "sanitize_html",
]
