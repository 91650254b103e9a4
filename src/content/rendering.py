"""
Markdown rendering with allow-list sanitization.

Generated content is untrusted: model output and learner-provided problem
text both end up in it. Markdown is rendered with mistune, raw HTML
included, and the HTML is passed through an allow-list sanitizer before it is
stored.
"""
from __future__ import annotations

from html import escape
from html.parser import HTMLParser
from urllib.parse import urlsplit

import mistune

ALLOWED_TAGS = {
    "a", "b", "blockquote", "br", "code", "del", "em", "h1", "h2", "h3", "h4",
    "h5", "h6", "hr", "i", "li", "ol", "p", "pre", "span", "strong", "sub",
    "sup", "table", "tbody", "td", "th", "thead", "tr", "ul",
}

VOID_TAGS = {"br", "hr"}

# Dropped together with everything inside them
DROP_CONTENT_TAGS = {"script", "style", "iframe", "object", "embed", "template"}

ALLOWED_ATTRIBUTES = {
    "a": {"href", "title"},
    "code": {"class"},
    "pre": {"class"},
    "span": {"class"},
    "td": {"colspan", "rowspan", "align"},
    "th": {"colspan", "rowspan", "align", "scope"},
}

URL_ATTRIBUTES = {"href"}
ALLOWED_PROTOCOLS = {"http", "https", "mailto"}


def _is_safe_url(value: str) -> bool:
    value = value.strip()
    if not value:
        return False
    if value.startswith(("#", "/")):
        return True
    scheme = urlsplit(value).scheme
    if not scheme:
        return True
    return scheme.lower() in ALLOWED_PROTOCOLS


class _ContentSanitizer(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=False)
        self._output: list[str] = []
        self._open_tags: list[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in DROP_CONTENT_TAGS:
            self._skip_depth += 1
            return
        if self._skip_depth or tag not in ALLOWED_TAGS:
            return

        allowed = ALLOWED_ATTRIBUTES.get(tag, set())
        cleaned: list[str] = []
        for name, value in attrs:
            if name not in allowed or value is None:
                continue
            value = value.strip()
            if name in URL_ATTRIBUTES and not _is_safe_url(value):
                continue
            cleaned.append(f'{name}="{escape(value, quote=True)}"')

        attr_string = " " + " ".join(cleaned) if cleaned else ""
        self._output.append(f"<{tag}{attr_string}>")
        if tag not in VOID_TAGS:
            self._open_tags.append(tag)

    def handle_endtag(self, tag: str) -> None:
        if tag in DROP_CONTENT_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
            return
        if self._skip_depth or tag not in ALLOWED_TAGS or tag in VOID_TAGS:
            return
        for index in range(len(self._open_tags) - 1, -1, -1):
            if self._open_tags[index] == tag:
                del self._open_tags[index]
                self._output.append(f"</{tag}>")
                break

    def handle_startendtag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in DROP_CONTENT_TAGS:
            return
        self.handle_starttag(tag, attrs)
        if tag in ALLOWED_TAGS and tag not in VOID_TAGS and not self._skip_depth:
            self.handle_endtag(tag)

    def handle_data(self, data: str) -> None:
        if not self._skip_depth:
            self._output.append(escape(data, quote=False))

    def handle_entityref(self, name: str) -> None:
        if not self._skip_depth:
            self._output.append(f"&{name};")

    def handle_charref(self, name: str) -> None:
        if not self._skip_depth:
            self._output.append(f"&#{name};")

    def get_html(self) -> str:
        # close anything the input left open
        closing = "".join(f"</{tag}>" for tag in reversed(self._open_tags))
        return "".join(self._output) + closing


def sanitize_html(raw_html: str | None) -> str:
    """Strip everything outside the allow-list."""
    if not raw_html:
        return ""
    parser = _ContentSanitizer()
    parser.feed(raw_html)
    parser.close()
    return parser.get_html()


class ContentRenderer:
    """Markdown -> sanitized HTML."""

    def __init__(self) -> None:
        self._markdown = mistune.create_markdown(escape=False, plugins=["strikethrough", "table"])

    def render(self, markdown: str) -> str:
        return str(self._markdown(markdown or ""))

    def sanitize(self, html: str) -> str:
        return sanitize_html(html)

    def render_safe(self, markdown: str) -> str:
        return self.sanitize(self.render(markdown))
