from __future__ import annotations

import re
from html.parser import HTMLParser
from typing import Optional
from urllib.parse import urljoin

_SKIP_TAGS = {"script", "style", "head", "title"}
_BLOCK_TAGS = {
    "p",
    "div",
    "table",
    "tr",
    "ul",
    "ol",
    "li",
    "h1",
    "h2",
    "h3",
    "h4",
    "h5",
    "h6",
    "blockquote",
    "section",
    "article",
    "header",
    "footer",
}
_SPACES_RE = re.compile(r"[ \t\r\f\v]+")
_BLANK_LINES_RE = re.compile(r"\n{3,}")


class _TextExtractor(HTMLParser):
    def __init__(self, base_url: str) -> None:
        super().__init__(convert_charrefs=True)
        self.base_url = base_url
        self.parts: list[str] = []
        self._skip_depth = 0
        self._link_href: Optional[str] = None
        self._link_text: list[str] = []

    def handle_starttag(self, tag: str, attrs: list[tuple[str, Optional[str]]]) -> None:
        if tag in _SKIP_TAGS:
            self._skip_depth += 1
            return
        if tag == "br":
            self.parts.append("\n")
        elif tag in _BLOCK_TAGS:
            self.parts.append("\n\n" if tag in {"p", "h1", "h2", "h3"} else "\n")
            if tag == "li":
                self.parts.append("- ")
        elif tag == "a":
            href = dict(attrs).get("href") or ""
            self._link_href = self._absolute(href) if href else None
            self._link_text = []

    def handle_endtag(self, tag: str) -> None:
        if tag in _SKIP_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
            return
        if tag == "a" and self._link_href is not None:
            text = "".join(self._link_text).strip()
            href = self._link_href
            if not text or text == href:
                self.parts.append(href)
            else:
                self.parts.append(f"{text} [{href}]")
            self._link_href = None
            self._link_text = []
        elif tag in _BLOCK_TAGS:
            self.parts.append("\n")

    def handle_data(self, data: str) -> None:
        if self._skip_depth:
            return
        if self._link_href is not None:
            self._link_text.append(data)
            return
        self.parts.append(data)

    def _absolute(self, href: str) -> str:
        href = href.strip()
        if href.startswith(("mailto:", "tel:", "#", "{")) or "://" in href:
            return href
        if not self.base_url:
            return href
        return urljoin(self.base_url.rstrip("/") + "/", href.lstrip("/"))


def html_to_text(html: str, base_url: str = "") -> str:
    if not html:
        return ""
    parser = _TextExtractor(base_url=base_url)
    parser.feed(html)
    parser.close()
    text = "".join(parser.parts)
    lines = [_SPACES_RE.sub(" ", line).strip() for line in text.split("\n")]
    text = "\n".join(lines)
    return _BLANK_LINES_RE.sub("\n\n", text).strip()
