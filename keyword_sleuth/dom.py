"""
Minimal element abstraction the extractor queries.

Extraction runs against static HTML snapshots, so the same code serves live
browser pages (via ``page.content()``) and plain fixtures in tests.
"""
from typing import Protocol, runtime_checkable
from urllib.parse import urljoin

from parsel import Selector
from parsel.csstranslator import HTMLTranslator
from w3lib.html import get_base_url

_translator = HTMLTranslator()


@runtime_checkable
class Element(Protocol):
    """
    Read-only view of one DOM node.
    """

    def select(self, css: str) -> list["Element"]:
        ...

    def select_one(self, css: str) -> "Element | None":
        ...

    @property
    def text(self) -> str:
        """Whitespace-collapsed text content."""
        ...

    def attr(self, name: str) -> str | None:
        ...

    def closest_link(self) -> str | None:
        """Absolute href of the nearest enclosing-or-self anchor, if any."""
        ...


class HtmlElement:
    """
    Element backed by a parsel Selector.
    """

    __slots__ = ("_sel", "base_url")

    def __init__(self, selector: Selector, base_url: str = ""):
        self._sel = selector
        self.base_url = base_url

    @classmethod
    def from_html(cls, html: str, url: str = "") -> "HtmlElement":
        # Honors <base href> the way a browser would when resolving links
        base_url = get_base_url(html, url) if url else ""
        return cls(Selector(text=html), base_url=base_url)

    def _css(self, css: str):
        # Descendants only; a node never matches its own query, as in querySelector
        return self._sel.xpath(_translator.css_to_xpath(css, prefix="descendant::"))

    def select(self, css: str) -> list["HtmlElement"]:
        return [HtmlElement(s, self.base_url) for s in self._css(css)]

    def select_one(self, css: str) -> "HtmlElement | None":
        matches = self._css(css)
        if not matches:
            return None
        return HtmlElement(matches[0], self.base_url)

    @property
    def text(self) -> str:
        return " ".join((self._sel.xpath("string()").get() or "").split())

    def attr(self, name: str) -> str | None:
        return self._sel.attrib.get(name)

    def closest_link(self) -> str | None:
        anchors = self._sel.xpath("ancestor-or-self::a[1]")
        if not anchors:
            return None
        return self._resolve(anchors[0].attrib.get("href"))

    def _resolve(self, href: str | None) -> str | None:
        if not href or not href.strip():
            return None
        return urljoin(self.base_url, href.strip()) if self.base_url else href.strip()

    def __repr__(self) -> str:
        return f"HtmlElement({self._sel.get()[:60]!r})"
