"""
Scripted stand-ins for the browser side, and HTML builders for result pages.
"""
import asyncio
from collections.abc import Sequence
from html import escape

from keyword_sleuth.channels import Port
from keyword_sleuth.config import Timings
from keyword_sleuth.dom import HtmlElement
from keyword_sleuth.errors import PageUnavailableError
from keyword_sleuth.host import BaseTabHost


def product(title: str | None, price: str | None, url: str | None = None, **extra) -> dict:
    return {"title": title, "price": price, "url": url, **extra}


def falabella_html(products: Sequence[dict], next_page: bool = False) -> str:
    pods = []
    for p in products:
        parts = []
        if p.get("title") is not None:
            title = f'<b class="pod-subTitle">{escape(p["title"])}</b>'
            if p.get("url"):
                title = f'<a href="{escape(p["url"])}">{title}</a>'
            parts.append(title)
        if p.get("brand"):
            parts.append(f'<span class="pod-subTitle-2">{escape(p["brand"])}</span>')
        if p.get("price") is not None:
            parts.append(f'<ol><li class="price-0"><span>{escape(p["price"])}</span></li></ol>')
        pods.append(f'<div class="pod">{"".join(parts)}</div>')

    pagination = '<a title="Siguiente" href="?page=next">Siguiente</a>' if next_page else ""
    return (
        "<html><body>"
        f'<div class="search-results">{"".join(pods)}</div>'
        f"{pagination}"
        "</body></html>"
    )


def mercadolibre_html(products: Sequence[dict], next_page: bool = False) -> str:
    items = []
    for p in products:
        parts = []
        if p.get("title") is not None:
            title = f'<h2 class="ui-search-item__title">{escape(p["title"])}</h2>'
            if p.get("url"):
                title = f'<a class="ui-search-link" href="{escape(p["url"])}">{title}</a>'
            parts.append(title)
        if p.get("price") is not None:
            parts.append(f'<span class="andes-money-amount__fraction">{escape(p["price"])}</span>')
        if p.get("seller"):
            parts.append(f'<span class="ui-search-official-store-label">{escape(p["seller"])}</span>')
        items.append(f'<li class="ui-search-layout__item">{"".join(parts)}</li>')

    pagination = (
        '<ul><li class="andes-pagination__button--next"><a href="_Desde_51">Siguiente</a></li></ul>'
        if next_page
        else ""
    )
    return (
        "<html><body>"
        f'<ol class="ui-search-layout">{"".join(items)}</ol>'
        f"{pagination}"
        "</body></html>"
    )


# Page 1: three valid pods and one without a title. Page 2: two more, no "next".
MOUSE_PAGES = [
    falabella_html(
        [
            product("Mouse Logitech G203", "S/ 79.90", "/falabella-pe/product/1", brand="LOGITECH"),
            product("Mouse Razer DeathAdder", "S/ 149.90", "/falabella-pe/product/2", brand="RAZER"),
            product(None, "S/ 39.90", "/falabella-pe/product/3"),
            product("Mouse HP X200", "S/ 45,90", "/falabella-pe/product/4", brand="HP"),
        ],
        next_page=True,
    ),
    falabella_html(
        [
            product("Mouse Redragon Cobra", "S/ 99.00", "/falabella-pe/product/5"),
            product("Mouse Genius DX-110", "S/ 19.90", "/falabella-pe/product/6"),
        ],
    ),
]


class FakePageDriver:
    """
    Serves a fixed list of HTML pages. "Next" advances when the current page
    carries one of the requested selectors.

    attributes:
        gates: Page index -> event that snapshot() waits on before reading it.
        fail_on: Page index whose snapshot raises PageUnavailableError.
        next_error: Raised from go_next() when set.
    """

    def __init__(self, pages: Sequence[str], url: str = "https://www.falabella.com.pe/falabella-pe/search?Ntt=mouse"):
        self.pages = list(pages)
        self.url = url
        self.index = 0
        self.gates: dict[int, asyncio.Event] = {}
        self.fail_on: int | None = None
        self.next_error: Exception | None = None
        self.snapshots: list[int] = []
        self.clicks = 0
        self.load_waits = 0

    async def snapshot(self) -> HtmlElement:
        gate = self.gates.get(self.index)
        if gate is not None:
            await gate.wait()
        if self.fail_on == self.index:
            raise PageUnavailableError(f"page {self.index + 1} is gone")
        self.snapshots.append(self.index)
        return HtmlElement.from_html(self.pages[self.index], self.url)

    async def go_next(self, selectors: Sequence[str]) -> bool:
        if self.next_error is not None:
            raise self.next_error
        current = HtmlElement.from_html(self.pages[self.index], self.url)
        if not any(current.select_one(s) is not None for s in selectors):
            return False
        if self.index + 1 >= len(self.pages):
            return False
        self.clicks += 1
        self.index += 1
        return True

    async def wait_for_load(self, timeout: float) -> None:
        self.load_waits += 1


class FakeTabHost(BaseTabHost):
    """
    In-memory tabs. Each opened url is served from ``pages`` by
    matching the url's host.

    attributes:
        complete: Fire "complete" as soon as a tab opens.
        gates: Copied onto every driver opened; see FakePageDriver.
        fail_on: Copied onto every driver opened.
        attach: Whether inject_worker actually starts a worker.
        fail_open: Error raised when opening a tab.
    """

    def __init__(self, pages: dict[str, Sequence[str]], timings: Timings | None = None):
        super().__init__(timings or Timings.immediate())
        self.pages = pages
        self.drivers: dict[int, FakePageDriver] = {}
        self.opened: list[tuple[int, str, bool]] = []
        self.closed: list[int] = []
        self.complete = True
        self.attach = True
        self.fail_open: Exception | None = None
        self.gates: dict[int, asyncio.Event] = {}
        self.fail_on: int | None = None

    async def _open_page(self, tab_id: int, url: str, active: bool) -> None:
        if self.fail_open is not None:
            raise self.fail_open
        pages = next((p for host, p in self.pages.items() if host in url), None)
        if pages is None:
            raise RuntimeError(f"no fixture pages for {url}")
        driver = FakePageDriver(pages, url)
        driver.gates = dict(self.gates)
        driver.fail_on = self.fail_on
        self.drivers[tab_id] = driver
        self.opened.append((tab_id, url, active))
        self._set_status(tab_id, "loading")
        if self.complete:
            self._set_status(tab_id, "complete")

    async def _close_page(self, tab_id: int) -> None:
        self.closed.append(tab_id)

    def _driver_for(self, tab_id: int) -> FakePageDriver:
        return self.drivers[tab_id]

    async def inject_worker(self, tab_id: int) -> None:
        if self.attach:
            await super().inject_worker(tab_id)

    def close_externally(self, tab_id: int) -> None:
        self._tab_closed(tab_id)


class Recorder:
    """Collects every message arriving on a port."""

    def __init__(self, port: Port):
        self.port = port
        self.messages: list[dict] = []
        port.on_message.add_listener(self._record)

    def _record(self, message: dict, port: Port) -> None:
        self.messages.append(message)

    def types(self) -> list[str]:
        return [m.get("type") for m in self.messages]

    def of_type(self, kind: str) -> list[dict]:
        return [m for m in self.messages if m.get("type") == kind]

    async def wait_for(self, kind: str, count: int = 1, timeout: float = 2.0) -> list[dict]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while len(self.of_type(kind)) < count:
            if loop.time() > deadline:
                raise AssertionError(f"timed out waiting for {count} '{kind}' message(s); got {self.types()}")
            await asyncio.sleep(0.001)
        return self.of_type(kind)


async def idle(rounds: int = 20) -> None:
    """Lets queued callbacks and short-lived tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
