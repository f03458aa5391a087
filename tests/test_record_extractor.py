from fakes import MOUSE_PAGES, falabella_html, mercadolibre_html, product
from keyword_sleuth.dom import HtmlElement
from keyword_sleuth.record_extractor import (
    RecordExtractor,
    SelectorChain,
    finalize_records,
    read_price,
    select_containers,
)
from keyword_sleuth.schemas import ProductRecord, Site

SEARCH_URL = "https://www.falabella.com.pe/falabella-pe/search?Ntt=mouse"


def _page(html: str, url: str = SEARCH_URL) -> HtmlElement:
    return HtmlElement.from_html(html, url)


def _record(position: int, title: str, price: int, url: str = "") -> ProductRecord:
    return ProductRecord(
        position=position,
        title=title,
        price=price,
        url=url,
        site=Site.FALABELLA,
        keyword="mouse",
    )


def test_container_without_title_yields_nothing(falabella) -> None:
    page = _page(falabella_html([product(None, "S/ 39.90", "/p/1")]))
    container = page.select("div.pod")[0]

    assert RecordExtractor(falabella).extract(container, 0, "mouse") is None


def test_container_without_valid_price_yields_nothing(falabella) -> None:
    page = _page(falabella_html([product("Mouse", "Agotado", "/p/1")]))
    container = page.select("div.pod")[0]

    assert RecordExtractor(falabella).extract(container, 0, "mouse") is None


def test_extract_falabella_record(falabella) -> None:
    page = _page(MOUSE_PAGES[0])
    container = page.select("div.pod")[0]

    record = RecordExtractor(falabella).extract(container, 0, "mouse", page=1)

    assert record is not None
    assert record.title == "Mouse Logitech G203"
    assert record.price == 80
    assert record.price_text == "S/ 79.90"
    assert record.url == "https://www.falabella.com.pe/falabella-pe/product/1"
    assert record.brand == "LOGITECH"
    assert record.seller is None
    assert record.position == 1
    assert record.site is Site.FALABELLA
    assert record.keyword == "mouse"


def test_extract_mercadolibre_record(mercadolibre, mercadolibre_pages) -> None:
    page = _page(mercadolibre_pages[0], "https://listado.mercadolibre.com.pe/teclado")
    container = page.select("li.ui-search-layout__item")[0]

    record = RecordExtractor(mercadolibre).extract(container, 4, "teclado")

    assert record is not None
    assert record.title == "Teclado Mecánico Redragon"
    assert record.price == 189
    assert record.seller == "Redragon"
    assert record.url == "https://articulo.mercadolibre.com.pe/MPE-1"
    assert record.original_position == 5


def test_link_fallback_when_title_is_not_inside_an_anchor(mercadolibre) -> None:
    html = (
        '<ol><li class="ui-search-layout__item">'
        '<h2 class="ui-search-item__title">Teclado</h2>'
        '<a class="ui-search-link" href="/MPE-9">ver</a>'
        '<span class="andes-money-amount__fraction">50</span>'
        "</li></ol>"
    )
    page = _page(html, "https://listado.mercadolibre.com.pe/teclado")

    record = RecordExtractor(mercadolibre).extract(page.select("li")[0], 0, "teclado")

    assert record is not None
    assert record.url == "https://listado.mercadolibre.com.pe/MPE-9"


def test_price_chain_retries_after_unparseable_match(falabella) -> None:
    html = (
        '<div class="pod"><b class="pod-subTitle">Mouse</b>'
        '<ol><li class="price-0"><span>Ver precio</span></li></ol>'
        '<div class="prices"><span>S/ 25,50</span></div></div>'
    )
    container = _page(html).select("div.pod")[0]

    match = read_price(container, SelectorChain(falabella.price_selectors))

    assert match.amount == 26
    assert match.text == "S/ 25,50"


def test_price_text_is_last_candidate_when_nothing_parses(falabella) -> None:
    html = (
        '<div class="pod"><ol><li class="price-0"><span>Ver precio</span></li></ol>'
        '<span class="copy10">Agotado</span></div>'
    )
    container = _page(html).select("div.pod")[0]

    match = read_price(container, SelectorChain(falabella.price_selectors))

    assert match.amount is None
    assert match.text == "Agotado"


def test_title_chain_does_not_fall_through_on_empty_text(falabella) -> None:
    html = (
        '<div class="pod"><b class="pod-subTitle">  </b><div class="pod-title">Mouse</div>'
        '<ol><li class="price-0"><span>S/ 10</span></li></ol></div>'
    )
    container = _page(html).select("div.pod")[0]

    assert RecordExtractor(falabella).extract(container, 0, "mouse") is None


def test_first_matching_container_selector_wins() -> None:
    html = '<div class="pod">a</div><div class="pod">b</div><div data-pod="1">c</div>'

    selector, containers = select_containers(_page(html), ("div.nothing", "div.pod", "div[data-pod]"))

    assert selector == "div.pod"
    assert [c.text for c in containers] == ["a", "b"]


def test_extract_page_skips_invalid_containers(falabella) -> None:
    records = RecordExtractor(falabella).extract_page(_page(MOUSE_PAGES[0]), "mouse", page=1)

    assert [r.title for r in records] == [
        "Mouse Logitech G203",
        "Mouse Razer DeathAdder",
        "Mouse HP X200",
    ]
    assert [r.original_position for r in records] == [1, 2, 4]


def test_extract_page_without_containers_is_empty(falabella) -> None:
    assert RecordExtractor(falabella).extract_page(_page("<html><body></body></html>"), "mouse") == []


def test_extract_page_skips_a_faulty_container(falabella) -> None:
    class _BrokenContainer:
        def select_one(self, css):
            raise RuntimeError("detached node")

    class _Page:
        def select(self, css):
            good = _page(MOUSE_PAGES[0]).select("div.pod")[0]
            return [_BrokenContainer(), good]

    records = RecordExtractor(falabella).extract_page(_Page(), "mouse")

    assert [r.title for r in records] == ["Mouse Logitech G203"]


def test_extract_page_survives_container_lookup_fault(falabella) -> None:
    class _Page:
        def select(self, css):
            raise RuntimeError("document detached")

    assert RecordExtractor(falabella).extract_page(_Page(), "mouse") == []


def test_finalize_records_dedupes_and_renumbers() -> None:
    records = [
        _record(1, "Mouse A", 10, "https://x/1"),
        _record(2, "Mouse B", 20, "https://x/2"),
        _record(1, "Mouse A again", 11, "https://x/1"),
        _record(2, "Mouse C", 30),
        _record(3, "mouse c", 30),
    ]

    final = finalize_records(records)

    assert [r.title for r in final] == ["Mouse A", "Mouse B", "Mouse C"]
    assert [r.position for r in final] == [1, 2, 3]


def test_mercadolibre_page_keeps_document_order(mercadolibre) -> None:
    html = mercadolibre_html(
        [
            product("Uno", "10", "https://articulo.mercadolibre.com.pe/1"),
            product("Dos", "20", "https://articulo.mercadolibre.com.pe/2"),
        ]
    )

    records = RecordExtractor(mercadolibre).extract_page(_page(html), "x")

    assert [r.original_position for r in records] == [1, 2]


def test_element_queries_never_match_the_element_itself() -> None:
    root = _page('<div class="pod" id="outer"><div class="pod" id="inner"><b>x</b></div></div>')
    outer = root.select_one("#outer")

    assert [e.attr("id") for e in outer.select("div.pod")] == ["inner"]
    assert outer.select_one("div.pod").attr("id") == "inner"
    assert outer.select_one("#outer") is None
