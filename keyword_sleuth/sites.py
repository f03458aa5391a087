"""
Selector chains and limits for the supported storefronts.

Storefront markup changes often; each chain lists the current selector first
and older layouts after it.
"""
from keyword_sleuth.schemas import Site, SiteProfile

falabella_pe = SiteProfile(
    site=Site.FALABELLA,
    display_name="Falabella",
    search_url_template="https://www.falabella.com.pe/falabella-pe/search?Ntt={query}",
    container_selectors=(
        "div.pod",
        "div.search-results > div",
        "div[data-pod]",
        'section[data-testid="search-results"] > div',
        "div.pod-container",
    ),
    title_selectors=(
        "b.pod-subTitle",
        "div.pod-title",
        'h3[data-testid="product-title"]',
        'a[data-testid="product-link"]',
        ".pod-title",
    ),
    price_selectors=(
        "li.price-0 span",
        'span[data-testid="price"]',
        "div.prices span",
        "span.copy10",
        ".pod-prices .price",
    ),
    brand_selectors=(
        "span.pod-subTitle-2",
        "div.brand",
        'span[data-testid="brand"]',
        ".pod-subTitle-2",
    ),
    next_page_selectors=(
        'a[title="Siguiente"]',
        'button[aria-label="Siguiente"]',
        "li.pagination-next a",
        "a.pagination-next",
        ".pagination-next",
    ),
    link_selector="a",
    max_pages=3,
    min_products=60,
)

mercadolibre_pe = SiteProfile(
    site=Site.MERCADOLIBRE,
    display_name="MercadoLibre",
    search_url_template="https://listado.mercadolibre.com.pe/{query}",
    keyword_separator="-",
    container_selectors=(
        "li.ui-search-layout__item",
        "div.ui-search-result",
        "ol.ui-search-layout > li",
        'section[data-testid="results-section"] > div',
        ".ui-search-result",
    ),
    title_selectors=(
        "h2.ui-search-item__title",
        "a.ui-search-item__group__element",
        "div.ui-search-result__content-wrapper h2",
        ".ui-search-item__title",
    ),
    price_selectors=(
        "span.price-tag-fraction",
        "span.andes-money-amount__fraction",
        "div.ui-search-price__second-line span",
        ".ui-search-price__second-line .price-tag-fraction",
    ),
    seller_selectors=(
        "span.ui-search-official-store-label",
        "p.ui-search-official-store-label",
        "span.ui-search-item__group__element.ui-search-link__title",
        ".ui-search-official-store-label",
    ),
    next_page_selectors=(
        'a[title="Siguiente"]',
        "li.andes-pagination__button--next a",
        "span.andes-pagination__arrow--next",
        ".andes-pagination__button--next a",
    ),
    link_selector="a.ui-search-link",
    max_pages=5,
    min_products=100,
)

SITE_PROFILES: dict[Site, SiteProfile] = {
    falabella_pe.site: falabella_pe,
    mercadolibre_pe.site: mercadolibre_pe,
}


def get_profile(site: Site | str) -> SiteProfile:
    try:
        return SITE_PROFILES[Site(site)]
    except (KeyError, ValueError):
        allowed = ", ".join(s.value for s in SITE_PROFILES)
        raise ValueError(f"Unknown site '{site}'. Allowed sites: {allowed}.") from None
