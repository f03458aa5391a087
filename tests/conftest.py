import pytest

from fakes import MOUSE_PAGES, FakeTabHost, mercadolibre_html, product
from keyword_sleuth.config import Timings
from keyword_sleuth.sites import falabella_pe, mercadolibre_pe


@pytest.fixture
def timings() -> Timings:
    return Timings.immediate()


@pytest.fixture
def falabella():
    return falabella_pe


@pytest.fixture
def mercadolibre():
    return mercadolibre_pe


@pytest.fixture
def mercadolibre_pages() -> list[str]:
    return [
        mercadolibre_html(
            [
                product("Teclado Mecánico Redragon", "189", "https://articulo.mercadolibre.com.pe/MPE-1", seller="Redragon"),
                product("Teclado Logitech K120", "45", "https://articulo.mercadolibre.com.pe/MPE-2"),
            ]
        )
    ]


@pytest.fixture
def make_host(timings, mercadolibre_pages):
    """Builds a FakeTabHost serving the mouse fixture and the keyboard fixture."""

    def _make(**options) -> FakeTabHost:
        host = FakeTabHost(
            {
                "falabella.com.pe": MOUSE_PAGES,
                "mercadolibre.com.pe": mercadolibre_pages,
            },
            timings,
        )
        for name, value in options.items():
            setattr(host, name, value)
        return host

    return _make
