"""
Turns search-result containers into ProductRecords using ordered selector
fallback chains.
"""
import logging
from collections.abc import Iterator, Sequence
from dataclasses import dataclass

from keyword_sleuth.dom import Element
from keyword_sleuth.schemas import ProductRecord, SiteProfile
from keyword_sleuth.utils.converters import parse_price

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Selector chains
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class SelectorChain:
    """
    Ordered CSS selectors for one field. First match wins.
    """

    selectors: tuple[str, ...]

    def first(self, root: Element) -> Element | None:
        """
        Returns the first element matched by the earliest selector that
        matches anything. Later selectors are not consulted.
        """
        return next(self.candidates(root), None)

    def candidates(self, root: Element) -> Iterator[Element]:
        """
        Yields the first match of each selector, in chain order.
        Used where a matched element can still be rejected on its content.
        """
        for selector in self.selectors:
            element = root.select_one(selector)
            if element is not None:
                yield element

    def first_text(self, root: Element) -> str | None:
        element = self.first(root)
        return element.text if element is not None else None


@dataclass(frozen=True)
class PriceMatch:
    text: str
    amount: int | None


def read_price(root: Element, chain: SelectorChain) -> PriceMatch:
    """
    Walks the price chain until a matched text normalizes to a valid amount.

    Unlike other fields, a match that fails to parse does not end the search.
    The returned text is that of the last element tried.
    """
    text = ""
    for element in chain.candidates(root):
        text = element.text
        amount = parse_price(text)
        if amount is not None:
            return PriceMatch(text=text, amount=amount)
    return PriceMatch(text=text, amount=None)


def select_containers(page: Element, selectors: Sequence[str]) -> tuple[str | None, list[Element]]:
    """
    Uses the first container selector that matches at least one element for
    the whole page. Candidates are never merged.
    """
    for selector in selectors:
        elements = page.select(selector)
        if elements:
            return selector, elements
    return None, []


# ---------------------------------------------------------------------------
# Record extraction
# ---------------------------------------------------------------------------
class RecordExtractor:
    """
    Site-specific extraction bound to one SiteProfile.
    """

    def __init__(self, profile: SiteProfile):
        self.profile = profile
        self.title_chain = SelectorChain(profile.title_selectors)
        self.price_chain = SelectorChain(profile.price_selectors)
        self.brand_chain = SelectorChain(profile.brand_selectors)
        self.seller_chain = SelectorChain(profile.seller_selectors)

    def extract(
        self,
        container: Element,
        index: int,
        keyword: str,
        page: int = 1,
    ) -> ProductRecord | None:
        """
        Builds a record from one container, or None if it lacks a non-empty
        title or a valid price. ``index`` is the container's 0-based rank.
        """
        title_el = self.title_chain.first(container)
        title = title_el.text if title_el is not None else ""
        if not title:
            return None

        price = read_price(container, self.price_chain)
        if price.amount is None:
            return None

        url = title_el.closest_link()
        if not url:
            fallback = container.select_one(self.profile.link_selector)
            url = fallback.closest_link() if fallback is not None else None

        return ProductRecord(
            position=index + 1,
            original_position=index + 1,
            page=page,
            title=title,
            price_text=price.text,
            price=price.amount,
            url=url or "",
            brand=self.brand_chain.first_text(container),
            seller=self.seller_chain.first_text(container),
            site=self.profile.site,
            keyword=keyword,
        )

    def extract_page(self, page_root: Element, keyword: str, page: int = 1) -> list[ProductRecord]:
        """
        Extracts every valid record on one result page.

        A fault while reading one container skips only that container; a fault
        while locating containers yields an empty page.
        """
        try:
            selector, containers = select_containers(
                page_root, self.profile.container_selectors
            )
        except Exception as e:
            logger.warning(f"[{self.profile.site}] Container lookup failed on page {page}: {e}")
            return []

        if not containers:
            logger.warning(f"[{self.profile.site}] No product containers found on page {page}")
            return []

        logger.info(
            f"[{self.profile.site}] Using selector '{selector}' ({len(containers)} containers) on page {page}"
        )

        records: list[ProductRecord] = []
        for index, container in enumerate(containers):
            try:
                record = self.extract(container, index, keyword, page=page)
            except Exception as e:
                logger.warning(f"[{self.profile.site}] Skipping container {index} on page {page}: {e}")
                continue
            if record is not None:
                records.append(record)
        return records


def finalize_records(records: Sequence[ProductRecord]) -> list[ProductRecord]:
    """
    Drops invalid and duplicate records, then renumbers positions 1..n in
    their accumulated order.
    """
    seen: set[tuple[str, ...]] = set()
    final: list[ProductRecord] = []
    for record in records:
        if not record.is_valid:
            continue
        key = record.dedupe_key
        if key in seen:
            continue
        seen.add(key)
        final.append(record.model_copy(update={"position": len(final) + 1}))
    return final
