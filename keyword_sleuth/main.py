import argparse
import asyncio
import logging
import sys

from keyword_sleuth.config import SleuthSettings, load_settings
from keyword_sleuth.control import ControlSurface
from keyword_sleuth.keyword_sleuth_playwright.host import playwright_host
from keyword_sleuth.schemas import ResultEvent, Site
from keyword_sleuth.storage import JsonFileStore
from keyword_sleuth.supervisor import Supervisor

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="keyword-sleuth",
        description="Collects search-result products for keywords from Peruvian storefronts.",
    )
    parser.add_argument("--store", help="Path of the JSON store (overrides SLEUTH_STORE_PATH)")
    sub = parser.add_subparsers(dest="command", required=True)

    scrape = sub.add_parser("scrape", help="Scrape one keyword on one site")
    scrape.add_argument("keyword")
    scrape.add_argument("--site", choices=[s.value for s in Site], required=True)
    scrape.add_argument("--timeout", type=float, default=None, help="Give up after this many seconds")

    keywords = sub.add_parser("keywords", help="Manage the keyword list")
    keywords.add_argument("action", choices=["add", "delete", "clear", "list"])
    keywords.add_argument("keyword", nargs="?")

    stats = sub.add_parser("stats", help="Show product counts")
    stats.add_argument("keyword", nargs="?")
    return parser


async def run_scrape(settings: SleuthSettings, store: JsonFileStore, keyword: str, site: Site, timeout: float | None) -> int:
    async with playwright_host(settings) as host:
        supervisor = Supervisor(host, settings.timings)
        surface = ControlSurface(supervisor.open_control_channel, store)
        await surface.open()
        try:
            if keyword.strip() not in surface.keywords:
                surface.add_keyword(keyword)
            if not surface.start(keyword, site):
                logger.error("Scrape could not be started")
                return 1

            try:
                outcome = await surface.wait_for_outcome(timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"No outcome after {timeout}s; cancelling")
                surface.cancel()
                try:
                    outcome = await surface.wait_for_outcome(timeout=settings.timings.load_timeout or None)
                except asyncio.TimeoutError:
                    # The job already ended; a late cancel gets no reply
                    outcome = None
        finally:
            surface.close()
            await supervisor.close()

    if isinstance(outcome, ResultEvent):
        logger.info(f"Scrape finished: {outcome.count} products from {site}")
        for record in outcome.data[:10]:
            logger.info(f"[{record.position}] {record.title[:50]} | S/ {record.price} | {record.url}")
        return 0

    logger.error(f"Scrape ended with '{outcome.type if outcome else 'nothing'}'")
    return 1


def run_keywords(surface: ControlSurface, action: str, keyword: str | None) -> int:
    if action in ("add", "delete") and not keyword:
        logger.error(f"'keywords {action}' needs a keyword")
        return 2

    if action == "add":
        try:
            surface.add_keyword(keyword)
        except ValueError as e:
            logger.error(str(e))
            return 2
    elif action == "delete":
        if not surface.delete_keyword(keyword):
            logger.warning(f"Keyword '{keyword}' not found")
            return 1
    elif action == "clear":
        surface.clear_all()
    else:
        for kw in surface.keywords:
            print(kw)
    return 0


def run_stats(surface: ControlSurface, keyword: str | None) -> int:
    if keyword:
        stats = surface.keyword_stats(keyword)
        if stats is None:
            logger.warning(f"No data for keyword '{keyword}'")
            return 1
        print(f"Statistics for '{stats.keyword}':")
        for site, count in stats.counts.items():
            print(f"  {site}: {count} products")
        print(f"  total: {stats.total} products")
        if stats.last_updated:
            print(f"  last updated: {stats.last_updated.isoformat()}")
        return 0

    totals = surface.totals()
    for site, count in totals.items():
        print(f"{site}: {count}")
    print(f"total: {sum(totals.values())}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings()

    # Configures logging to output at the configured level
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    store = JsonFileStore(args.store or settings.store_path)

    if args.command == "scrape":
        try:
            return asyncio.run(run_scrape(settings, store, args.keyword, Site(args.site), args.timeout))
        except KeyboardInterrupt:
            logger.info("Scrape interrupted by user.")
            return 1

    # Store-only commands never connect to a supervisor
    surface = ControlSurface(lambda: None, store)
    surface.load()
    if args.command == "keywords":
        return run_keywords(surface, args.action, args.keyword)
    return run_stats(surface, args.keyword)


if __name__ == "__main__":
    sys.exit(main())
