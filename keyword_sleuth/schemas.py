from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union
from urllib.parse import quote

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    TypeAdapter,
    field_validator,
)

from keyword_sleuth.utils.converters import parse_price, utc_now

# Enforces stripped strings to ensure clean data
StrippedString = Annotated[str, StringConstraints(strip_whitespace=True)]
Keyword = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
SelectorList = tuple[StrippedString, ...]


class Site(str, Enum):
    FALABELLA = "falabella"
    MERCADOLIBRE = "mercadolibre"

    def __str__(self) -> str:
        return self.value


class JobKey(BaseModel):
    """
    Identifies one logical scrape request. At most one job per key runs at a time.
    """

    keyword: Keyword
    site: Site

    model_config = ConfigDict(frozen=True, extra="forbid")

    def __str__(self) -> str:
        return f"{self.keyword}-{self.site.value}"


class ProductRecord(BaseModel):
    position: int = Field(ge=1)
    title: StrippedString
    price_text: StrippedString = Field(default="", alias="priceText")
    price: int | None = None
    url: StrippedString = ""
    brand: StrippedString | None = None
    seller: StrippedString | None = None
    site: Site
    keyword: StrippedString

    # Rank on the page the record was read from, and that page's number
    original_position: int = Field(default=1, ge=1, alias="originalPosition")
    page: int = Field(default=1, ge=1)

    # Uses UTC for system timestamps
    timestamp: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    @field_validator("price", mode="before")
    @classmethod
    def validate_price(cls, v: Any) -> int | None:
        return parse_price(v)

    @field_validator("brand", "seller", mode="after")
    @classmethod
    def blank_to_none(cls, v: str | None) -> str | None:
        return v or None

    @property
    def is_valid(self) -> bool:
        return bool(self.title) and self.price is not None

    @property
    def dedupe_key(self) -> tuple[str, ...]:
        if self.url:
            return (self.url,)
        return (self.title.lower(), str(self.price))


class SiteProfile(BaseModel):
    """
    Per-site scraping configuration.

    Every selector field is an ordered fallback chain: the first selector that
    matches wins.

    attributes:
        search_url_template (str): Format string receiving the encoded keyword as ``{query}``.
        keyword_separator (str | None): If set, whitespace runs in the keyword are
            replaced with it before encoding (path-style search URLs).
        link_selector (str): Fallback link inside a container when the title
            element has no enclosing anchor.
        max_pages (int): Hard cap on result pages walked per job.
        min_products (int): Advisory minimum; fewer records only logs a warning.
    """

    site: Site
    display_name: StrippedString
    search_url_template: StrippedString
    keyword_separator: str | None = None

    container_selectors: SelectorList
    title_selectors: SelectorList
    price_selectors: SelectorList
    brand_selectors: SelectorList = ()
    seller_selectors: SelectorList = ()
    next_page_selectors: SelectorList = ()
    link_selector: StrippedString = "a"

    max_pages: int = Field(ge=1)
    min_products: int = Field(default=0, ge=0)

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator(
        "container_selectors", "title_selectors", "price_selectors", mode="after"
    )
    @classmethod
    def require_selectors(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        selectors = tuple(s for s in v if s)
        if not selectors:
            raise ValueError("At least one selector is required.")
        return selectors

    def search_url(self, keyword: str) -> str:
        term = keyword.strip()
        if self.keyword_separator is not None:
            term = self.keyword_separator.join(term.split())
        return self.search_url_template.format(query=quote(term, safe=""))


# ---------------------------------------------------------------------------
# Message contract
# ---------------------------------------------------------------------------
class Message(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# Control surface -> supervisor
class StartCommand(Message):
    type: Literal["start"] = "start"
    keyword: Keyword
    site: Site
    timestamp: datetime = Field(default_factory=utc_now)

    @property
    def key(self) -> JobKey:
        return JobKey(keyword=self.keyword, site=self.site)


class CancelCommand(Message):
    type: Literal["cancel"] = "cancel"
    keyword: Keyword
    site: Site

    @property
    def key(self) -> JobKey:
        return JobKey(keyword=self.keyword, site=self.site)


class PingCommand(Message):
    type: Literal["ping"] = "ping"


ControlCommand = Annotated[
    Union[StartCommand, CancelCommand, PingCommand], Field(discriminator="type")
]


# Supervisor/worker -> control surface
class Event(Message):
    timestamp: datetime = Field(default_factory=utc_now)
    tab_id: int | None = None


class JobEvent(Event):
    keyword: Keyword
    site: Site

    @property
    def key(self) -> JobKey:
        return JobKey(keyword=self.keyword, site=self.site)


class ConnectedEvent(Event):
    type: Literal["connected"] = "connected"


class PongEvent(Event):
    type: Literal["pong"] = "pong"


class ProgressEvent(JobEvent):
    type: Literal["progress"] = "progress"
    count: int = Field(ge=0)


class ResultEvent(JobEvent):
    type: Literal["result"] = "result"
    data: list[ProductRecord]
    count: int = Field(ge=0)


class ErrorEvent(JobEvent):
    type: Literal["error"] = "error"
    error: str


class CancelledEvent(JobEvent):
    type: Literal["cancelled"] = "cancelled"


class BusyEvent(JobEvent):
    """A start was refused because the same job is already in flight."""

    type: Literal["busy"] = "busy"


ControlEvent = Annotated[
    Union[
        ConnectedEvent,
        PongEvent,
        ProgressEvent,
        ResultEvent,
        ErrorEvent,
        CancelledEvent,
        BusyEvent,
    ],
    Field(discriminator="type"),
]

WorkerEvent = Annotated[
    Union[ProgressEvent, ResultEvent, ErrorEvent, CancelledEvent, BusyEvent],
    Field(discriminator="type"),
]

TERMINAL_EVENT_TYPES = frozenset({"result", "error", "cancelled"})


# Supervisor -> worker
class StartScraping(Message):
    action: Literal["startScraping"] = "startScraping"
    keyword: Keyword
    site: Site
    url: StrippedString
    timestamp: datetime = Field(default_factory=utc_now)


class CancelScraping(Message):
    action: Literal["cancelScraping"] = "cancelScraping"


WorkerCommand = Annotated[
    Union[StartScraping, CancelScraping], Field(discriminator="action")
]

control_command_adapter = TypeAdapter(ControlCommand)
control_event_adapter = TypeAdapter(ControlEvent)
worker_event_adapter = TypeAdapter(WorkerEvent)
worker_command_adapter = TypeAdapter(WorkerCommand)
