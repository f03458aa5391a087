"""
Runtime settings, read from SLEUTH_* environment variables.
"""
import os
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

ENV_PREFIX = "SLEUTH_"


class Timings(BaseModel):
    """
    Every wait in the workflow, in seconds.

    attributes:
        settle_delay: Pause after injecting the worker before sending it the start instruction.
        load_timeout: Upper bound on waiting for a new tab's "complete" status.
        page_gap_delay: Pause after a result page loads, before its products are read.
        navigation_timeout: Upper bound on waiting for the page load that follows a "next" click.
        click_timeout: Upper bound on clicking a "next" control.
    """

    settle_delay: float = Field(default=2.0, ge=0)
    load_timeout: float = Field(default=10.0, ge=0)
    page_gap_delay: float = Field(default=2.0, ge=0)
    navigation_timeout: float = Field(default=10.0, ge=0)
    click_timeout: float = Field(default=5.0, ge=0)

    model_config = ConfigDict(frozen=True, extra="forbid")

    @classmethod
    def immediate(cls) -> "Timings":
        """All waits collapsed to zero, for tests and dry runs."""
        return cls(
            settle_delay=0,
            load_timeout=0,
            page_gap_delay=0,
            navigation_timeout=0,
            click_timeout=0,
        )


class SleuthSettings(BaseModel):
    timings: Timings = Field(default_factory=Timings)
    headless: bool = True
    browser_type: Literal["chromium", "firefox", "webkit"] = "chromium"
    store_path: str = "keyword_sleuth_store.json"
    log_level: str = "INFO"

    model_config = ConfigDict(frozen=True, extra="forbid")


def _env(name: str) -> str | None:
    raw = os.getenv(f"{ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return None
    return raw.strip()


def load_settings() -> SleuthSettings:
    """
    Builds settings from the environment. Unset variables keep their defaults;
    malformed ones raise pydantic.ValidationError.
    """
    timing_fields = {
        "settle_delay": _env("SETTLE_DELAY"),
        "load_timeout": _env("LOAD_TIMEOUT"),
        "page_gap_delay": _env("PAGE_GAP_DELAY"),
        "navigation_timeout": _env("NAVIGATION_TIMEOUT"),
        "click_timeout": _env("CLICK_TIMEOUT"),
    }
    fields = {
        "headless": _env("HEADLESS"),
        "browser_type": _env("BROWSER_TYPE"),
        "store_path": _env("STORE_PATH"),
        "log_level": _env("LOG_LEVEL"),
    }

    data = {k: v for k, v in fields.items() if v is not None}
    data["timings"] = Timings(**{k: v for k, v in timing_fields.items() if v is not None})
    if "browser_type" in data:
        data["browser_type"] = data["browser_type"].lower()
    if "log_level" in data:
        data["log_level"] = data["log_level"].upper()

    return SleuthSettings(**data)
