"""
Exception types shared by the supervisor, the worker and the browser hosts.
"""


class SleuthError(Exception):
    """Base class for keyword_sleuth failures."""


class NavigationError(SleuthError):
    """A tab could not be created, loaded, injected or reached."""


class ChannelClosedError(NavigationError):
    """A message was posted on a channel whose other end is gone."""


class PageUnavailableError(SleuthError):
    """The worker's page cannot be read at all (closed or crashed tab)."""
