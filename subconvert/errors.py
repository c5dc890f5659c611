"""Error types shared by the fetch, reload, and render paths."""

from __future__ import annotations


class SubconvertError(Exception):
    """Base class for every error raised by subconvert."""


class ConfigError(SubconvertError):
    pass


class FetchError(SubconvertError):
    """Network, timeout, bad status, or empty body while downloading a resource."""


class ParseError(SubconvertError):
    """Malformed JSON, missing required field, or a template that does not compile."""


class CacheIOError(SubconvertError, OSError):
    """Filesystem failure while reading or writing a cache file."""


class AuthError(SubconvertError):
    pass


class NotFoundError(SubconvertError):
    """Unknown or disabled template/resource."""


class RenderError(SubconvertError):
    """Template execution failed; the underlying exception is kept as __cause__."""


class TemplateNotLoadedError(RenderError):
    """The template is configured and enabled but has never loaded successfully."""
