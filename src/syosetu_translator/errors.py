"""Error taxonomy shared by the site adapters, translator and pipeline."""

from enum import Enum
from typing import Optional


class FetchErrorKind(str, Enum):
    """Why a site request failed."""

    NETWORK = "network"
    NOT_FOUND = "not_found"
    PARSE_FAILURE = "parse_failure"


class TranslateErrorKind(str, Enum):
    """Why a translation API call failed."""

    RATE_LIMITED = "rate_limited"
    AUTH = "auth"
    TRANSIENT = "transient"
    INVALID_RESPONSE = "invalid_response"


class PersistenceErrorKind(str, Enum):
    """Why a storage operation failed."""

    IO_FAILURE = "io_failure"


class PipelineError(Exception):
    """Base class for errors the pipeline knows how to classify."""

    kind: Enum

    @property
    def retryable(self) -> bool:
        return False


_FETCH_RETRYABLE = {
    FetchErrorKind.NETWORK: True,
    FetchErrorKind.NOT_FOUND: False,
    FetchErrorKind.PARSE_FAILURE: False,
}


class FetchError(PipelineError):
    """A site request or page parse failed."""

    def __init__(
        self,
        kind: FetchErrorKind,
        message: str,
        retryable: Optional[bool] = None,
        url: Optional[str] = None,
    ):
        """Initialize the error.

        Args:
            kind: Failure category
            message: Human readable detail
            retryable: Override the default retry policy of the kind
            url: Requested URL, if any
        """
        super().__init__(message)
        self.kind = kind
        self.url = url
        self._retryable = _FETCH_RETRYABLE[kind] if retryable is None else retryable

    @property
    def retryable(self) -> bool:
        return self._retryable


class TranslateError(PipelineError):
    """A translation API call failed."""

    def __init__(
        self,
        kind: TranslateErrorKind,
        message: str,
        retry_after: Optional[float] = None,
    ):
        """Initialize the error.

        Args:
            kind: Failure category
            message: Human readable detail
            retry_after: Seconds the API asked us to wait (rate limits only)
        """
        super().__init__(message)
        self.kind = kind
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return self.kind != TranslateErrorKind.AUTH

    @property
    def fatal(self) -> bool:
        """Auth failures would repeat on every call, so they end the run."""
        return self.kind == TranslateErrorKind.AUTH


class PersistenceError(PipelineError):
    """Durable storage could not be read or written."""

    def __init__(self, message: str, kind: PersistenceErrorKind = PersistenceErrorKind.IO_FAILURE):
        super().__init__(message)
        self.kind = kind
