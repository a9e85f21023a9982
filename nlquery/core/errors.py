"""Error taxonomy shared by the query engine and its boundary layers."""

from __future__ import annotations

from typing import Any, Sequence

PUBLIC_ERROR_KINDS = {
    "invalid_request",
    "off_topic",
    "restricted_operation",
    "rate_limit",
    "internal_error",
}


class QueryEngineError(Exception):
    """Base class for failures raised while answering a question."""

    kind = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidRequestError(QueryEngineError):
    kind = "invalid_request"


class FollowUpLimitError(InvalidRequestError):
    """Raised when a conversation already used its follow-up budget."""

    def __init__(self, depth: int, limit: int) -> None:
        super().__init__(
            f"Follow-up limit reached ({limit} follow-ups per question). Start a new question."
        )
        self.depth = depth
        self.limit = limit


class OffTopicError(QueryEngineError):
    kind = "off_topic"


class RestrictedOperationError(QueryEngineError):
    kind = "restricted_operation"

    def __init__(self, message: str, keyword: str) -> None:
        super().__init__(message)
        self.keyword = keyword


class RateLimitError(QueryEngineError):
    kind = "rate_limit"

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class RequestTimeoutError(QueryEngineError):
    """Raised when the overall request deadline elapses between pipeline stages."""


class NoMatchError(QueryEngineError):
    kind = "no_match"

    def __init__(self, term: str, argument: str | None = None) -> None:
        super().__init__(f"No data matched '{term}'")
        self.term = term
        self.argument = argument


class AmbiguousEntityError(QueryEngineError):
    kind = "ambiguous_entity"

    def __init__(self, term: str, options: Sequence[Any], argument: str | None = None) -> None:
        super().__init__(f"'{term}' matches more than one column")
        self.term = term
        self.options = list(options)
        self.argument = argument


class DataSourceError(QueryEngineError):
    """Non-transient data source failure (syntax, constraint, unknown column)."""


class TransientDataSourceError(DataSourceError):
    kind = "transient_datasource_error"

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class ClassifierMalformedOutputError(QueryEngineError):
    kind = "classifier_malformed_output"


class ClassifierUnavailableError(QueryEngineError):
    """The classification service could not be reached or failed outright."""


class CorrectionFailedError(QueryEngineError):
    """A corrected classification still did not produce rows."""


def public_error_kind(exc: BaseException) -> str:
    """Map an exception to the error kinds exposed at the request boundary."""

    kind = getattr(exc, "kind", "internal_error")
    if kind in PUBLIC_ERROR_KINDS:
        return kind
    return "internal_error"