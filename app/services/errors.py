"""Exception taxonomy for the audit pipeline.

Every error carries a short ``message`` and a ``details`` dict.  The
``user_message`` property is the human-readable text surfaced to the
dashboard; routers translate each class to an HTTP status code.
"""

from typing import Any, Dict, List, Optional

TIMEOUT_MESSAGE = "request timed out"
CONNECTION_MESSAGE = "network connection failed"


class AuditPipelineError(Exception):
    """Base class for all pipeline errors."""

    user_message = "Something went wrong while auditing the site. Please try again."

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class NetworkError(AuditPipelineError):
    """All crawl endpoints were exhausted or timed out."""

    def __init__(
        self,
        message: str,
        endpoints: List[str],
        last_error: Optional[BaseException] = None,
    ):
        self.endpoints = list(endpoints)
        self.last_error = last_error
        super().__init__(
            message,
            {"endpoints": self.endpoints, "last_error": repr(last_error) if last_error else None},
        )

    @property
    def timed_out(self) -> bool:
        return self.message == TIMEOUT_MESSAGE

    @property
    def user_message(self) -> str:  # type: ignore[override]
        if self.timed_out:
            return "Request timed out. The scraping service may be overloaded. Please try again."
        return "Network connection lost. Please check your internet connection and try again."


class MixedContentError(AuditPipelineError):
    """A secure origin tried to call a plain-HTTP endpoint."""

    user_message = (
        "The scraping service is configured with an insecure (http) endpoint "
        "and cannot be reached from a secure page."
    )


class SerializationError(AuditPipelineError):
    """The project summary patch could not be serialized to JSON."""

    user_message = "The crawl results could not be saved because they are not valid JSON."


class FeatureUnavailable(AuditPipelineError):
    """A gated feature was requested without the matching entitlement."""

    def __init__(self, feature_id: str):
        self.feature_id = feature_id
        super().__init__(f"Feature '{feature_id}' is not available on this plan.", {"feature": feature_id})

    @property
    def user_message(self) -> str:  # type: ignore[override]
        return f"Upgrade your plan to use '{self.feature_id}'."


class PersistenceError(AuditPipelineError):
    """A durable write failed after the computation itself succeeded."""

    user_message = "Results were computed but could not be saved. They may disappear after a reload."


class CrawlRejected(AuditPipelineError):
    """``run()`` was called for a project that is not eligible for a crawl."""

    user_message = "A crawl for this project is already running or has finished."
