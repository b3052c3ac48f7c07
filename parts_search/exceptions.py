"""
Parts Search - Custom Exceptions

Hierarchical exception classes for structured error handling in the search
pipeline. Adapter errors are recoverable: the orchestrator isolates them and
the failing backend simply contributes no candidates. Request errors are not
recoverable and surface to the caller of ``search()``.

Exception Hierarchy:
    PartsSearchError (base)
    ├── InvalidSearchRequest
    ├── TenantNotFoundError
    ├── SearchFailedError
    ├── AdapterNotConfigured
    ├── AdapterError
    │   ├── KeywordSearchError
    │   ├── SemanticSearchError
    │   ├── GraphSearchError
    │   └── WebSearchError
    ├── EmbeddingError
    └── LanguageModelError
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class PartsSearchError(Exception):
    """
    Base exception for all parts search errors.

    Attributes:
        message: Human-readable error description
        source: Backend or stage that raised it (postgres, qdrant, llm, ...)
        query: The query being served, when there is one
        cause: The underlying exception
    """

    recoverable = True

    def __init__(
        self,
        message: str,
        *,
        source: Optional[str] = None,
        query: Optional[str] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        self.message = message
        self.source = source
        self.query = query
        self.cause = cause
        text = f"{message} (caused by {type(cause).__name__}: {cause})" if cause else message
        super().__init__(text)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "source": self.source,
            "query": self.query,
            "recoverable": self.recoverable,
        }


class InvalidSearchRequest(PartsSearchError):
    """Mandatory search inputs are missing or malformed."""

    recoverable = False

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message, source="request")
        self.field = field


class TenantNotFoundError(PartsSearchError):
    """The tenant id does not resolve to a known organization."""

    recoverable = False

    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"Tenant not found: {tenant_id}", source="credentials")
        self.tenant_id = tenant_id


class SearchFailedError(PartsSearchError):
    """Unexpected failure while running a search."""

    recoverable = False

    def __init__(self, message: str, *, query: Optional[str] = None, cause: Optional[Exception] = None) -> None:
        super().__init__(message, source="orchestrator", query=query, cause=cause)


class AdapterNotConfigured(PartsSearchError):
    """The tenant has no credentials for this adapter; it is left out of the fan-out."""

    def __init__(self, backend: str, tenant_id: Optional[str] = None) -> None:
        suffix = f" for tenant {tenant_id}" if tenant_id else ""
        super().__init__(f"{backend} adapter is not configured{suffix}", source=backend)
        self.backend = backend


class AdapterError(PartsSearchError):
    """Base exception for retrieval backend failures."""

    backend_name = "adapter"

    def __init__(self, message: str, *, query: Optional[str] = None, cause: Optional[Exception] = None) -> None:
        super().__init__(message, source=self.backend_name, query=query, cause=cause)


class KeywordSearchError(AdapterError):
    """Structured catalog query failed."""

    backend_name = "postgres"


class SemanticSearchError(AdapterError):
    """Vector index query failed."""

    backend_name = "qdrant"


class GraphSearchError(AdapterError):
    """Graph query failed with something other than a connection-level error."""

    backend_name = "neo4j"


class WebSearchError(AdapterError):
    """Web search provider call failed."""

    backend_name = "serper"


class EmbeddingError(PartsSearchError):
    """Dense or sparse query encoding failed."""

    def __init__(self, message: str, *, model: Optional[str] = None, cause: Optional[Exception] = None) -> None:
        super().__init__(message, source=model or "embedding", cause=cause)
        self.model = model


class LanguageModelError(PartsSearchError):
    """Language model call failed, timed out, or returned unusable output."""

    def __init__(self, message: str, *, stage: Optional[str] = None, cause: Optional[Exception] = None) -> None:
        super().__init__(message, source=stage or "llm", cause=cause)
        self.stage = stage
