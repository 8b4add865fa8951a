"""
Request Context Module

Explicit per-call context passed down the call chain. Replaces thread-local
correlation ids: every operation takes a context argument instead of
reading global state.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


def _new_correlation_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class RequestContext:
    """Immutable context for one caller request"""
    correlation_id: str = field(default_factory=_new_correlation_id)
    source: str = "internal"

    @classmethod
    def new(cls, correlation_id: Optional[str] = None, source: str = "internal") -> 'RequestContext':
        """Create a context, generating a correlation id when none is given"""
        if correlation_id:
            return cls(correlation_id=correlation_id, source=source)
        return cls(source=source)

    def log_fields(self) -> Dict[str, Any]:
        """Fields merged into structured log records"""
        return {"source": self.source}


def ensure_context(ctx: Optional[RequestContext]) -> RequestContext:
    """Return ctx, or a fresh context for callers that did not pass one"""
    return ctx if ctx is not None else RequestContext.new()
