"""
Error taxonomy for classification, batch inference and retrieval.

Integrity errors are fatal for the requested category and are never retried.
Per-item batch errors are absorbed by the orchestrator; everything else
propagates to the caller.
"""

from pathlib import Path
from typing import Any, Hashable, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .batch import BatchResult
    from .models import Category


class BodyViewError(Exception):
    """Base class for all bodyview errors."""


class DataIntegrityError(BodyViewError):
    """Cluster metadata is missing, unparsable or dimensionally inconsistent."""

    def __init__(self,
                 message: str,
                 category: Optional['Category'] = None,
                 path: Optional[Path] = None):
        self.category = category
        self.path = path
        prefix = f"[{category}] " if category is not None else ""
        super().__init__(f"{prefix}{message}")


class EmptyCategoryError(BodyViewError):
    """Classification requested for a category with no registered clusters."""

    def __init__(self, category: 'Category'):
        self.category = category
        super().__init__(f"No clusters registered for bodypart {category}")


class ItemFailure(BodyViewError):
    """A single batch item could not be loaded, preprocessed or embedded."""

    def __init__(self, identity: Hashable, reason: Any):
        self.identity = identity
        self.reason = str(reason)
        super().__init__(f"Item failed: {self.reason}")


class BatchAbort(BodyViewError):
    """The shared inference context could not be created; the batch is aborted."""


class BatchTimeoutError(BodyViewError):
    """The batch deadline expired; ``partial`` holds the results collected so far."""

    def __init__(self, timeout: float, partial: 'BatchResult'):
        self.timeout = timeout
        self.partial = partial
        super().__init__(
            f"Batch exceeded {timeout:.2f}s deadline with {len(partial)} embeddings collected"
        )


class RetrievalError(BodyViewError):
    """Invalid retrieval parameters or no viable candidates."""
