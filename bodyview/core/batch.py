"""
Batch inference over many images with one shared inference context.

Items run either sequentially in input order or on a bounded thread pool.
Per-item failures (missing or corrupt images, provider errors) are logged and
recorded without stopping the batch; failing to open the inference context
aborts the whole batch.

Context sharing in concurrent mode follows the provider's contract:

- ``CONCURRENT_SAFE``: all workers share one context.
- ``SERIAL_ONLY`` + ``per_worker``: each worker thread opens its own context
  on first use and keeps it for the rest of the batch.
- ``SERIAL_ONLY`` + ``serialize``: one context behind a mutex; calls never
  overlap, so there is no inference parallelism.
"""

import threading
import time
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed, TimeoutError as FuturesTimeoutError
from contextlib import nullcontext
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Hashable, Iterable, Iterator, List, Optional, Union

import numpy as np

from ..utils.logging import get_logger, phi_safe_identifier, log_inference, MetricsLogger
from ..utils.config import Config
from ..utils.numeric import as_embedding
from .exceptions import BatchAbort, BatchTimeoutError, ItemFailure
from .image_processor import ImageProcessor
from .provider import Concurrency, EmbeddingProvider, InferenceContext

logger = get_logger(__name__)

Payload = Union[bytes, np.ndarray, Path]


class BatchMode(Enum):
    """Execution strategy for a batch."""

    SEQUENTIAL = "sequential"
    CONCURRENT = "concurrent"


@dataclass(frozen=True)
class BatchItem:
    """
    One unit of batch work.

    The payload is encoded image bytes, an already-preprocessed tensor, or a
    path that the orchestrator reads itself.
    """

    identity: Hashable
    payload: Payload

    @classmethod
    def from_path(cls, path: Union[str, Path], identity: Optional[Hashable] = None) -> 'BatchItem':
        path = Path(path)
        return cls(identity if identity is not None else str(path), path)

    @classmethod
    def from_bytes(cls, identity: Hashable, image_bytes: bytes) -> 'BatchItem':
        return cls(identity, bytes(image_bytes))

    @classmethod
    def from_tensor(cls, identity: Hashable, tensor: np.ndarray) -> 'BatchItem':
        return cls(identity, np.asarray(tensor, dtype=np.float32))


@dataclass
class BatchResult(Mapping):
    """Read-only mapping of item identity to embedding, plus per-item failures."""

    embeddings: Dict[Hashable, np.ndarray] = field(default_factory=dict)
    failures: Dict[Hashable, ItemFailure] = field(default_factory=dict)
    mode: BatchMode = BatchMode.SEQUENTIAL
    elapsed_ms: float = 0.0

    def __getitem__(self, identity: Hashable) -> np.ndarray:
        return self.embeddings[identity]

    def __iter__(self) -> Iterator[Hashable]:
        return iter(self.embeddings)

    def __len__(self) -> int:
        return len(self.embeddings)

    def summary(self) -> Dict[str, object]:
        """Counts and timing for logs and CLI output."""
        return {
            'mode': self.mode.value,
            'successful': len(self.embeddings),
            'failed': len(self.failures),
            'elapsed_ms': round(self.elapsed_ms, 2)
        }


class BatchInferenceOrchestrator:
    """
    Apply an embedding provider to many items, reusing inference contexts.
    """

    def __init__(self,
                 provider: EmbeddingProvider,
                 config: Optional[Config] = None,
                 image_processor: Optional[ImageProcessor] = None):
        """
        Initialize the orchestrator.

        Args:
            provider: Embedding provider
            config: Configuration object
            image_processor: Reader for path payloads
        """
        self.provider = provider
        self.config = config or Config()
        self.image_processor = image_processor or ImageProcessor(self.config)
        self.metrics_logger = MetricsLogger(logger)

    @property
    def context_strategy(self) -> str:
        """How concurrent workers get a context: shared, per_worker or serialize."""
        if self.provider.concurrency is Concurrency.CONCURRENT_SAFE:
            return "shared"
        return self.config.serial_context_strategy

    def run_batch(self,
                  items: Iterable[BatchItem],
                  mode: Union[BatchMode, str] = BatchMode.SEQUENTIAL,
                  timeout: Optional[float] = None) -> BatchResult:
        """
        Embed every item; block until all finish or the batch aborts.

        Args:
            items: Work items with unique identities
            mode: Sequential or concurrent execution
            timeout: Deadline in seconds (defaults to config.batch_timeout_s)

        Returns:
            BatchResult mapping identity -> embedding, with per-item failures

        Raises:
            ValueError: If identities are not unique
            BatchAbort: If an inference context cannot be created
            BatchTimeoutError: If the deadline expires (carries partial results)
        """
        items = list(items)
        mode = BatchMode(mode)
        timeout = timeout if timeout is not None else self.config.batch_timeout_s

        seen = set()
        for item in items:
            if item.identity in seen:
                raise ValueError(f"Duplicate batch identity: {phi_safe_identifier(str(item.identity))}")
            seen.add(item.identity)

        result = BatchResult(mode=mode)
        if not items:
            return result

        start_time = time.monotonic()
        deadline = start_time + timeout if timeout is not None else None
        logger.info(f"Running {mode.value} batch of {len(items)} items")

        try:
            if mode is BatchMode.SEQUENTIAL:
                self._run_sequential(items, result, deadline, timeout)
            else:
                self._run_concurrent(items, result, deadline, timeout)
        finally:
            result.elapsed_ms = (time.monotonic() - start_time) * 1000

        self.metrics_logger.log_operation(
            f"{mode.value}_batch", result.elapsed_ms, success=True, details=result.summary()
        )
        if result.elapsed_ms > 0:
            self.metrics_logger.log_performance(
                "images_per_second", len(result) / (result.elapsed_ms / 1000)
            )

        if result.failures:
            logger.warning(f"{len(result.failures)}/{len(items)} items failed and were skipped")
        return result

    def _open_context(self) -> InferenceContext:
        """Open a provider context; any failure aborts the batch."""
        try:
            return self.provider.open_context()
        except BatchAbort:
            raise
        except Exception as e:
            logger.error(f"Failed to open inference context: {e}")
            raise BatchAbort(f"Cannot open inference context: {e}") from e

    def _embed_item(self, context: InferenceContext, item: BatchItem) -> np.ndarray:
        """
        Embed one item.

        Raises:
            ItemFailure: For any load/preprocess/inference error of this item
            BatchAbort: If the provider reports a context-level failure
        """
        try:
            payload = item.payload
            if isinstance(payload, Path):
                payload = self.image_processor.read_image_bytes(payload)

            if isinstance(payload, np.ndarray):
                embedding = context.embed_preprocessed(payload)
            else:
                embedding = context.embed(payload)

            return as_embedding(embedding)
        except BatchAbort:
            raise
        except ItemFailure as e:
            raise ItemFailure(item.identity, e.reason) from e
        except Exception as e:
            raise ItemFailure(item.identity, f"{type(e).__name__}: {e}") from e

    def _record_failure(self, result: BatchResult, failure: ItemFailure) -> None:
        result.failures[failure.identity] = failure
        logger.warning(
            f"Skipping image_{phi_safe_identifier(str(failure.identity))}: {failure.reason}"
        )

    def _run_sequential(self,
                        items: List[BatchItem],
                        result: BatchResult,
                        deadline: Optional[float],
                        timeout: Optional[float]) -> None:
        """Process items one at a time in input order with a single context."""
        with self._open_context() as context:
            for item in items:
                if deadline is not None and time.monotonic() >= deadline:
                    raise BatchTimeoutError(timeout, result)

                item_start = time.monotonic()
                try:
                    embedding = self._embed_item(context, item)
                except ItemFailure as failure:
                    self._record_failure(result, failure)
                    continue

                result.embeddings[item.identity] = embedding
                log_inference(
                    logger, str(item.identity), (time.monotonic() - item_start) * 1000,
                    {'embedding_dim': len(embedding), 'mode': BatchMode.SEQUENTIAL.value}
                )

    def _run_concurrent(self,
                        items: List[BatchItem],
                        result: BatchResult,
                        deadline: Optional[float],
                        timeout: Optional[float]) -> None:
        """Process items on a bounded thread pool."""
        strategy = self.context_strategy
        results_lock = threading.Lock()
        cancelled = threading.Event()
        opened: List[InferenceContext] = []
        worker_state = threading.local()

        shared_context = None
        if strategy in ("shared", "serialize"):
            shared_context = self._open_context()
            opened.append(shared_context)
        context_lock = threading.Lock() if strategy == "serialize" else None

        def acquire_context() -> InferenceContext:
            if shared_context is not None:
                return shared_context
            context = getattr(worker_state, "context", None)
            if context is None:
                context = self._open_context()
                worker_state.context = context
                with results_lock:
                    opened.append(context)
            return context

        def run_item(item: BatchItem) -> None:
            if cancelled.is_set():
                return

            context = acquire_context()
            item_start = time.monotonic()
            try:
                with context_lock or nullcontext():
                    embedding = self._embed_item(context, item)
            except ItemFailure as failure:
                with results_lock:
                    self._record_failure(result, failure)
                return

            with results_lock:
                result.embeddings[item.identity] = embedding
            log_inference(
                logger, str(item.identity), (time.monotonic() - item_start) * 1000,
                {'embedding_dim': len(embedding), 'mode': BatchMode.CONCURRENT.value,
                 'worker': threading.current_thread().name}
            )

        workers = min(self.config.num_workers, len(items))
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="bodyview-infer")
        try:
            futures = [executor.submit(run_item, item) for item in items]
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())

            try:
                for future in as_completed(futures, timeout=remaining):
                    future.result()
            except FuturesTimeoutError:
                cancelled.set()
                with results_lock:
                    partial = BatchResult(
                        embeddings=dict(result.embeddings),
                        failures=dict(result.failures),
                        mode=BatchMode.CONCURRENT,
                        elapsed_ms=timeout * 1000
                    )
                logger.warning(f"Batch deadline of {timeout:.2f}s expired; cancelling outstanding items")
                raise BatchTimeoutError(timeout, partial) from None
            except Exception:
                # BatchAbort from a worker's context, or an unexpected error
                cancelled.set()
                raise
        finally:
            # In-flight items finish; queued ones are cancelled
            executor.shutdown(wait=True, cancel_futures=True)
            for context in opened:
                context.close()
