"""
Embedding provider boundary.

A provider turns encoded image bytes into a fixed-length embedding. Inference
goes through an ``InferenceContext`` so that expensive setup (model loading,
device placement) is paid once per batch instead of once per image. Each
provider declares whether one context may be used from several threads at
the same time.
"""

from abc import ABC, abstractmethod
from enum import Enum

import numpy as np


class Concurrency(Enum):
    """Thread-safety contract of a provider's inference contexts."""

    CONCURRENT_SAFE = "concurrent_safe"  # one context may serve many threads at once
    SERIAL_ONLY = "serial_only"  # a context must only ever run one call at a time


class InferenceContext(ABC):
    """A ready-to-run inference session."""

    @abstractmethod
    def embed(self, image_bytes: bytes) -> np.ndarray:
        """
        Decode, preprocess and embed one encoded image.

        Args:
            image_bytes: PNG/JPEG file contents

        Returns:
            Embedding vector
        """

    @abstractmethod
    def embed_preprocessed(self, tensor: np.ndarray) -> np.ndarray:
        """
        Embed an input that was already preprocessed for the network.

        Args:
            tensor: Model input, e.g. (1, C, H, W) float32

        Returns:
            Embedding vector
        """

    def close(self) -> None:
        """Release resources held by the context."""

    def __enter__(self) -> 'InferenceContext':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class EmbeddingProvider(ABC):
    """Black-box mapping from an image to an embedding vector."""

    concurrency: Concurrency = Concurrency.SERIAL_ONLY

    @abstractmethod
    def open_context(self) -> InferenceContext:
        """
        Create an inference context.

        Raises:
            Exception: Any failure here is a context-level failure and aborts a batch
        """

    def embed(self, image_bytes: bytes) -> np.ndarray:
        """
        Embed a single image with a short-lived context.

        Args:
            image_bytes: PNG/JPEG file contents

        Returns:
            Embedding vector
        """
        with self.open_context() as context:
            return context.embed(image_bytes)
