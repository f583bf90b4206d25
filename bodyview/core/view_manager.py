"""
Central coordinator for bodypart view classification.

Wires the cluster store, embedding provider, classifier, batch orchestrator
and retrieval engine together behind a single interface.
"""

import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from ..utils.logging import get_logger, phi_safe_identifier, MetricsLogger
from ..utils.config import Config
from .batch import BatchInferenceOrchestrator, BatchItem, BatchMode, BatchResult
from .classifier import NearestCentroidClassifier
from .cluster_store import ClusterStore
from .embedding_engine import create_embedding_provider
from .exceptions import BodyViewError, ItemFailure
from .models import BodypartView, Category, Classification
from .provider import EmbeddingProvider
from .retrieval import RetrievalEngine

logger = get_logger(__name__)

ImageInput = Union[str, Path, bytes]


class ViewManager:
    """
    Manages the complete view classification pipeline for radiographs.

    Coordinates all components and provides a unified interface.
    """

    def __init__(self,
                 config: Optional[Config] = None,
                 provider: Optional[EmbeddingProvider] = None,
                 store: Optional[ClusterStore] = None):
        """
        Initialize the view manager.

        Args:
            config: Configuration object
            provider: Embedding provider (defaults to the torch provider)
            store: Cluster store (defaults to one rooted at config.metadata_dir)
        """
        self.config = config or Config()

        # Initialize components
        self.store = store or ClusterStore(self.config)
        self.provider = provider or create_embedding_provider(self.config)
        self.orchestrator = BatchInferenceOrchestrator(self.provider, self.config)
        self.classifier = NearestCentroidClassifier(self.store, self.config, self.provider)
        self.retrieval = RetrievalEngine(self.store, self.classifier, self.orchestrator, self.config)

        # Metrics tracking
        self.metrics_logger = MetricsLogger(logger)

        logger.info(f"ViewManager initialized with metadata at {self.config.metadata_dir}")

    def _read(self, image: ImageInput) -> bytes:
        if isinstance(image, (bytes, bytearray)):
            return bytes(image)
        return self.orchestrator.image_processor.read_image_bytes(image)

    def embed_image(self, image: ImageInput):
        """
        Embed one image (path or encoded bytes).

        Args:
            image: Image path or PNG/JPEG bytes

        Returns:
            Embedding vector

        Raises:
            ItemFailure: If the image cannot be read, decoded or embedded
        """
        image_bytes = self._read(image)
        try:
            return self.provider.embed(image_bytes)
        except BodyViewError:
            raise
        except Exception as e:
            identity = "bytes" if isinstance(image, (bytes, bytearray)) else phi_safe_identifier(image)
            raise ItemFailure(identity, f"cannot embed image_{identity}: {e}") from e

    def classify_image(self,
                       image: ImageInput,
                       bodypart: Union[Category, str]) -> Classification:
        """
        Classify an image into a view-cluster of its bodypart.

        Args:
            image: Image path or PNG/JPEG bytes
            bodypart: Category or its name

        Returns:
            Classification with confidence
        """
        start_time = time.time()
        category = Category.parse(bodypart, self.config.category_dir_prefix)

        result = self.classifier.classify(self.embed_image(image), category)

        self.metrics_logger.log_operation(
            "classify",
            (time.time() - start_time) * 1000,
            success=True,
            details={'bodypart': category.value, 'label': result.label,
                     'confidence': result.confidence.name}
        )
        return result

    def closest_image(self,
                      image: ImageInput,
                      bodypart: Union[Category, str],
                      limit: Optional[int] = None) -> str:
        """
        Find the most visually similar reference image in the image's cluster.

        The query is embedded once and reused for classification and ranking.

        Args:
            image: Image path or PNG/JPEG bytes
            bodypart: Category or its name
            limit: Maximum number of cluster members to compare

        Returns:
            Filename of the closest cluster member
        """
        start_time = time.time()
        category = Category.parse(bodypart, self.config.category_dir_prefix)

        best = self.retrieval.find_closest(self.embed_image(image), category, limit)

        self.metrics_logger.log_operation(
            "closest_image",
            (time.time() - start_time) * 1000,
            success=True,
            details={'bodypart': category.value, 'match': best}
        )
        return best

    def cluster_files(self, view: BodypartView) -> List[str]:
        """Image filenames belonging to a view-cluster."""
        return self.store.cluster_files(view)

    def view_index(self) -> Dict[str, BodypartView]:
        """Filename -> view index over all categories."""
        return self.store.view_index()

    def embed_images(self,
                     image_paths: Iterable[Union[str, Path]],
                     mode: Union[BatchMode, str] = BatchMode.CONCURRENT,
                     timeout: Optional[float] = None) -> BatchResult:
        """
        Embed many image files with the batch orchestrator.

        Args:
            image_paths: Image files; identities are their string paths
            mode: Sequential or concurrent execution
            timeout: Batch deadline in seconds

        Returns:
            BatchResult keyed by path string
        """
        items = [BatchItem.from_path(path) for path in dict.fromkeys(str(p) for p in image_paths)]
        result = self.orchestrator.run_batch(items, mode=mode, timeout=timeout)

        for identity, failure in result.failures.items():
            logger.debug(f"Failed image_{phi_safe_identifier(str(identity))}: {failure.reason}")

        return result


def create_view_manager(config: Optional[Config] = None,
                        provider: Optional[EmbeddingProvider] = None) -> ViewManager:
    """
    Factory function to create a view manager.

    Args:
        config: Configuration object
        provider: Embedding provider (defaults to the torch provider)

    Returns:
        ViewManager instance
    """
    return ViewManager(config, provider)
