"""
Deep learning embedding generation for radiographs.

This module provides the default embedding provider, a headless torchvision
CNN. With ``inception_v3`` the embedding is the flattened 8x8x2048 ``Mixed_7c``
feature map, the representation the view clusters were built from.
"""

import threading
import time
from typing import Optional, Dict, Any, Tuple

import numpy as np

from ..utils.logging import get_logger
from ..utils.config import Config, set_all_seeds
from ..utils.numeric import as_embedding, flatten_features, l2_normalize
from .exceptions import BatchAbort
from .image_processor import ImageProcessor, INCEPTION, IMAGENET
from .provider import Concurrency, EmbeddingProvider, InferenceContext

logger = get_logger(__name__)

# Try to import torch, but make it optional
try:
    import torch
    import torch.nn as nn
    from torchvision import models
    TORCH_AVAILABLE = True
except ImportError:
    TORCH_AVAILABLE = False
    logger.warning("PyTorch not available. The torch embedding provider will be disabled.")

# model name -> (input size, normalization, embedding dimension)
MODEL_SPECS: Dict[str, Tuple[int, str, int]] = {
    "inception_v3": (299, INCEPTION, 8 * 8 * 2048),
    "resnet50": (224, IMAGENET, 2048),
    "resnet18": (224, IMAGENET, 512),
    "efficientnet_b0": (224, IMAGENET, 1280),
}

# Inception v3 stem and mixed blocks up to Mixed_7c ("mixed10" in Keras naming)
_INCEPTION_FEATURE_BLOCKS = (
    "Conv2d_1a_3x3", "Conv2d_2a_3x3", "Conv2d_2b_3x3", "maxpool1",
    "Conv2d_3b_1x1", "Conv2d_4a_3x3", "maxpool2",
    "Mixed_5b", "Mixed_5c", "Mixed_5d", "Mixed_6a", "Mixed_6b",
    "Mixed_6c", "Mixed_6d", "Mixed_6e", "Mixed_7a", "Mixed_7b", "Mixed_7c",
)


class TorchInferenceContext(InferenceContext):
    """Inference context bound to a loaded feature extractor."""

    def __init__(self,
                 model: 'nn.Module',
                 device: 'torch.device',
                 image_processor: ImageProcessor,
                 normalize: bool = False):
        self.model = model
        self.device = device
        self.image_processor = image_processor
        self.normalize = normalize

    def embed(self, image_bytes: bytes) -> np.ndarray:
        return self.embed_preprocessed(self.image_processor.preprocess_bytes(image_bytes))

    def embed_preprocessed(self, tensor: np.ndarray) -> np.ndarray:
        img_tensor = torch.from_numpy(np.ascontiguousarray(tensor, dtype=np.float32))
        if img_tensor.ndim == 3:
            img_tensor = img_tensor.unsqueeze(0)
        img_tensor = img_tensor.to(self.device)

        with torch.no_grad():
            features = self.model(img_tensor)

        embedding = flatten_features(features.cpu().numpy())
        if self.normalize:
            embedding = l2_normalize(embedding)

        return as_embedding(embedding)


class TorchEmbeddingProvider(EmbeddingProvider):
    """
    Generate embeddings from radiographs using torchvision CNNs.

    The model is built once per provider and shared by every context it
    opens. Eval-mode modules under ``torch.no_grad()`` keep no per-call state,
    so one context can serve several worker threads.
    """

    concurrency = Concurrency.CONCURRENT_SAFE

    def __init__(self,
                 config: Optional[Config] = None,
                 model_name: Optional[str] = None):
        """
        Initialize the embedding provider.

        Args:
            config: Configuration object
            model_name: Name of the model to use (overrides config)
        """
        self.config = config or Config()
        self.model_name = model_name or self.config.model_name

        if self.model_name not in MODEL_SPECS:
            raise ValueError(f"Unsupported model: {self.model_name}")

        input_size, normalization, self.embedding_dim = MODEL_SPECS[self.model_name]
        self.input_size = self.config.image_size or input_size
        self.image_processor = ImageProcessor(self.config, self.input_size, normalization)

        self.model = None
        self.device = None
        self._model_lock = threading.Lock()

    def _initialize_model(self) -> None:
        """Initialize the deep learning model for embedding generation."""
        if not TORCH_AVAILABLE:
            raise RuntimeError("PyTorch is required for embedding generation")

        start_time = time.time()
        set_all_seeds(self.config.seed, self.config.enable_deterministic)

        self.device = torch.device(
            self.config.device or ("cuda" if torch.cuda.is_available() else "cpu")
        )
        logger.info(f"Using device: {self.device}")

        weights = "DEFAULT" if self.config.pretrained else None

        if self.model_name == "inception_v3":
            if weights:
                base_model = models.inception_v3(weights=weights)
            else:
                base_model = models.inception_v3(weights=None, aux_logits=False, init_weights=True)
            model = nn.Sequential(*[getattr(base_model, name) for name in _INCEPTION_FEATURE_BLOCKS])

        elif self.model_name == "resnet50":
            base_model = models.resnet50(weights=weights)
            # Drop the final classification layer; avgpool output is 2048-dimensional
            model = nn.Sequential(*list(base_model.children())[:-1])

        elif self.model_name == "resnet18":
            base_model = models.resnet18(weights=weights)
            model = nn.Sequential(*list(base_model.children())[:-1])

        else:
            base_model = models.efficientnet_b0(weights=weights)
            model = nn.Sequential(*list(base_model.children())[:-1])

        model = model.to(self.device)
        model.eval()

        for param in model.parameters():
            param.requires_grad = False

        self.model = model
        logger.info(
            f"Initialized {self.model_name} (dim={self.embedding_dim}) "
            f"in {(time.time() - start_time):.2f}s"
        )

    def open_context(self) -> TorchInferenceContext:
        """
        Open an inference context, building the model on first use.

        Returns:
            Context sharing this provider's model

        Raises:
            BatchAbort: If the model cannot be built
        """
        with self._model_lock:
            if self.model is None:
                try:
                    self._initialize_model()
                except Exception as e:
                    logger.error(f"Failed to initialize model: {e}")
                    raise BatchAbort(f"Cannot build {self.model_name} inference context: {e}") from e

        return TorchInferenceContext(
            self.model, self.device, self.image_processor, self.config.normalize_embeddings
        )

    def get_info(self) -> Dict[str, Any]:
        """Describe the provider for logs and manifests."""
        return {
            'model_name': self.model_name,
            'embedding_dim': self.embedding_dim,
            'input_size': self.input_size,
            'pretrained': self.config.pretrained,
            'device': str(self.device) if self.device else None,
            'loaded': self.model is not None
        }


def create_embedding_provider(config: Optional[Config] = None,
                              model_name: Optional[str] = None) -> TorchEmbeddingProvider:
    """
    Factory function to create the default embedding provider.

    Args:
        config: Configuration object
        model_name: Model to use for embeddings

    Returns:
        TorchEmbeddingProvider instance (model is loaded lazily)
    """
    if not TORCH_AVAILABLE:
        logger.error("PyTorch is required for embedding generation")
    return TorchEmbeddingProvider(config, model_name)
