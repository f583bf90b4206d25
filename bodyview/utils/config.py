"""
Configuration and seed management for reproducible view classification.

Centroids are only meaningful for the exact feature extractor that produced
them, so model settings, seeds and decision thresholds live together in one
validated, serializable configuration object.
"""

import os
import random
import json
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional, Dict, Any, Union

import numpy as np
import psutil

# Handle torch import gracefully
try:
    import torch
    TORCH_AVAILABLE = True
except ImportError:
    TORCH_AVAILABLE = False

from .logging import get_logger

logger = get_logger(__name__)

SUPPORTED_MODELS = ("inception_v3", "resnet50", "resnet18", "efficientnet_b0")
SERIAL_CONTEXT_STRATEGIES = ("per_worker", "serialize")
_PATH_FIELDS = ('metadata_dir', 'image_dir')


def default_num_workers() -> int:
    """Number of workers matching the available hardware parallelism."""
    return psutil.cpu_count(logical=True) or os.cpu_count() or 1


@dataclass
class Config:
    """
    Configuration settings for bodypart view classification.

    All settings required for reproducible inference, batch orchestration
    and retrieval.
    """

    # Seed settings for reproducibility
    seed: int = 42
    enable_deterministic: bool = True

    # Model settings
    model_name: str = "inception_v3"
    pretrained: bool = True
    device: Optional[str] = None  # None = cuda when available
    image_size: Optional[int] = None  # None = model default (299 for inception_v3)
    embedding_dim: Optional[int] = None  # None = inferred from centroids
    normalize_embeddings: bool = False

    # Cluster metadata layout
    metadata_dir: Path = Path("view_clustering/output")
    image_dir: Optional[Path] = None
    category_dir_prefix: str = "XR_"

    # Batch inference settings
    num_workers: Optional[int] = None  # None = psutil.cpu_count()
    serial_context_strategy: str = "per_worker"
    batch_timeout_s: Optional[float] = None
    max_file_size_mb: float = 100.0

    # Confidence thresholds on the relative gap between best and runner-up distance
    confidence_high_margin: float = 0.5
    confidence_medium_margin: float = 0.2

    # Retrieval settings
    retrieval_limit: int = 20

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.model_name not in SUPPORTED_MODELS:
            raise ValueError(f"model_name must be one of {SUPPORTED_MODELS}, got {self.model_name}")

        if self.image_size is not None and self.image_size < 32:
            raise ValueError(f"image_size must be >= 32, got {self.image_size}")

        if self.embedding_dim is not None and self.embedding_dim < 1:
            raise ValueError(f"embedding_dim must be >= 1, got {self.embedding_dim}")

        if not 0 <= self.confidence_medium_margin <= self.confidence_high_margin <= 1:
            raise ValueError(
                "confidence margins must satisfy 0 <= medium <= high <= 1, got "
                f"medium={self.confidence_medium_margin}, high={self.confidence_high_margin}"
            )

        if self.retrieval_limit < 1:
            raise ValueError(f"retrieval_limit must be >= 1, got {self.retrieval_limit}")

        if self.serial_context_strategy not in SERIAL_CONTEXT_STRATEGIES:
            raise ValueError(
                f"serial_context_strategy must be one of {SERIAL_CONTEXT_STRATEGIES}, "
                f"got {self.serial_context_strategy}"
            )

        if self.batch_timeout_s is not None and self.batch_timeout_s <= 0:
            raise ValueError(f"batch_timeout_s must be > 0, got {self.batch_timeout_s}")

        if self.num_workers is None:
            self.num_workers = default_num_workers()
        elif self.num_workers < 1:
            raise ValueError(f"num_workers must be >= 1, got {self.num_workers}")

        # Convert string paths to Path objects
        if not isinstance(self.metadata_dir, Path):
            self.metadata_dir = Path(self.metadata_dir)

        if self.image_dir and not isinstance(self.image_dir, Path):
            self.image_dir = Path(self.image_dir)

        logger.debug(f"Configuration initialized with model={self.model_name}, workers={self.num_workers}")

    def save(self, path: Union[str, Path]) -> None:
        """
        Save configuration to JSON file.

        Args:
            path: Path to save configuration

        Example:
            >>> config = Config(retrieval_limit=10)
            >>> config.save("config.json")
        """
        path = Path(path)

        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

        logger.info(f"Configuration saved to {path}")

    @classmethod
    def load(cls, path: Union[str, Path]) -> 'Config':
        """
        Load configuration from JSON file.

        Args:
            path: Path to configuration file

        Returns:
            Config instance

        Example:
            >>> config = Config.load("config.json")
        """
        path = Path(path)

        with open(path, 'r') as f:
            config_dict = json.load(f)

        for key in _PATH_FIELDS:
            if key in config_dict and config_dict[key]:
                config_dict[key] = Path(config_dict[key])

        config = cls(**config_dict)
        logger.info(f"Configuration loaded from {path}")

        return config

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert configuration to dictionary.

        Returns:
            Configuration as dictionary
        """
        config_dict = asdict(self)

        # Convert Path objects to strings with forward slashes for consistency
        for key, value in config_dict.items():
            if isinstance(value, Path):
                config_dict[key] = value.as_posix()

        return config_dict

    def update(self, **kwargs) -> None:
        """
        Update configuration parameters.

        Args:
            **kwargs: Parameters to update

        Example:
            >>> config = Config()
            >>> config.update(num_workers=2, retrieval_limit=10)
        """
        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)
                logger.debug(f"Updated {key} = {value}")
            else:
                logger.warning(f"Unknown configuration parameter: {key}")

        # Re-validate
        self.__post_init__()


def set_all_seeds(seed: int, enable_deterministic: bool = True) -> None:
    """
    Set seeds for all random number generators.

    Randomly initialised weights (pretrained=False) must be identical across
    providers for embeddings to be comparable with stored centroids.

    Args:
        seed: Random seed value
        enable_deterministic: Enable deterministic cuDNN kernels (may impact performance)
    """
    logger.debug(f"Setting all random seeds to {seed}")

    random.seed(seed)
    np.random.seed(seed)

    if TORCH_AVAILABLE:
        torch.manual_seed(seed)
        if torch.cuda.is_available():
            torch.cuda.manual_seed_all(seed)

        if enable_deterministic:
            torch.backends.cudnn.deterministic = True
            torch.backends.cudnn.benchmark = False
    else:
        logger.warning("PyTorch not available - seeds set for Python and NumPy only")

    os.environ['PYTHONHASHSEED'] = str(seed)


def get_default_config() -> Config:
    """
    Get default configuration for MURA radiograph view clustering.

    Returns:
        Default Config instance

    Example:
        >>> config = get_default_config()
        >>> config.model_name
        'inception_v3'
    """
    return Config()
