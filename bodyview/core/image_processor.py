"""
Radiograph loading and preprocessing with PHI-safe logging.

This module reads image files for batch inference and converts encoded
images into normalized network inputs.
"""

import io
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple, Dict, Any, Union, List

import numpy as np
from PIL import Image, UnidentifiedImageError

from ..utils.logging import get_logger, phi_safe_identifier
from ..utils.config import Config
from .exceptions import ItemFailure

logger = get_logger(__name__)

# Normalization schemes per network family
INCEPTION = "inception"
IMAGENET = "imagenet"


@dataclass
class ImageMetadata:
    """Metadata for a decoded radiograph."""

    file_hash: str
    width: int = 0
    height: int = 0
    mode: str = "unknown"
    format: str = "unknown"
    size_bytes: int = 0
    processing_time_ms: float = 0.0
    warnings: List[str] = field(default_factory=list)

    def to_safe_dict(self) -> Dict[str, Any]:
        """Convert to dictionary with PHI-safe values."""
        return {
            'file_hash': self.file_hash,
            'width': self.width,
            'height': self.height,
            'mode': self.mode,
            'format': self.format,
            'size_kb': round(self.size_bytes / 1024, 2),
            'processing_time_ms': round(self.processing_time_ms, 2),
            'warning_count': len(self.warnings)
        }


class ImageProcessor:
    """
    Handles radiograph loading and preprocessing.

    Radiographs are mostly single-channel; they are expanded to RGB because
    the feature extractors are ImageNet-pretrained three-channel networks.
    """

    def __init__(self,
                 config: Optional[Config] = None,
                 image_size: int = 299,
                 normalization: str = INCEPTION):
        """
        Initialize the image processor.

        Args:
            config: Configuration object. If None, uses defaults.
            image_size: Square side length of the network input
            normalization: "inception" (x/127.5 - 1) or "imagenet" (mean/std)
        """
        if normalization not in (INCEPTION, IMAGENET):
            raise ValueError(f"Invalid normalization: {normalization}")

        self.config = config or Config()
        self.image_size = image_size
        self.normalization = normalization

        # ImageNet normalization parameters
        self.mean = np.array([0.485, 0.456, 0.406], dtype=np.float32)
        self.std = np.array([0.229, 0.224, 0.225], dtype=np.float32)

        logger.debug(f"ImageProcessor initialized with image_size={image_size}, normalization={normalization}")

    def read_image_bytes(self, image_path: Union[str, Path]) -> bytes:
        """
        Read an encoded image from disk.

        Decoding is deferred to the inference context; only file-level
        checks happen here.

        Args:
            image_path: Path to the image file

        Returns:
            Raw file contents

        Raises:
            ItemFailure: If the file is missing, empty, too large or unreadable
        """
        image_path = Path(image_path)
        file_hash = phi_safe_identifier(image_path)

        if not image_path.is_file():
            raise ItemFailure(image_path, f"file not found: {file_hash}")

        size_bytes = image_path.stat().st_size
        if size_bytes == 0:
            raise ItemFailure(image_path, f"empty file: {file_hash}")

        if size_bytes > self.config.max_file_size_mb * 1024 * 1024:
            raise ItemFailure(image_path, f"file too large ({size_bytes} bytes): {file_hash}")

        try:
            return image_path.read_bytes()
        except OSError as e:
            raise ItemFailure(image_path, f"read error for {file_hash}: {e}") from e

    def decode(self, image_bytes: bytes) -> Tuple[Image.Image, ImageMetadata]:
        """
        Decode image bytes to an RGB PIL image.

        Args:
            image_bytes: PNG/JPEG file contents

        Returns:
            Tuple of (RGB image, metadata)

        Raises:
            ValueError: If the bytes are not a decodable image
        """
        start_time = time.time()
        metadata = ImageMetadata(
            file_hash=phi_safe_identifier(str(len(image_bytes)) + image_bytes[:64].hex()),
            size_bytes=len(image_bytes)
        )

        try:
            img = Image.open(io.BytesIO(image_bytes))
            img.load()
        except (UnidentifiedImageError, OSError) as e:
            raise ValueError(f"Cannot decode image: {e}") from e

        metadata.format = img.format or "unknown"
        metadata.mode = img.mode
        metadata.width, metadata.height = img.size

        if img.mode != 'RGB':
            # Grayscale, 16-bit, palette and alpha radiographs
            if img.mode in ('I;16', 'I'):
                arr = np.asarray(img, dtype=np.float32)
                peak = arr.max() if arr.size else 0
                arr = arr * (255.0 / peak) if peak > 0 else arr
                img = Image.fromarray(arr.astype(np.uint8))
                metadata.warnings.append("Rescaled high bit-depth image to 8 bits")
            img = img.convert('RGB')

        metadata.processing_time_ms = (time.time() - start_time) * 1000
        return img, metadata

    def preprocess(self,
                   img: Image.Image,
                   target_size: Optional[int] = None) -> np.ndarray:
        """
        Preprocess image for model input.

        Args:
            img: RGB PIL Image
            target_size: Target size for resizing. If None, uses processor default.

        Returns:
            Preprocessed numpy array (1, C, H, W) float32
        """
        target_size = target_size or self.image_size

        if img.size != (target_size, target_size):
            img = img.resize((target_size, target_size), Image.Resampling.BILINEAR)

        img_array = np.asarray(img, dtype=np.float32)

        if img_array.ndim == 2:
            img_array = np.stack([img_array] * 3, axis=-1)

        if self.normalization == INCEPTION:
            # X = ((X / 255.0) - 0.5) / 0.5
            img_array = img_array / 127.5 - 1.0
        else:
            img_array = (img_array / 255.0 - self.mean) / self.std

        # HWC -> CHW, then add batch dimension
        img_array = img_array.transpose(2, 0, 1)
        return np.expand_dims(img_array, axis=0).astype(np.float32)

    def preprocess_bytes(self, image_bytes: bytes) -> np.ndarray:
        """
        Decode and preprocess encoded image bytes in one step.

        Args:
            image_bytes: PNG/JPEG file contents

        Returns:
            Preprocessed numpy array (1, C, H, W)
        """
        img, metadata = self.decode(image_bytes)
        logger.debug(f"Decoded image: {metadata.to_safe_dict()}")
        for warning in metadata.warnings:
            logger.debug(f"{warning}: {metadata.file_hash}")
        return self.preprocess(img)
