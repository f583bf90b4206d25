"""
Unit tests for configuration and seed management.

Tests ensure that:
1. Seeds are properly set for reproducibility
2. Configuration can be saved/loaded
3. Parameter validation works correctly
4. Worker count defaults to the hardware parallelism
"""

import pytest
import tempfile
from pathlib import Path
import sys
import os

import psutil

# Add repository root to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../../')))

from bodyview.utils.config import (
    Config,
    set_all_seeds,
    get_default_config,
    default_num_workers
)

# Check if torch is available
try:
    import torch
    import numpy as np
    TORCH_AVAILABLE = True
except ImportError:
    import numpy as np
    TORCH_AVAILABLE = False


class TestConfig:
    """Test configuration dataclass."""

    def test_default_config(self):
        """Test default configuration creation."""
        config = get_default_config()

        assert isinstance(config, Config)
        assert config.seed == 42
        assert config.model_name == "inception_v3"
        assert config.serial_context_strategy == "per_worker"
        assert config.confidence_high_margin == 0.5
        assert config.confidence_medium_margin == 0.2
        assert config.retrieval_limit == 20
        assert config.batch_timeout_s is None

    def test_config_validation(self):
        """Test configuration parameter validation."""
        with pytest.raises(ValueError, match="model_name must be one of"):
            Config(model_name="vgg16")

        with pytest.raises(ValueError, match="image_size must be >= 32"):
            Config(image_size=16)

        with pytest.raises(ValueError, match="confidence margins"):
            Config(confidence_high_margin=0.1, confidence_medium_margin=0.3)

        with pytest.raises(ValueError, match="confidence margins"):
            Config(confidence_high_margin=1.5)

        with pytest.raises(ValueError, match="retrieval_limit must be >= 1"):
            Config(retrieval_limit=0)

        with pytest.raises(ValueError, match="num_workers must be >= 1"):
            Config(num_workers=0)

        with pytest.raises(ValueError, match="serial_context_strategy"):
            Config(serial_context_strategy="round_robin")

        with pytest.raises(ValueError, match="batch_timeout_s must be > 0"):
            Config(batch_timeout_s=0)

    def test_default_num_workers(self):
        """Worker count follows the logical CPU count."""
        config = Config()

        assert config.num_workers == default_num_workers()
        assert config.num_workers >= 1
        if psutil.cpu_count(logical=True):
            assert config.num_workers == psutil.cpu_count(logical=True)

    def test_config_update(self):
        """Test configuration update functionality."""
        config = Config()

        config.update(seed=123, retrieval_limit=5)

        assert config.seed == 123
        assert config.retrieval_limit == 5

        # Test updating with invalid parameter (should warn but not fail)
        config.update(invalid_param=999)

    def test_config_update_revalidates(self):
        """Updates are validated like construction."""
        config = Config()

        with pytest.raises(ValueError, match="retrieval_limit"):
            config.update(retrieval_limit=-1)

    def test_config_save_load(self):
        """Test saving and loading configuration."""
        with tempfile.TemporaryDirectory() as tmpdir:
            config_path = Path(tmpdir) / "test_config.json"

            config = Config(seed=123, num_workers=3, serial_context_strategy="serialize")
            config.metadata_dir = Path("/test/output")
            config.image_dir = Path("/test/images")
            config.save(config_path)

            assert config_path.exists()

            loaded_config = Config.load(config_path)

            assert loaded_config.seed == 123
            assert loaded_config.num_workers == 3
            assert loaded_config.serial_context_strategy == "serialize"
            assert loaded_config.metadata_dir == Path("/test/output")
            assert loaded_config.image_dir == Path("/test/images")

    def test_config_to_dict(self):
        """Test configuration dictionary conversion."""
        config = Config(seed=999)
        config.metadata_dir = Path("/test/path")

        config_dict = config.to_dict()

        assert isinstance(config_dict, dict)
        assert config_dict['seed'] == 999
        assert config_dict['metadata_dir'] == "/test/path"  # Path converted to string
        assert config_dict['image_dir'] is None

    def test_path_handling(self):
        """Test that Path objects are handled correctly."""
        config = Config(metadata_dir="./output", image_dir="./images")

        assert isinstance(config.metadata_dir, Path)
        assert isinstance(config.image_dir, Path)


class TestSeedManagement:
    """Test seed management for reproducibility."""

    def test_set_all_seeds_python(self):
        """Test that Python random seed is set correctly."""
        import random

        set_all_seeds(42)
        val1 = random.random()

        set_all_seeds(42)
        val2 = random.random()

        assert val1 == val2

    def test_set_all_seeds_numpy(self):
        """Test that NumPy seed is set correctly."""
        set_all_seeds(42)
        arr1 = np.random.rand(5)

        set_all_seeds(42)
        arr2 = np.random.rand(5)

        np.testing.assert_array_equal(arr1, arr2)

    @pytest.mark.skipif(not TORCH_AVAILABLE, reason="PyTorch not available")
    def test_set_all_seeds_torch(self):
        """Test that PyTorch seed is set correctly."""
        set_all_seeds(42)
        tensor1 = torch.rand(5)

        set_all_seeds(42)
        tensor2 = torch.rand(5)

        assert torch.equal(tensor1, tensor2)

    def test_deterministic_mode(self):
        """Test that deterministic mode is enabled."""
        set_all_seeds(42, enable_deterministic=True)

        if TORCH_AVAILABLE:
            assert torch.backends.cudnn.deterministic
            assert not torch.backends.cudnn.benchmark

        assert os.environ.get('PYTHONHASHSEED') == '42'


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
