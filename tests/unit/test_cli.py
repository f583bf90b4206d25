"""
Tests for the command-line interface.

The torch provider is replaced with the deterministic vector provider so the
commands run without model weights.
"""

import json
import sys
import os

import numpy as np
import pytest
from click.testing import CliRunner

# Add repository root to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../../')))

from bodyview.utils.config import Config
from cli import bodyview_cli
from cli.bodyview_cli import cli
from fakes import VectorProvider


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def base_args(metadata_dir, image_dir):
    return ["--metadata-dir", str(metadata_dir), "--image-dir", str(image_dir)]


@pytest.fixture(autouse=True)
def fake_provider(monkeypatch):
    """Keep the CLI away from torchvision weights."""
    monkeypatch.setattr(
        "bodyview.core.view_manager.create_embedding_provider", lambda config: VectorProvider()
    )


def json_line(output):
    return json.loads(next(line for line in output.splitlines() if line.startswith("{")))


class TestCLI:
    """Command behaviour."""

    def test_classify_json(self, runner, base_args, image_dir):
        """classify --json prints the classification."""
        result = runner.invoke(cli, base_args + ["classify", str(image_dir / "d.png"), "-b", "hand", "--json"])

        assert result.exit_code == 0, result.output
        payload = json_line(result.output)
        assert payload['bodypart'] == "HAND"
        assert payload['label'] == 1
        assert payload['confidence'] == "HIGH"

    def test_classify_table(self, runner, base_args, image_dir):
        """Without --json a table is printed."""
        result = runner.invoke(cli, base_args + ["classify", str(image_dir / "a.png"), "-b", "HAND"])

        assert result.exit_code == 0, result.output
        assert "Classification" in result.output

    def test_closest(self, runner, base_args, image_dir):
        """closest prints the best matching member."""
        result = runner.invoke(cli, base_args + ["closest", str(image_dir / "c.png"), "-b", "hand"])

        assert result.exit_code == 0, result.output
        assert "c.png" in result.output

    def test_clusters(self, runner, base_args):
        """clusters lists labels of a bodypart."""
        result = runner.invoke(cli, base_args + ["clusters", "-b", "WRIST"])

        assert result.exit_code == 0, result.output
        assert "WRIST view-clusters" in result.output

    def test_index(self, runner, base_args, tmp_path):
        """index writes the filename -> view map."""
        out = tmp_path / "index.json"

        result = runner.invoke(cli, base_args + ["index", "--out", str(out)])

        assert result.exit_code == 0, result.output
        with open(out) as f:
            index = json.load(f)
        assert index["a.png"] == {"bodypart": "HAND", "label": 0}
        assert index["w2.png"] == {"bodypart": "WRIST", "label": 2}

    def test_embed(self, runner, base_args, image_dir, tmp_path):
        """embed saves vectors, ids and failures."""
        out = tmp_path / "embeddings"

        result = runner.invoke(
            cli, base_args + ["embed", str(image_dir), "--out", str(out), "--mode", "sequential"]
        )

        assert result.exit_code == 0, result.output
        with open(out / "ids.json") as f:
            ids = json.load(f)
        assert len(ids) == 5
        assert np.load(out / "embeddings.npy").shape == (5, 2)
        with open(out / "failures.json") as f:
            assert json.load(f) == {}

    def test_missing_metadata(self, runner, tmp_path):
        """Integrity errors exit with status 1."""
        result = runner.invoke(cli, ["--metadata-dir", str(tmp_path / "missing"), "clusters", "-b", "HAND"])

        assert result.exit_code == 1
        assert "Error" in result.output

    @pytest.mark.parametrize("command", ["classify", "closest"])
    def test_corrupt_image(self, runner, base_args, tmp_path, command):
        """Undecodable images are reported without a traceback."""
        bad = tmp_path / "bad.png"
        bad.write_bytes(b"corrupt")

        result = runner.invoke(cli, base_args + [command, str(bad), "-b", "hand"])

        assert result.exit_code == 1
        assert "Error" in result.output
        assert "corrupt image" in result.output
        assert not isinstance(result.exception, ValueError)

    def test_main_reports_unexpected_errors(self, monkeypatch, capsys):
        """main() turns stray exceptions into exit status 1."""
        def broken_cli():
            raise RuntimeError("metadata mount vanished")

        monkeypatch.setattr(bodyview_cli, "cli", broken_cli)

        with pytest.raises(SystemExit) as exc_info:
            bodyview_cli.main()

        assert exc_info.value.code == 1
        assert "metadata mount vanished" in capsys.readouterr().out

    def test_config_file(self, runner, metadata_dir, tmp_path):
        """Settings can come from a saved configuration."""
        config_path = tmp_path / "config.json"
        Config(metadata_dir=metadata_dir).save(config_path)

        result = runner.invoke(cli, ["--config", str(config_path), "clusters", "-b", "HAND"])

        assert result.exit_code == 0, result.output
        assert "HAND view-clusters" in result.output


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
