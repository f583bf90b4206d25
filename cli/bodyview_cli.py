#!/usr/bin/env python3
"""
BodyView - Radiograph View Classification CLI

Classify radiographs into bodypart view-clusters, look up the closest
reference image, and inspect the cluster metadata.
"""

import click
import sys
from pathlib import Path
import json
import numpy as np
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from bodyview.utils.config import Config
from bodyview.utils.logging import get_logger
from bodyview.core.models import Category
from bodyview.core.batch import BatchMode
from bodyview.core.cluster_store import ClusterStore
from bodyview.core.exceptions import BodyViewError, BatchTimeoutError
from bodyview.core.view_manager import ViewManager

console = Console()
logger = get_logger(__name__)

BODYPARTS = [category.value for category in Category]
IMAGE_PATTERNS = ['*.png', '*.jpg', '*.jpeg']


@click.group()
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--metadata-dir', '-m', type=click.Path(),
              help='Cluster metadata directory (overrides config)')
@click.option('--image-dir', type=click.Path(),
              help='Directory cluster member filenames are relative to')
@click.pass_context
def cli(ctx, config, metadata_dir, image_dir):
    """
    BodyView - Radiograph View Classification

    Nearest-centroid view classification and reference image retrieval
    for musculoskeletal radiographs.
    """
    ctx.obj = Config.load(config) if config else Config()

    if metadata_dir:
        ctx.obj.metadata_dir = Path(metadata_dir)
    if image_dir:
        ctx.obj.image_dir = Path(image_dir)


def _run(action):
    """Run a command body, turning domain errors into a clean CLI failure."""
    try:
        return action()
    except BodyViewError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.exceptions.Exit(1)


@cli.command()
@click.argument('image', type=click.Path(exists=True, dir_okay=False))
@click.option('--bodypart', '-b', required=True,
              type=click.Choice(BODYPARTS, case_sensitive=False),
              help='Bodypart shown in the radiograph')
@click.option('--json', 'output_json', is_flag=True,
              help='Output as JSON')
@click.pass_obj
def classify(config, image, bodypart, output_json):
    """Classify IMAGE into a view-cluster of its bodypart."""
    manager = ViewManager(config)

    with console.status("Classifying...", spinner="dots"):
        result = _run(lambda: manager.classify_image(image, bodypart))

    if output_json:
        click.echo(json.dumps(result.to_dict()))
        return

    table = Table(title="Classification")
    table.add_column("Bodypart", style="cyan")
    table.add_column("Cluster", style="yellow")
    table.add_column("Confidence", style="green")
    table.add_column("Distance", justify="right")
    table.add_column("Margin", justify="right")
    table.add_row(
        result.category.value, str(result.label), result.confidence.name,
        f"{result.distance:.4f}", f"{result.margin:.3f}"
    )
    console.print(table)


@cli.command()
@click.argument('image', type=click.Path(exists=True, dir_okay=False))
@click.option('--bodypart', '-b', required=True,
              type=click.Choice(BODYPARTS, case_sensitive=False),
              help='Bodypart shown in the radiograph')
@click.option('--limit', '-l', type=int, default=None,
              help='Maximum cluster members to compare')
@click.pass_obj
def closest(config, image, bodypart, limit):
    """Find the reference image most similar to IMAGE within its cluster."""
    manager = ViewManager(config)

    with console.status("Searching cluster...", spinner="dots"):
        best = _run(lambda: manager.closest_image(image, bodypart, limit))

    console.print(Panel(best, title="Closest reference image", style="green"))


@cli.command()
@click.option('--bodypart', '-b', required=True,
              type=click.Choice(BODYPARTS, case_sensitive=False),
              help='Bodypart to inspect')
@click.pass_obj
def clusters(config, bodypart):
    """List the view-clusters of a bodypart."""
    store = ClusterStore(config)
    category = Category.parse(bodypart)

    centroids = _run(lambda: store.get_centroids(category))

    table = Table(title=f"{category.value} view-clusters")
    table.add_column("Label", style="cyan", justify="right")
    table.add_column("Members", style="green", justify="right")
    table.add_column("Dimension", justify="right")

    for label, centroid in centroids.items():
        table.add_row(str(label), str(len(store.get_members(category, label))), str(len(centroid)))

    console.print(table)


@cli.command()
@click.option('--out', '-o', required=True, type=click.Path(dir_okay=False),
              help='Output JSON file')
@click.pass_obj
def index(config, out):
    """Write the filename -> view index of every bodypart."""
    store = ClusterStore(config)
    views = _run(store.view_index)

    out = Path(out)
    out.parent.mkdir(parents=True, exist_ok=True)
    with open(out, 'w') as f:
        json.dump({name: view.to_dict() for name, view in sorted(views.items())}, f, indent=2)

    console.print(f"[green][OK] Indexed {len(views)} images to {out}[/green]")


@cli.command()
@click.argument('images_dir', type=click.Path(exists=True, file_okay=False))
@click.option('--out', '-o', required=True, type=click.Path(file_okay=False),
              help='Output directory for embeddings')
@click.option('--mode', type=click.Choice([m.value for m in BatchMode]),
              default=BatchMode.CONCURRENT.value, help='Batch execution mode')
@click.option('--timeout', type=float, default=None,
              help='Batch deadline in seconds')
@click.pass_obj
def embed(config, images_dir, out, mode, timeout):
    """Embed every image under IMAGES_DIR and save the vectors."""
    manager = ViewManager(config)

    paths = []
    for pattern in IMAGE_PATTERNS:
        paths.extend(sorted(Path(images_dir).glob(f"**/{pattern}")))

    console.print(f"\n[cyan]Found {len(paths)} images to process[/cyan]")

    def run_batch():
        try:
            return manager.embed_images(paths, mode=mode, timeout=timeout)
        except BatchTimeoutError as e:
            console.print(f"[yellow]{e}; saving partial results[/yellow]")
            return e.partial

    with console.status(f"Running {mode} batch...", spinner="dots"):
        result = _run(run_batch)

    out = Path(out)
    out.mkdir(parents=True, exist_ok=True)
    ids = list(result.embeddings)
    if ids:
        np.save(out / "embeddings.npy", np.stack([result[i] for i in ids]))
    with open(out / "ids.json", 'w') as f:
        json.dump(ids, f, indent=2)
    with open(out / "failures.json", 'w') as f:
        json.dump({str(k): v.reason for k, v in result.failures.items()}, f, indent=2)

    table = Table(title="Batch Results")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Total Images", str(len(paths)))
    table.add_row("Embedded", str(len(result)))
    table.add_row("Failed", str(len(result.failures)))
    table.add_row("Elapsed", f"{result.elapsed_ms / 1000:.2f}s")
    console.print(table)


def main():
    """Main entry point."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(1)
    except Exception as e:
        console.print(f"\n[red]Error: {e}[/red]")
        logger.error(f"CLI error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
