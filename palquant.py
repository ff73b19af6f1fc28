import sys
import time
from pathlib import Path
from typing import Optional

import numpy as np
import rich.traceback
import typer

from palq import palette_tools, quantize
from palq.accelerator import AcceleratorSession, DEVICE_CHOICES
from palq.errors import AcceleratorError, InputError, QuantizeError
from palq.kmeans import MAX_ITERATIONS


def format_runtime(seconds: float) -> str:
    if seconds < 1:
        return f"{seconds * 1000:.1f}ms"
    return f"{seconds:.6f} seconds"


def quant_cli(
    palette: str = typer.Argument(
        ...,
        help="Number of colors to derive with k-means (e.g. 16), or a palette file with one #RRGGBB color per line.",
        metavar="PALETTE",
    ),
    input_path: Path = typer.Argument(
        ...,
        help="Input image file (e.g., image.jpg).",
        metavar="INPUT_FILE",
        dir_okay=False, resolve_path=True,
    ),
    output_path: Path = typer.Argument(
        ...,
        help="Output PNG file.",
        metavar="OUTPUT_FILE",
        dir_okay=False, resolve_path=True,
    ),
    max_iterations: int = typer.Option(
        MAX_ITERATIONS, "--max-iterations", min=1, help="Upper bound on k-means iterations. Default: 100."
    ),
    seed: Optional[int] = typer.Option(
        None, "--seed", help="Seed for choosing the initial centroids. Default: fresh entropy each run."
    ),
    device: str = typer.Option(
        "auto", "--device", envvar="PALQUANT_DEVICE",
        help=f"Compute device: {', '.join(DEVICE_CHOICES)}. 'auto' uses CUDA when a GPU is found."
    ),
    device_index: int = typer.Option(
        0, "--device-index", envvar="PALQUANT_CUDA_DEVICE", min=0, help="CUDA device ordinal. Default: 0."
    ),
    save_palette: Optional[Path] = typer.Option(
        None, "--save-palette", help="Also write the final palette as a #RRGGBB text file.",
        dir_okay=False, resolve_path=True,
    ),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only print errors."),
):
    """
    Reduce INPUT_FILE to a small palette and write the remapped image to OUTPUT_FILE.
    """
    command_line_str = " ".join(sys.argv)
    verbose = not quiet

    if device.lower() not in DEVICE_CHOICES:
        typer.secho(f"Error: --device must be one of {', '.join(DEVICE_CHOICES)}, got '{device}'.",
                    fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    start = time.perf_counter()
    try:
        session = AcceleratorSession(device=device, device_index=device_index, verbose=verbose)
    except AcceleratorError as e:
        typer.secho(f"Accelerator error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    rng = np.random.default_rng(seed)
    try:
        with session:
            result = quantize.quantize_image(
                input_path,
                palette,
                output_path,
                session,
                rng=rng,
                max_iterations=max_iterations,
                command_line_invocation=command_line_str,
                verbose=verbose,
            )
    except InputError as e:
        typer.secho(f"Input error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    except AcceleratorError as e:
        typer.secho(f"Accelerator error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    except QuantizeError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    final_palette = result.resolution.palette
    if verbose:
        for line in palette_tools.format_palette(final_palette):
            typer.echo(line)

    if save_palette:
        try:
            palette_tools.save_palette_file(final_palette, save_palette)
        except InputError as e:
            typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1)
        if verbose:
            typer.echo(f"Palette saved to: {save_palette}")

    if verbose:
        typer.echo(f"Quantized image saved to: {output_path}")
        typer.echo(f"Runtime: {format_runtime(time.perf_counter() - start)}")
        typer.secho("Completed.", fg=typer.colors.GREEN)


def main():
    rich.traceback.install(show_locals=False, suppress=[typer])  # type: ignore
    typer.run(quant_cli)


if __name__ == "__main__":
    main()
