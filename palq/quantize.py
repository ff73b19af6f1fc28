from enum import Enum
from pathlib import Path
from typing import Dict, NamedTuple, Optional, Tuple, Union

import numpy as np
import typer

from palq import file_utils
from palq.accelerator import AcceleratorSession
from palq.errors import InputError, QuantizeError
from palq.kmeans import MAX_ITERATIONS, KMeansEngine, flatten_pixels
from palq.palette_tools import load_palette_file, map_image_to_palette


class RunState(Enum):
    START = "start"
    SEEDING = "seeding"
    ITERATING = "iterating"
    CONVERGED = "converged"
    CAPPED_OUT = "capped_out"
    MAPPING = "mapping"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS: Dict[RunState, Tuple[RunState, ...]] = {
    RunState.START: (RunState.SEEDING, RunState.MAPPING),
    RunState.SEEDING: (RunState.ITERATING,),
    RunState.ITERATING: (RunState.SEEDING, RunState.CONVERGED, RunState.CAPPED_OUT),
    RunState.CONVERGED: (RunState.MAPPING,),
    RunState.CAPPED_OUT: (RunState.MAPPING,),
    RunState.MAPPING: (RunState.DONE,),
    RunState.DONE: (),
    RunState.FAILED: (),
}


class QuantizationRun:
    """Tracks where a single run is in its lifecycle.

    Any non-terminal state may move to FAILED. DONE and FAILED are final.
    """

    def __init__(self):
        self.state = RunState.START
        self.history = [RunState.START]
        self.error: Optional[BaseException] = None

    @property
    def finished(self) -> bool:
        return self.state in (RunState.DONE, RunState.FAILED)

    def advance(self, new_state: RunState) -> None:
        allowed = _TRANSITIONS[self.state]
        if not self.finished:
            allowed = allowed + (RunState.FAILED,)
        if new_state not in allowed:
            raise RuntimeError(f"Illegal run state transition {self.state.value} -> {new_state.value}.")
        self.state = new_state
        self.history.append(new_state)

    def fail(self, error: BaseException) -> None:
        self.error = error
        self.advance(RunState.FAILED)


class PaletteResolution(NamedTuple):
    palette: np.ndarray
    source: str
    iterations: int = 0
    converged: bool = True
    counts: Optional[np.ndarray] = None


def parse_num_colors(token: str) -> Optional[int]:
    """Return K if ``token`` is a run of decimal digits, else None."""
    token = token.strip()
    if token.isascii() and token.isdigit():
        return int(token)
    return None


def resolve_palette(
    token: str,
    pixels: np.ndarray,
    session: AcceleratorSession,
    rng: Optional[np.random.Generator] = None,
    max_iterations: int = MAX_ITERATIONS,
    run: Optional[QuantizationRun] = None
) -> PaletteResolution:
    """
    Turn the user's palette argument into a concrete palette.

    A number is the cluster count for k-means over ``pixels``. Anything else
    is a path to a ``#RRGGBB`` palette file.

    Raises:
        InputError: Unreadable or empty palette file, or K outside [1, N].
        AcceleratorError: A dispatch failed while clustering.
    """
    run = run if run is not None else QuantizationRun()
    num_colors = parse_num_colors(token)

    if num_colors is None:
        palette = load_palette_file(token)
        if palette.shape[0] == 0:
            raise InputError(f"Palette file {token} contains no #RRGGBB colors.")
        return PaletteResolution(palette=palette, source="file")

    run.advance(RunState.SEEDING)
    with KMeansEngine(session, rng=rng, max_iterations=max_iterations) as engine:
        engine.initialize(pixels, num_colors)
        run.advance(RunState.ITERATING)
        engine.run()
        run.advance(RunState.CONVERGED if engine.converged else RunState.CAPPED_OUT)
        return PaletteResolution(
            palette=engine.palette(),
            source="kmeans",
            iterations=engine.iterations,
            converged=engine.converged,
            counts=engine.counts.copy(),
        )


class QuantizeResult(NamedTuple):
    image: np.ndarray
    resolution: PaletteResolution
    run: QuantizationRun


def quantize_array(
    image: np.ndarray,
    palette_spec: str,
    session: AcceleratorSession,
    rng: Optional[np.random.Generator] = None,
    max_iterations: int = MAX_ITERATIONS,
    run: Optional[QuantizationRun] = None
) -> QuantizeResult:
    """
    Quantize an in-memory (H, W, 4) RGBA image. Nothing is written to disk.

    The image is uploaded once here and shared by clustering and mapping.
    On failure ``run`` ends in FAILED and, for a ``QuantizeError``, is also
    attached to the raised exception as ``e.run``.
    """
    run = run if run is not None else QuantizationRun()
    pixels = flatten_pixels(image)
    try:
        session.image_buffer(pixels)
        resolution = resolve_palette(palette_spec, pixels, session, rng=rng, max_iterations=max_iterations, run=run)
        run.advance(RunState.MAPPING)
        quantized = map_image_to_palette(session, pixels, resolution.palette)
        run.advance(RunState.DONE)
    except Exception as e:
        if not run.finished:
            run.fail(e)
        if isinstance(e, QuantizeError):
            e.run = run
        raise
    finally:
        session.release_image(pixels)
    return QuantizeResult(image=quantized.reshape(image.shape), resolution=resolution, run=run)


def quantize_image(
    input_path: Union[str, Path],
    palette_spec: str,
    output_path: Union[str, Path],
    session: AcceleratorSession,
    rng: Optional[np.random.Generator] = None,
    max_iterations: int = MAX_ITERATIONS,
    command_line_invocation: Optional[str] = None,
    verbose: bool = False,
    run: Optional[QuantizationRun] = None
) -> QuantizeResult:
    """
    Load an image, reduce it to a palette, and write the result as PNG.

    The output file is only written once mapping has completed, so every
    failure leaves ``output_path`` untouched.

    Args:
        input_path: Image to quantize.
        palette_spec: Cluster count (e.g. "16") or a palette file path.
        output_path: Destination PNG.
        session: Compute device shared by clustering and mapping.
        rng: Random source for centroid seeding.
        max_iterations: Cap on k-means iterations.
        command_line_invocation: Stored in the PNG metadata when given.
        verbose: Echo progress.
        run: Receives the run lifecycle, including a FAILED end state.

    Returns:
        QuantizeResult with the quantized array, palette details and run state.
    """
    run = run if run is not None else QuantizationRun()
    try:
        image = file_utils.load_rgba_image(input_path)
    except QuantizeError as e:
        run.fail(e)
        e.run = run
        raise
    height, width = image.shape[:2]
    if verbose:
        typer.echo(f"Loaded {input_path} ({width}x{height}, {width * height} pixels).")

    result = quantize_array(image, palette_spec, session, rng=rng, max_iterations=max_iterations, run=run)
    resolution = result.resolution
    if verbose:
        if resolution.source == "kmeans":
            outcome = "converged" if resolution.converged else "stopped at the iteration cap"
            typer.echo(f"K-means {outcome} after {resolution.iterations} iteration(s).")
        else:
            typer.echo(f"Loaded {len(resolution.palette)} color(s) from palette file {palette_spec}.")

    metadata = {
        "PaletteSource": resolution.source,
        "PaletteSize": str(len(resolution.palette)),
    }
    if resolution.source == "kmeans":
        metadata["Iterations"] = str(resolution.iterations)
        metadata["Converged"] = str(resolution.converged)
    file_utils.save_quantized_png(
        result.image,
        output_path,
        command_line_invocation=command_line_invocation,
        additional_metadata=metadata
    )
    return result
