import re
from pathlib import Path
from typing import List, Union

import numpy as np
import typer

from palq.accelerator import AcceleratorSession, READ_ONLY, WRITE_ONLY
from palq.errors import InputError
from palq.kernels import MAP_PALETTE
from palq.kmeans import flatten_pixels

MAX_PALETTE_SIZE = 1024

_HEX_LINE = re.compile(r"#([0-9a-fA-F]{2})([0-9a-fA-F]{2})([0-9a-fA-F]{2})")


def load_palette_file(path: Union[str, Path], max_colors: int = MAX_PALETTE_SIZE) -> np.ndarray:
    """
    Read a palette from a text file with one ``#RRGGBB`` color per line.

    Lines that do not start with a hex color are ignored, as is anything after
    the color on a matching line. Parsing stops at ``max_colors`` entries with
    a warning.

    Args:
        path (str | Path): Palette text file.
        max_colors (int): Maximum number of entries kept.

    Returns:
        np.ndarray: (K, 3) uint8 palette in file order. K may be 0.

    Raises:
        InputError: If the file cannot be read.
    """
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            lines = f.readlines()
    except OSError as e:
        raise InputError(f"Failed to open palette file {path}: {e}")

    colors: List[tuple] = []
    for line in lines:
        match = _HEX_LINE.match(line)
        if not match:
            continue
        if len(colors) >= max_colors:
            typer.secho(f"Warning: palette file {path} has more than {max_colors} colors; extra entries dropped.",
                        fg=typer.colors.YELLOW, err=True)
            break
        colors.append(tuple(int(channel, 16) for channel in match.groups()))

    return np.array(colors, dtype=np.uint8).reshape(-1, 3)


def save_palette_file(palette: np.ndarray, path: Union[str, Path]) -> Path:
    """Write ``palette`` in the same ``#RRGGBB`` format ``load_palette_file`` reads."""
    path = Path(path)
    if not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    lines = [f"#{int(r):02X}{int(g):02X}{int(b):02X}\n" for r, g, b in np.asarray(palette)]
    try:
        path.write_text("".join(lines), encoding="utf-8")
    except OSError as e:
        raise InputError(f"Failed to write palette file {path}: {e}")
    return path


def format_palette(palette: np.ndarray) -> List[str]:
    return [f"Color {i + 1}: R:{int(c[0])}, G:{int(c[1])}, B:{int(c[2])}" for i, c in enumerate(palette)]


def validate_palette(palette) -> np.ndarray:
    palette = np.asarray(palette)
    if palette.ndim != 2 or palette.shape[1] != 3:
        raise InputError(f"Palette must have shape (K, 3), got {palette.shape}.")
    if palette.shape[0] == 0:
        raise InputError("Palette is empty.")
    return palette


def map_image_to_palette(session: AcceleratorSession, image_array: np.ndarray, palette) -> np.ndarray:
    """
    Map every pixel in the image to the nearest color in the palette.

    Runs as one accelerator dispatch. Each pixel's RGB becomes the closest
    palette entry (ties go to the lowest index) and its alpha is copied
    through unchanged.

    Args:
        session (AcceleratorSession): Device to run on.
        image_array (np.ndarray): HxWx4 RGBA image data (or Nx4).
        palette (np.ndarray): Kx3 palette, K >= 1.

    Returns:
        np.ndarray: Quantized RGBA image of the same shape as the input.
    """
    palette = validate_palette(palette)
    shape = image_array.shape
    pixels = flatten_pixels(image_array)

    palette_table = np.ascontiguousarray(palette, dtype=np.float32)
    palette_buf = session.buffer(palette_table, READ_ONLY).publish()
    out_buf = session.buffer(np.empty_like(pixels), WRITE_ONLY).allocate()
    # reuse the clustering upload when there is one, otherwise own the upload
    uploaded_here = not session.has_image_buffer(pixels)
    try:
        image_buf = session.image_buffer(pixels)
        session.dispatch(MAP_PALETTE, pixels.shape[0], image_buf, palette_buf, out_buf)
        quantized = out_buf.fetch()
    finally:
        session.release(palette_buf, out_buf)
        if uploaded_here:
            session.release_image(pixels)

    return quantized.reshape(shape)
