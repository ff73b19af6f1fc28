import re
from pathlib import Path
from typing import Dict, Optional, Union

import numpy as np
from PIL import Image, PngImagePlugin, UnidentifiedImageError

from palq.errors import ImageIOError

SOFTWARE_TAG = "palquant (k-means / fixed palette color quantizer)"


def load_rgba_image(input_path: Union[str, Path]) -> np.ndarray:
    """Decode any Pillow-readable image into an (H, W, 4) uint8 RGBA array."""
    try:
        with Image.open(input_path) as image:
            rgba = image.convert("RGBA")
            return np.array(rgba, dtype=np.uint8)
    except FileNotFoundError:
        raise ImageIOError(f"Input file not found at {input_path}")
    except (UnidentifiedImageError, OSError) as e:
        raise ImageIOError(f"Error opening image {input_path}: {e}")


def save_quantized_png(
    image_array: np.ndarray,
    output_path: Union[str, Path],
    command_line_invocation: Optional[str] = None,
    additional_metadata: Optional[Dict[str, str]] = None
) -> Path:
    """
    Saves an RGBA array as a PNG file, embedding specified metadata.
    """
    if not isinstance(output_path, Path):
        output_path = Path(output_path)

    if image_array.ndim != 3 or image_array.shape[2] != 4:
        raise ImageIOError(f"Expected an (H, W, 4) RGBA array, got shape {image_array.shape}.")

    png_info = PngImagePlugin.PngInfo()
    png_info.add_text("Software", SOFTWARE_TAG)

    if command_line_invocation:
        png_info.add_text("palquant:command_line", command_line_invocation)

    if additional_metadata:
        for key, value in additional_metadata.items():
            key_clean = re.sub(r'\s+', '_', key)
            key_clean = re.sub(r'[^a-zA-Z0-9_.-]', '', key_clean)
            if not re.match(r'^[a-zA-Z_]', key_clean):
                key_clean = "palquant_" + key_clean
            # tEXt keywords are limited to 79 bytes including the prefix
            key_clean = key_clean[:70]
            png_info.add_text(f"palquant:{key_clean}", str(value))

    try:
        if not output_path.parent.exists():
            output_path.parent.mkdir(parents=True, exist_ok=True)
        Image.fromarray(np.ascontiguousarray(image_array, dtype=np.uint8)).save(
            output_path, "PNG", pnginfo=png_info
        )
    except (OSError, ValueError) as e:
        raise ImageIOError(f"Error saving PNG to {output_path.resolve()}: {e}")
    return output_path
