""" Shared utilities: logging, progress, EXR decoding and resource cleanup. """

import os
from typing import Any, Callable, Iterable, Optional
from functools import lru_cache
import importlib.util

import numpy as np
from numpy.typing import NDArray

from settings import PROGRESS_STEPS


LOG_TYPES: list[str] = ["info", "warn", "error", "skip", "complete"]
# Defines log types printed by the CLI.

ProgressCallback = Callable[[str, int, int], None] # (label, current row, total rows)


def log(message: str, message_kind: LOG_TYPES = "info") -> None:
# Maps different log types.

    if message == "":
        print("")
        return

    if message_kind not in LOG_TYPES:
        message_kind = "info"

    if message_kind == "info":
        print(f"   {message}")
    elif message_kind == "warn":
        print(f"⚠️ {message}")
    elif message_kind == "error":
        print(f"⛔ {message}")
    elif message_kind == "skip":
        print(f"❌ {message}")
    elif message_kind == "complete":
        print(f"✅ {message}")
    else:
        print(message)  # fallback

    # Print styles:
    # info: 3 whitespaces + message
    # warn: ⚠️ + message
    # error: ⛔ + message
    # skip: ❌ + message
    # complete: ✅ + message


def print_progress(label: str, current: int, total: int) -> None:
# Progress sink for the CLI.
    percent = (current / total * 100.0) if total else 100.0
    log(f"{label}: row {current}/{total} ({percent:.0f}%)", "info")


def progress_interval(height: int) -> int:
# Number of rows between progress notifications; at least every row for small images.
    return max(1, height // PROGRESS_STEPS)


@lru_cache(maxsize=1)
def check_exr_libraries() -> bool:
# Checks if OpenEXR is installed for processing the .exr files.

    try:
        return importlib.util.find_spec("OpenEXR") is not None
    except (ImportError, ValueError):
        return False


def release_buffers(buffers: Iterable[Optional[Any]]) -> None:
# Releases result buffers that will not reach the caller.
    for buffer in buffers:
        if buffer is not None:
            buffer.release()


def linear_to_srgb(linear_values: NDArray[np.float32]) -> NDArray[np.float32]:
# Applies sRGB gamma.
    linear_values = np.clip(linear_values, 0.0, 1.0).astype(np.float32)
    srgb_a = 0.055
    return np.where(linear_values <= 0.0031308, linear_values * 12.92, (1 + srgb_a) * np.power(linear_values, 1 / 2.4) - srgb_a).astype(np.float32)


def load_exr_pixels(source_exr_path: str, *, srgb_transform: bool = False) -> NDArray[np.float32]:
# Reads a 32bit float .exr image into float RGBA (H,W,4) using OpenEXR and Numpy.
# Raises ImportError when OpenEXR is missing and OSError for unreadable files.

    import OpenEXR
    import Imath

# Preparing the image:
    file: OpenEXR.InputFile = OpenEXR.InputFile(source_exr_path)
    try:
        hdr: dict[str, Any] = file.header()
        data_window: Imath.Box2i = hdr['dataWindow']
        width: int = data_window.max.x - data_window.min.x + 1
        height: int = data_window.max.y - data_window.min.y + 1
        float_pixel_data: Imath.PixelType = Imath.PixelType(Imath.PixelType.FLOAT) # Setting pixel data type to float.

        channels_list: list[str] = list(hdr['channels'].keys())
        channel_names: dict[str, str] = {channel.lower(): channel for channel in channels_list}
        # Gets names of all available channels.

        def read_channel(channel_name: str) -> NDArray[np.float32]:
        # Reads chanel as a 32b float and restructure its pixels into 2D array W*H.
            return np.frombuffer(file.channel(channel_name, float_pixel_data), dtype=np.float32).reshape(height, width)

        is_rgb: bool = all(k in channel_names for k in ("r", "g", "b"))
        has_alpha: bool = ("a" in channel_names)

        rgba = np.ones((height, width, 4), dtype=np.float32)

# Processing the image:
        if is_rgb:
            rgb = np.stack([read_channel(channel_names[c]) for c in ("r", "g", "b")], axis=-1) # HxWx3 (Height, Width, Channels).

            if has_alpha:
                alpha: NDArray[np.float32] = read_channel(channel_names["a"])[..., None]
                eps: float = 1e-6
                almost_empty_alpha: bool = float(alpha.max()) <= eps
                almost_opaque_alpha: bool = float(alpha.min()) >= 1.0 - eps
                if not almost_empty_alpha and not almost_opaque_alpha:
                    partial_alpha_fraction: float = float(((alpha > eps) & (alpha < 1.0 - eps)).mean())
                    if partial_alpha_fraction > 1e-3:
                        alpha_denominator: NDArray[np.float32] = np.maximum(alpha, np.float32(1e-8))
                        rgb = np.divide(rgb, alpha_denominator, out=rgb.copy(), where=alpha_denominator > 0).astype(np.float32)
                    # Un-premultiplies RGB using a non-zero alpha divisor.
                rgba[..., 3] = np.clip(alpha[..., 0], 0.0, 1.0)
            # Un-premultiplies Alpha if available, and is neither all 0 nor 1.

            if srgb_transform:
                rgb = linear_to_srgb(rgb)
            rgba[..., :3] = np.clip(rgb, 0.0, 1.0)

        else:
            grayscale = read_channel(channels_list[0])
            if srgb_transform:
                grayscale = linear_to_srgb(grayscale)
            rgba[..., :3] = np.clip(grayscale, 0.0, 1.0)[..., None]
        # In case the full RGB is missing, it extracts the first available channel.
        return rgba

    finally:
        file.close()


def make_output_dir(directory: str) -> str:
# Creates (if needed) and returns the absolute output directory.
    directory = os.path.abspath(directory or ".")
    os.makedirs(directory, exist_ok=True)
    return directory


def validate_safe_filename(raw_filename: Optional[str]) -> None:
# Validates that the output file name doesn't include unsupported characters.

    filename: str = (raw_filename or "")
    if filename.strip() == "":
        log("Aborted: output file name is empty.", "error")
        raise SystemExit(1)

    if any(invalid_character in filename for invalid_character in '\\/:*?"<>|'):
        log(f"Aborted: invalid file name '{raw_filename}'. It cannot contain \\ / : * ? \" < > |", "error")
        # Prints error.
        raise SystemExit(1)
    return
