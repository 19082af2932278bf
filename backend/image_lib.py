""" Image processing backend. Currently implemented using Pillow (PIL) and NumPy. PIL exports 8bit images only."""



#                                           === Backend ===

from typing import Any, TypeAlias

import numpy as np
from numpy.typing import NDArray

from PIL import Image as _PIL
from PIL.Image import Image as PILImage
from PIL import Image as PILImageModule

ImageObject: TypeAlias = PILImage


def close_image(image: object) -> None:
    close = getattr(image, "close", None)
    if callable(close):
        close()


def from_array_u8(data: Any, mode: str) -> ImageObject:
# Creates an image from a uint8 numpy array.
    image = PILImageModule.fromarray(np.ascontiguousarray(data, dtype=np.uint8))
    if image.mode == mode:
        return image
    converted = image.convert(mode)
    close_image(image)
    return converted
    # Pillow infers L/RGB/RGBA from the array shape.


def get_image_mode(image: Any) -> str:
# Return the Pillow image mode: "RGB", "RGBA", "L"
    return image.mode


def open_image(path: str) -> ImageObject:
    image = _PIL.open(path)
    try:
        image.load()
    except (OSError, ValueError):
        image.close()
        raise
    return image
    # Decodes right away, so broken files fail here and not during packing.


def save_image(image: Any, path: str) -> None:
    image.save(path)




#                                           === Utils ===



def is_sixteen_bit(image: ImageObject) -> bool:
# Returns True for 16/32bit integer grayscale modes.

    mode = get_image_mode(image)
    return mode == "I" or str(mode).startswith("I;16")


def expand_to_rgba(values: NDArray) -> NDArray[np.float32]:
# Expands a (H,W), (H,W,1), (H,W,3) or (H,W,4) float array to (H,W,4).
# Grayscale is copied to RGB, missing alpha is fully opaque.

    data = np.asarray(values, dtype=np.float32)
    if data.ndim == 2:
        data = data[..., None]
    if data.ndim != 3 or data.shape[2] not in (1, 3, 4):
        raise ValueError(f"Unsupported pixel array shape {data.shape}; expected (H, W[, 1|3|4]).")

    height, width, channel_count = data.shape
    if channel_count == 4:
        return np.array(data, dtype=np.float32, copy=True)

    rgba = np.ones((height, width, 4), dtype=np.float32)
    if channel_count == 1:
        rgba[..., :3] = data
    else:
        rgba[..., :3] = data[..., :3]
    return rgba


def to_float_rgba(image: ImageObject) -> NDArray[np.float32]:
# Converts an opened image to float RGBA values in 0..1, shape (H,W,4), origin top-left.

    mode = get_image_mode(image)

    if mode == "F":
        gray = np.asarray(image, dtype=np.float32)
        return expand_to_rgba(np.clip(gray, 0.0, 1.0))
    # Float grayscale is already normalized.

    if is_sixteen_bit(image):
        gray = np.asarray(image, dtype=np.float32) / 65535.0
        return expand_to_rgba(np.clip(gray, 0.0, 1.0))
    # Scales 16bit range down to 0..1, so values are properly maintained instead of being clipped.

    rgba_image = image if mode == "RGBA" else image.convert("RGBA")
    try:
        return np.asarray(rgba_image, dtype=np.float32) / 255.0
    finally:
        if rgba_image is not image:
            close_image(rgba_image)
