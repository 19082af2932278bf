""" Channel Packer settings. """

import json
import os
from typing import Dict, Tuple


def _as_bool(v) -> bool:
# Converts .json input (bool/int/str/None) to a real bool;
# Avoids the case where a non-empty string like "False" is treated as True.

    if isinstance(v, bool): return v
    if isinstance(v, str):
        input_str = v.strip().lower()
        if input_str == "": return False
        return input_str in ("1","true","yes","on")
    return bool(v)



#                                           === Loading JSON file ===

_config_path = os.path.join(os.path.dirname(__file__), "config.json")
_config_data: dict = {}
if os.path.isfile(_config_path):
    with open(_config_path, "r", encoding="utf-8") as f:
        _config_data = json.load(f)
# Installed copies may ship without the file; all keys have defaults.


# Assigning config values:
OUTPUT_FOLDER: str = (_config_data.get("OUTPUT_FOLDER") or "").strip() # Default folder for generated textures; falls back to the last save folder, then the current directory.
FILE_TYPE: str = _config_data.get("FILE_TYPE", "png") # File type of generated textures.
PACKED_FILENAME: str = (_config_data.get("PACKED_FILENAME") or "PackedTexture").strip() # Default name of the channel-packed texture.
DEFAULT_FALLBACK: str = _config_data.get("DEFAULT_FALLBACK", "Black") # Fill value for channels without a texture: Black, Gray or White.
UNPACK_CHANNELS: str = _config_data.get("UNPACK_CHANNELS", "RGBA") # Channels extracted by default when unpacking.
AUTO_FIX_READABLE: bool = _as_bool(_config_data.get("AUTO_FIX_READABLE", False)) # Enables read permission on unreadable sources without asking.
EXR_SRGB_CURVE: bool = _as_bool(_config_data.get("EXR_SRGB_CURVE", True)) # If true, applies sRGB gamma transform when reading .exr sources, mimicking Photoshop behavior.
PREFERENCES_FILE: str = os.path.expanduser(_config_data.get("PREFERENCES_FILE") or "~/.channel_packer.json") # Stores the last save folder between runs.

SHOW_DETAILS: bool = _as_bool(_config_data.get("SHOW_DETAILS", False)) # Shows details like exact resolution and progress when printing logs.




#                                           === Constants ===

ALLOWED_FILE_TYPES: Tuple[str, ...] = ("png", "tga") # Lossless 8bit formats only.
SOURCE_FILE_TYPES: Tuple[str, ...] = (".png", ".jpg", ".jpeg", ".tga", ".bmp", ".tif", ".tiff")
RAW_SOURCE_TYPES: Tuple[str, ...] = (".exr",) # Float sources, decoded with OpenEXR when available.

CHANNEL_LABELS: Dict[str, str] = {"R": "Red", "G": "Green", "B": "Blue", "A": "Alpha"}
PROGRESS_STEPS: int = 10 # Progress is reported roughly every height/PROGRESS_STEPS rows.
