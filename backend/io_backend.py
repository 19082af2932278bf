""" Input/output backend: loads pixel sources from disk, fixes their readability, saves results and keeps preferences. """
# The engine in channel_packer only sees PixelSource and ResultBuffer objects; everything touching files lives here.

import json
import os
import stat
from dataclasses import dataclass, field
from typing import List, Optional

from backend.errors import SourceNotLoadable
from backend.image_lib import close_image, open_image, save_image as save_image_file, to_float_rgba
from backend.texture_classes import PixelSource, ResultBuffer

from settings import (ALLOWED_FILE_TYPES, EXR_SRGB_CURVE, FILE_TYPE, OUTPUT_FOLDER, PREFERENCES_FILE, RAW_SOURCE_TYPES, SHOW_DETAILS, SOURCE_FILE_TYPES)
from utils import (check_exr_libraries, load_exr_pixels, log, make_output_dir)


@dataclass
class CPContext:
    export_extension: str = "" # Validated file extension set in config, without the dot.
    last_save_path: str = "" # Folder of the last saved texture, restored from preferences.
    saved_paths: List[str] = field(default_factory=list) # Absolute paths of the files written during this run.




#                                        === Pixel source provider ===


def _can_change_mode(path: str) -> bool:
# Only the owner (or root) may flip permission bits.
    getuid = getattr(os, "getuid", None)
    if getuid is None:
        return True
    uid = getuid()
    return uid == 0 or os.stat(path).st_uid == uid


def load_pixel_source(path: str, name: Optional[str] = None) -> PixelSource:
# Decodes an image file into a float RGBA PixelSource.
# Files without read permission are returned as unreadable sources with a 0x0 size; missing or broken files raise SourceNotLoadable.

    absolute_path: str = os.path.abspath(path)
    display_name: str = name or os.path.splitext(os.path.basename(absolute_path))[0]
    file_extension: str = os.path.splitext(absolute_path)[1].lower()

    if not os.path.isfile(absolute_path):
        raise SourceNotLoadable(display_name, f"File not found: {path}")

    if file_extension not in SOURCE_FILE_TYPES + RAW_SOURCE_TYPES:
        supported = ", ".join(SOURCE_FILE_TYPES + RAW_SOURCE_TYPES)
        raise SourceNotLoadable(display_name, f"Unsupported file type '{file_extension}'. Supported: {supported}")

    if not os.access(absolute_path, os.R_OK):
        return PixelSource(name=display_name, width=0, height=0, readable=False, path=absolute_path,
                           recoverable=_can_change_mode(absolute_path))
    # Left for validation, which reports it as a recoverable error.

    if file_extension in RAW_SOURCE_TYPES:
        if not check_exr_libraries():
            raise SourceNotLoadable(display_name, "EXR runtime missing (OpenEXR).")
        try:
            pixels = load_exr_pixels(absolute_path, srgb_transform=EXR_SRGB_CURVE)
        except OSError as error:
            raise SourceNotLoadable(display_name, str(error)) from error
        return PixelSource.from_array(display_name, pixels, path=absolute_path)
    # Pre-processing the .exr files.

    try:
        image = open_image(absolute_path)
    except (OSError, ValueError) as error:
        raise SourceNotLoadable(display_name, str(error)) from error
    try:
        pixels = to_float_rgba(image)
    finally:
        close_image(image)

    if SHOW_DETAILS:
        log(f"Loaded '{display_name}' ({pixels.shape[1]}x{pixels.shape[0]})", "info")
    return PixelSource.from_array(display_name, pixels, path=absolute_path)


def make_source_readable(source: PixelSource) -> PixelSource:
# Readability remediation hook: enables read permission for the backing file and reloads it.

    if not source.path:
        raise SourceNotLoadable(source.name, "It has no backing file to fix.")
    try:
        current_mode = os.stat(source.path).st_mode
        os.chmod(source.path, current_mode | stat.S_IRUSR)
    except OSError as error:
        raise SourceNotLoadable(source.name, f"Cannot enable read permission: {error}") from error

    log(f"Enabled read permission for '{source.path}'", "info")
    return load_pixel_source(source.path, source.name)




#                                         === Persistence sink ===


def context_validate_export_extension(context: Optional[CPContext] = None, file_type: Optional[str] = None) -> str:
# Validates and sets in context extension input by the user in config.
# Sets the extension type, without the dot.

    allowed_file_types: set[str] = set(ALLOWED_FILE_TYPES)
    typed_extension: str = (file_type if file_type is not None else FILE_TYPE or "").strip().lower().lstrip(".")

    if not typed_extension or typed_extension not in allowed_file_types:
        sorted_allowed_file_types = ", ".join(sorted(allowed_file_types))
        log(f"Aborted: Invalid FILE_TYPE '{typed_extension}'. Supported: {sorted_allowed_file_types}", "error")
        raise SystemExit(1)

    if context is not None:
        context.export_extension = typed_extension
    return typed_extension


def save_result(result: ResultBuffer, output_path: str, context: Optional[CPContext] = None) -> str:
# Encodes the buffer with a lossless format and writes it; returns the absolute path.
# The buffer stays owned by the caller.

    output_path = os.path.abspath(output_path)
    extension: str = os.path.splitext(output_path)[1].lower().lstrip(".")
    if extension not in ALLOWED_FILE_TYPES:
        raise ValueError(f"Unsupported output type '.{extension}' for {os.path.basename(output_path)}. Supported: {', '.join(sorted(ALLOWED_FILE_TYPES))}")
    make_output_dir(os.path.dirname(output_path))

    image = result.to_image()
    try:
        save_image_file(image, output_path)
    finally:
        close_image(image)

    if context is not None:
        context.saved_paths.append(output_path)
        context.last_save_path = os.path.dirname(output_path)
    return output_path


def resolve_output_directory(explicit_directory: Optional[str], context: Optional[CPContext] = None) -> str:
# CLI argument > OUTPUT_FOLDER from config > last save folder > current directory.

    for candidate in (explicit_directory, OUTPUT_FOLDER, context.last_save_path if context else ""):
        if candidate and candidate.strip():
            return os.path.abspath(candidate.strip())
    return os.path.abspath(".")




#                                           === Preferences ===


def load_last_save_path(context: Optional[CPContext] = None, preferences_file: str = PREFERENCES_FILE) -> str:
# Restores the last save folder; an unreadable preferences file is ignored.

    last_save_path = ""
    if os.path.isfile(preferences_file):
        try:
            with open(preferences_file, "r", encoding="utf-8") as f:
                preferences = json.load(f)
            last_save_path = str(preferences.get("last_save_path", "") or "")
        except (OSError, ValueError, AttributeError) as error:
            log(f"Ignoring preferences file '{preferences_file}': {error}", "warn")

    if last_save_path and not os.path.isdir(last_save_path):
        last_save_path = ""
    if context is not None:
        context.last_save_path = last_save_path
    return last_save_path


def store_last_save_path(last_save_path: str, preferences_file: str = PREFERENCES_FILE) -> None:

    preferences: dict = {}
    if os.path.isfile(preferences_file):
        try:
            with open(preferences_file, "r", encoding="utf-8") as f:
                preferences = json.load(f)
        except (OSError, ValueError):
            preferences = {}
        if not isinstance(preferences, dict):
            preferences = {}
    # Keeps unrelated keys written by other versions.

    preferences["last_save_path"] = os.path.abspath(last_save_path)
    try:
        directory = os.path.dirname(os.path.abspath(preferences_file))
        os.makedirs(directory, exist_ok=True)
        with open(preferences_file, "w", encoding="utf-8") as f:
            json.dump(preferences, f, indent=4)
    except OSError as error:
        log(f"Warning: failed to store preferences in '{preferences_file}': {error}", "warn")
