""" Packs grayscale textures into the RGBA channels of one texture, or unpacks channels into separate grayscale textures. """

import argparse
import os
import sys
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple, TypeVar

import numpy as np
from numpy.typing import NDArray


from backend.errors import (AllocationFailure, ChannelPackerError, DimensionMismatch, NoChannelSelected, NoSourceAssigned,
                            OperationCancelled, OperationInProgress, UnreadableSource)

from backend.texture_classes import (Channel, ChannelSlot, FallbackPolicy, PackRequest, PixelSource, ResultBuffer, UnpackRequest)

from backend.io_backend import (CPContext, context_validate_export_extension, load_last_save_path, load_pixel_source,
                                make_source_readable, resolve_output_directory, save_result, store_last_save_path)

from settings import (ALLOWED_FILE_TYPES, AUTO_FIX_READABLE, DEFAULT_FALLBACK, PACKED_FILENAME, SHOW_DETAILS, UNPACK_CHANNELS)

from utils import (ProgressCallback, log, print_progress, progress_interval, release_buffers, validate_safe_filename)




# Basic data flow:
# PackRequest(
#     red=ChannelSlot(source=PixelSource("T_Wall_Metal", 2048, 2048), invert=False),
#     green=ChannelSlot(source=PixelSource("T_Wall_AO", 2048, 2048)),
#     blue=ChannelSlot(fallback=FallbackPolicy.BLACK),
#     alpha=ChannelSlot(source=PixelSource("T_Wall_Rough", 2048, 2048), invert=True),  # Smoothness from roughness.
# )
# > validate_pack_request > pack > ResultBuffer(2048x2048 RGBA) > save_result > release


SOURCE_LABEL: str = "Source" # Name reported for the single unpack source.




#                                        === Shared primitives ===

def fallback_value(policy: FallbackPolicy) -> float:
# Constant fill value for an empty channel: Black 0.0, Gray 0.5, White 1.0.
    return float(policy.value)


def invert_value(value: float, invert: bool) -> float:
    return 1.0 - value if invert else value


def sample(source: PixelSource, index: int, invert: bool = False) -> float:
# Reads the red component of the pixel at a row-major index; grayscale sources are stored redundantly across RGB.

    pixels = _readable_pixels(source, source.name)
    if not 0 <= index < source.width * source.height:
        raise IndexError(f"Pixel index {index} is out of range for a {source.width}x{source.height} texture.")
    row, column = divmod(index, source.width)
    return invert_value(float(pixels[row, column, 0]), invert)


def _readable_pixels(source: PixelSource, name: str) -> NDArray[np.float32]:
    if not source.readable or source.pixels is None:
        raise UnreadableSource([name], recoverable=source.recoverable)
    return source.pixels


def _sample_rows(source: PixelSource, start: int, stop: int, invert: bool) -> NDArray[np.float32]:
# Vectorized sample() for a block of rows.
    red = source.pixels[start:stop, :, 0]
    return np.float32(1.0) - red if invert else red


def _allocate(width: int, height: int) -> NDArray[np.float32]:
    try:
        return np.empty((height, width, 4), dtype=np.float32)
    except MemoryError as error:
        raise AllocationFailure(width, height) from error


def _quantize(values: NDArray[np.float32]) -> ResultBuffer:
    height, width = values.shape[:2]
    try:
        return ResultBuffer.from_float(values)
    except MemoryError as error:
        raise AllocationFailure(width, height) from error


def _notify(progress: Optional[ProgressCallback], label: str, current: int, total: int) -> None:
    if progress is not None:
        progress(label, current, total)


def _raise_if_cancelled(cancel_event: Optional[threading.Event], label: str, row: int, total: int) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelled(label, row, total)




#                                            === Validation ===

def validate_pack_request(request: PackRequest) -> Tuple[int, int]:
# Checks that at least one texture is assigned, all assigned textures are readable and share the same size.
# Returns the reference size (width, height) taken from the first assigned slot in R, G, B, A order.

    assigned: List[Tuple[Channel, PixelSource]] = [(channel, slot.source) for channel, slot in request.slots() if slot.is_assigned]
    if not assigned:
        raise NoSourceAssigned()

    expected_size: Tuple[int, int] = assigned[0][1].size

    unreadable = [(channel, source) for channel, source in assigned if not source.readable or source.pixels is None]
    if unreadable:
        raise UnreadableSource([channel.label for channel, _ in unreadable],
                               recoverable=any(source.recoverable for _, source in unreadable))
    # Readability first: unreadable sources carry no reliable size.

    for channel, source in assigned:
        if source.size != expected_size:
            raise DimensionMismatch(channel.label, source.size, expected_size)
    return expected_size


def validate_unpack_request(request: UnpackRequest) -> Tuple[int, int]:

    source = request.source
    if source is None:
        raise NoSourceAssigned("Please assign a source texture.")
    if not request.channels:
        raise NoChannelSelected()
    _readable_pixels(source, SOURCE_LABEL)
    return source.size




#                                              === Generation ===

def pack(request: PackRequest, progress: Optional[ProgressCallback] = None, cancel_event: Optional[threading.Event] = None) -> ResultBuffer:
# Combines the slots of an already validated request into one RGBA buffer.
# Assigned slots contribute their red component (inverted if set), empty slots their fallback value.

    reference: Optional[PixelSource] = next((slot.source for _, slot in request.slots() if slot.is_assigned), None)
    if reference is None:
        raise NoSourceAssigned()
    width, height = reference.size
    packed: NDArray[np.float32] = _allocate(width, height)
    interval: int = progress_interval(height)

    for start in range(0, height, interval):
        _raise_if_cancelled(cancel_event, "Packing", start, height)
        stop = min(start + interval, height)

        for channel, slot in request.slots():
            if slot.is_assigned:
                packed[start:stop, :, channel.position] = _sample_rows(slot.source, start, stop, slot.invert)
            else:
                packed[start:stop, :, channel.position] = fallback_value(slot.fallback)
            # Fallback values are never inverted.

        _notify(progress, "Packing", start, height)

    _notify(progress, "Packing", height, height)
    return _quantize(packed)


def _unpack_channel(source: PixelSource, channel: Channel, progress: Optional[ProgressCallback], cancel_event: Optional[threading.Event]) -> ResultBuffer:
# Copies one channel of the source into RGB of a fully opaque grayscale buffer.

    label: str = f"Unpacking {channel.value} channel"
    width, height = source.size
    grayscale: NDArray[np.float32] = _allocate(width, height)
    interval: int = progress_interval(height)

    for start in range(0, height, interval):
        _raise_if_cancelled(cancel_event, label, start, height)
        stop = min(start + interval, height)

        values = source.pixels[start:stop, :, channel.position]
        grayscale[start:stop, :, :3] = values[..., None]
        grayscale[start:stop, :, 3] = 1.0

        _notify(progress, label, start, height)

    _notify(progress, label, height, height)
    return _quantize(grayscale)


def unpack(request: UnpackRequest, progress: Optional[ProgressCallback] = None, cancel_event: Optional[threading.Event] = None) -> Dict[Channel, ResultBuffer]:
# Extracts every requested channel of an already validated request, in R, G, B, A order.
# On failure, buffers created so far are released before the error propagates.

    results: Dict[Channel, ResultBuffer] = {}
    try:
        for channel in Channel.ordered(request.channels):
            results[channel] = _unpack_channel(request.source, channel, progress, cancel_event)
    except Exception:
        release_buffers(results.values())
        raise
    return results




#                                          === Core interface ===

def validate_and_pack(request: PackRequest, progress: Optional[ProgressCallback] = None, cancel_event: Optional[threading.Event] = None) -> ResultBuffer:
    validate_pack_request(request)
    return pack(request, progress, cancel_event)


def validate_and_unpack(request: UnpackRequest, progress: Optional[ProgressCallback] = None, cancel_event: Optional[threading.Event] = None) -> Dict[Channel, ResultBuffer]:
    validate_unpack_request(request)
    return unpack(request, progress, cancel_event)


class ChannelPackerSession:
    """Runs one pack or unpack operation at a time.

    A call made while another one is still running raises OperationInProgress
    instead of waiting.
    """

    def __init__(self) -> None:
        self._busy = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._busy.locked()

    @contextmanager
    def _operation(self) -> Iterator[None]:
        if not self._busy.acquire(blocking=False):
            raise OperationInProgress()
        try:
            yield
        finally:
            self._busy.release()

    def validate_and_pack(self, request: PackRequest, progress: Optional[ProgressCallback] = None, cancel_event: Optional[threading.Event] = None) -> ResultBuffer:
        with self._operation():
            return validate_and_pack(request, progress, cancel_event)

    def validate_and_unpack(self, request: UnpackRequest, progress: Optional[ProgressCallback] = None, cancel_event: Optional[threading.Event] = None) -> Dict[Channel, ResultBuffer]:
        with self._operation():
            return validate_and_unpack(request, progress, cancel_event)




#                                            === Orchestration ===

ConfirmCallback = Callable[[str], bool]
RequestT = TypeVar("RequestT", PackRequest, UnpackRequest)
ResultT = TypeVar("ResultT")


def _ask_user(prompt: str) -> bool:
# Asks on an interactive terminal; anything else counts as "Cancel".
    if not sys.stdin or not sys.stdin.isatty():
        return False
    answer = input(f"{prompt} [y/N] ").strip().lower()
    return answer in ("y", "yes")


def _remediation_approved(error: UnreadableSource, fix_readable: bool, confirm: ConfirmCallback, already_attempted: bool) -> bool:
# Decides whether the orchestrator fixes readability and retries.

    if error.recoverable and not already_attempted:
        prompt = f"{error}\nEnable read permission for all?"
        if fix_readable or confirm(prompt):
            return True
    log(str(error), "error")
    log("Operation aborted because some textures are not readable.", "error")
    return False


def _remediate_pack_request(request: PackRequest) -> PackRequest:
    for channel, slot in request.slots():
        if slot.is_assigned and not slot.source.readable:
            request = request.with_source(channel, make_source_readable(slot.source))
    return request


def _remediate_unpack_request(request: UnpackRequest) -> UnpackRequest:
    return UnpackRequest(make_source_readable(request.source), request.channels)


def _run_with_retry(request: RequestT, operation: Callable[[RequestT], ResultT], remediate: Callable[[RequestT], RequestT],
                    fix_readable: bool, confirm: ConfirmCallback, failure_label: str) -> Tuple[RequestT, Optional[ResultT]]:
# Runs validation + transform; on a recoverable UnreadableSource, remediates and runs the same request again once.
# Returns the request that was finally used and the result, or None after logging the error.

    remediation_attempted: bool = False
    while True:
        try:
            return request, operation(request)
        except UnreadableSource as error:
            if not _remediation_approved(error, fix_readable, confirm, remediation_attempted):
                return request, None
        except ChannelPackerError as error:
            log(f"{failure_label} failed: {error}", "error")
            return request, None

        try:
            request = remediate(request)
        except ChannelPackerError as error:
            log(f"{failure_label} failed: {error}", "error")
            return request, None
        remediation_attempted = True


def run_pack(request: PackRequest, output_path: str, *, session: Optional[ChannelPackerSession] = None, context: Optional[CPContext] = None,
             progress: Optional[ProgressCallback] = None, fix_readable: bool = AUTO_FIX_READABLE, confirm: ConfirmCallback = _ask_user) -> Optional[str]:
# Validates, packs and saves the texture. Returns the saved path, or None if the operation was aborted.

    session = session or ChannelPackerSession()
    context = context or CPContext()

    _, result = _run_with_retry(request, lambda current: session.validate_and_pack(current, progress),
                                _remediate_pack_request, fix_readable, confirm, "Packing")
    if result is None:
        return None

    try:
        saved_path = save_result(result, output_path, context)
    except (OSError, ValueError) as error:
        log(f"Packing failed: cannot save '{output_path}': {error}", "error")
        return None
    finally:
        result.release()
    # The buffer is released whether or not it was written.

    if SHOW_DETAILS:
        log(f"Saved packed texture to {saved_path} ({result.width}x{result.height})", "complete")
    else:
        log(f"Saved packed texture to {saved_path}", "complete")
    return saved_path


def run_unpack(request: UnpackRequest, output_directory: str, *, session: Optional[ChannelPackerSession] = None, context: Optional[CPContext] = None,
               progress: Optional[ProgressCallback] = None, fix_readable: bool = AUTO_FIX_READABLE, confirm: ConfirmCallback = _ask_user) -> List[str]:
# Validates, unpacks and saves one texture per requested channel as <source name>_<channel>.<ext>.
# Returns the saved paths; empty if the operation was aborted or any channel failed to save.

    session = session or ChannelPackerSession()
    context = context or CPContext()
    file_extension: str = context.export_extension or "png"

    request, results = _run_with_retry(request, lambda current: session.validate_and_unpack(current, progress),
                                       _remediate_unpack_request, fix_readable, confirm, "Unpack")
    if results is None:
        return []

    source_name: str = request.source.name
    saved_paths: List[str] = []
    try:
        for channel, result in results.items():
            output_path = os.path.join(output_directory, f"{source_name}_{channel.value}.{file_extension}")
            saved_paths.append(save_result(result, output_path, context))
            log(f"Saved {channel.value} channel to {output_path}", "complete")
    except (OSError, ValueError) as error:
        log(f"Unpack failed: {error}", "error")
        _discard_files(saved_paths)
        return []
    finally:
        release_buffers(results.values())
    return saved_paths


def _discard_files(paths: List[str]) -> None:
# Removes files written before a later save failed, so a run never leaves a partial channel set.
    for path in paths:
        try:
            os.remove(path)
            log(f"Removed {path}", "skip")
        except OSError as error:
            log(f"Could not remove {path}: {error}", "warn")




#                                         === CLI entry point ===

def _build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="channel-packer", description=__doc__.strip())
    subparsers = parser.add_subparsers(dest="command", required=True)

    pack_parser = subparsers.add_parser("pack", help="Combine grayscale textures into a single RGBA image.")
    for channel in Channel:
        letter = channel.value.lower()
        pack_parser.add_argument(f"-{letter}", f"--{channel.label.lower()}", metavar="PATH", help=f"Texture packed into the {channel.label} channel.")
        pack_parser.add_argument(f"--fallback-{letter}", default=DEFAULT_FALLBACK, metavar="COLOUR",
                                 help=f"Fill value when {channel.label} is empty: Black, Gray or White (default: {DEFAULT_FALLBACK}).")
    pack_parser.add_argument("--invert", default="", metavar="CHANNELS", help="Channels whose texture is inverted, e.g., 'A' or 'RG'.")
    pack_parser.add_argument("-o", "--output", default="", help="Output file or folder.")

    unpack_parser = subparsers.add_parser("unpack", help="Extract selected channels into grayscale images.")
    unpack_parser.add_argument("source", help="Texture to unpack.")
    unpack_parser.add_argument("--channels", default=UNPACK_CHANNELS, help=f"Channels to unpack (default: {UNPACK_CHANNELS}).")
    unpack_parser.add_argument("-o", "--output", default="", help="Output folder.")

    for subparser in (pack_parser, unpack_parser):
        subparser.add_argument("--fix-readable", action="store_true", default=AUTO_FIX_READABLE, help="Enable read permission on unreadable textures without asking.")
        subparser.add_argument("--file-type", default=None, help="Output file type: png or tga.")
        subparser.add_argument("-v", "--verbose", action="store_true", default=SHOW_DETAILS, help="Print progress.")
    return parser


def _resolve_pack_output(output: str, context: CPContext) -> str:
# A path with an extension is used as-is; otherwise it is a folder for PACKED_FILENAME.
# The extension must be one of ALLOWED_FILE_TYPES, so -o cannot bypass the lossless formats.

    extension: str = os.path.splitext(output or "")[1]
    if extension:
        if extension.lower().lstrip(".") not in ALLOWED_FILE_TYPES:
            log(f"Aborted: Invalid output extension '{extension}'. Supported: {', '.join(sorted(ALLOWED_FILE_TYPES))}", "error")
            raise SystemExit(1)
        return os.path.abspath(output)
    validate_safe_filename(PACKED_FILENAME)
    directory = resolve_output_directory(output, context)
    return os.path.join(directory, f"{PACKED_FILENAME}.{context.export_extension}")


def _build_pack_request(arguments: argparse.Namespace) -> PackRequest:
    inverted = Channel.parse([arguments.invert]) if arguments.invert else frozenset()
    slots: Dict[str, ChannelSlot] = {}
    for channel in Channel:
        slot_name: str = channel.label.lower() # Matches both the CLI option and the PackRequest field, e.g., "red".
        path: Optional[str] = getattr(arguments, slot_name)
        fallback = FallbackPolicy.from_name(getattr(arguments, f"fallback_{channel.value.lower()}"))
        slots[slot_name] = ChannelSlot(source=load_pixel_source(path) if path else None, invert=channel in inverted, fallback=fallback)
    return PackRequest(**slots)


def main(argv: Optional[Sequence[str]] = None) -> int:
    arguments = _build_argument_parser().parse_args(argv)
    start_time = time.time()

    context = CPContext()
    context_validate_export_extension(context, arguments.file_type)
    load_last_save_path(context)
    progress: Optional[ProgressCallback] = print_progress if arguments.verbose else None

    try:
        if arguments.command == "pack":
            output_path = _resolve_pack_output(arguments.output, context)
            request = _build_pack_request(arguments)
            saved_paths = [run_pack(request, output_path, context=context, progress=progress, fix_readable=arguments.fix_readable)]
            saved_paths = [path for path in saved_paths if path]
        else:
            channels = Channel.parse([arguments.channels])
            request = UnpackRequest(load_pixel_source(arguments.source), channels)
            output_directory = resolve_output_directory(arguments.output, context)
            saved_paths = run_unpack(request, output_directory, context=context, progress=progress, fix_readable=arguments.fix_readable)
    except ChannelPackerError as error:
        log(str(error), "error")
        return 1
    except ValueError as error:
        log(f"Aborted: {error}", "error")
        return 1
    # Loading errors and invalid arguments abort before any processing.

    if not saved_paths:
        return 1

    store_last_save_path(context.last_save_path)
    if arguments.verbose:
        log(f"Execution time: {time.time() - start_time:.2f} seconds", "info")
    return 0


if __name__ == "__main__":
    sys.exit(main())
