from dataclasses import dataclass, field, replace
from enum import Enum
from typing import FrozenSet, Iterable, Iterator, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from backend.image_lib import ImageObject, expand_to_rgba, from_array_u8
from settings import CHANNEL_LABELS


class Channel(str, Enum):
    R = "R"
    G = "G"
    B = "B"
    A = "A"

    @property
    def position(self) -> int:
    # Position of the channel in an RGBA pixel.
        return "RGBA".index(self.value)

    @property
    def label(self) -> str:
        return CHANNEL_LABELS[self.value]

    @classmethod
    def parse(cls, names: Iterable[str]) -> FrozenSet["Channel"]:
    # Accepts "RGB", ["r", "a"], "R,G" or "r, g"; unknown letters raise ValueError.
        channels = set()
        for name in names:
            for letter in "".join(str(name).replace(",", " ").split()).upper():
                channels.add(cls(letter))
        return frozenset(channels)

    @classmethod
    def ordered(cls, channels: Iterable["Channel"]) -> Tuple["Channel", ...]:
        selected = set(channels)
        return tuple(channel for channel in cls if channel in selected)


class FallbackPolicy(Enum):
    BLACK = 0.0
    GRAY = 0.5
    WHITE = 1.0

    @classmethod
    def from_name(cls, name: str) -> "FallbackPolicy":
    # Case-insensitive; accepts the "grey" spelling.
        normalized = (name or "").strip().upper()
        if normalized == "GREY":
            normalized = "GRAY"
        try:
            return cls[normalized]
        except KeyError:
            allowed = ", ".join(policy.name.capitalize() for policy in cls)
            raise ValueError(f"Unknown fallback '{name}'. Supported: {allowed}") from None


@dataclass(frozen=True)
class PixelSource:
    name: str # Display name, used for output file names, e.g., "T_Wall_Mask".
    width: int
    height: int
    pixels: Optional[NDArray[np.float32]] = field(default=None, repr=False, compare=False) # Float RGBA (H,W,4) in 0..1; None when not readable.
    readable: bool = True # Whether the pixel data can be accessed.
    path: Optional[str] = None # Asset handle the source was loaded from, if any.
    recoverable: bool = True # Whether a readability remediation can succeed for this source.

    def __post_init__(self) -> None:
        if self.pixels is not None and self.pixels.shape[:2] != (self.height, self.width):
            raise ValueError(
                f"Pixel array {self.pixels.shape[1]}x{self.pixels.shape[0]} does not match "
                f"declared size {self.width}x{self.height} for '{self.name}'.")

    @classmethod
    def from_array(cls, name: str, values: NDArray, path: Optional[str] = None) -> "PixelSource":
    # Builds a readable source from a grayscale, RGB or RGBA float array.
        pixels = expand_to_rgba(values)
        pixels.setflags(write=False)
        height, width = pixels.shape[:2]
        return cls(name=name, width=width, height=height, pixels=pixels, path=path)

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height


@dataclass(frozen=True)
class ChannelSlot:
    source: Optional[PixelSource] = None # Texture packed into the channel; empty uses the fallback.
    invert: bool = False # Inverts the source values; never applied to the fallback.
    fallback: FallbackPolicy = FallbackPolicy.BLACK

    @property
    def is_assigned(self) -> bool:
        return self.source is not None


@dataclass(frozen=True)
class PackRequest:
    red: ChannelSlot = field(default_factory=ChannelSlot)
    green: ChannelSlot = field(default_factory=ChannelSlot)
    blue: ChannelSlot = field(default_factory=ChannelSlot)
    alpha: ChannelSlot = field(default_factory=ChannelSlot)

    def slots(self) -> Iterator[Tuple[Channel, ChannelSlot]]:
    # Always in R, G, B, A order.
        yield Channel.R, self.red
        yield Channel.G, self.green
        yield Channel.B, self.blue
        yield Channel.A, self.alpha

    def slot(self, channel: Channel) -> ChannelSlot:
        return dict(self.slots())[channel]

    def with_source(self, channel: Channel, source: Optional[PixelSource]) -> "PackRequest":
    # Returns a copy with the slot's source replaced, keeping its invert and fallback.
        field_name = {Channel.R: "red", Channel.G: "green", Channel.B: "blue", Channel.A: "alpha"}[channel]
        return replace(self, **{field_name: replace(self.slot(channel), source=source)})


@dataclass(frozen=True)
class UnpackRequest:
    source: Optional[PixelSource] = None
    channels: FrozenSet[Channel] = frozenset(Channel) # Channels extracted into separate grayscale images.


class ResultBuffer:
    """8bit RGBA pixels produced by a pack or unpack call.

    The caller owns the buffer and has to call release() once it is saved or
    no longer needed; there is no implicit cleanup.
    """

    mode: str = "RGBA"

    def __init__(self, data: NDArray[np.uint8]) -> None:
        if data.ndim != 3 or data.shape[2] != 4 or data.dtype != np.uint8:
            raise ValueError(f"Expected a uint8 (H, W, 4) array, got {data.dtype} {data.shape}.")
        self._data: Optional[NDArray[np.uint8]] = data
        self.height, self.width = data.shape[:2]

    @classmethod
    def from_float(cls, values: NDArray[np.float32]) -> "ResultBuffer":
    # Quantizes 0..1 floats to 8bit with round-half-to-even.
        return cls(np.rint(np.clip(values, 0.0, 1.0) * 255.0).astype(np.uint8))

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    @property
    def released(self) -> bool:
        return self._data is None

    @property
    def data(self) -> NDArray[np.uint8]:
        if self._data is None:
            raise ValueError("Result buffer has already been released.")
        return self._data

    def pixel(self, x: int, y: int) -> Tuple[float, float, float, float]:
    # Returns the RGBA value at (x, y) in 0..1.
        r, g, b, a = (int(value) for value in self.data[y, x])
        return r / 255.0, g / 255.0, b / 255.0, a / 255.0

    def to_float(self) -> NDArray[np.float32]:
        return self.data.astype(np.float32) / 255.0

    def to_image(self) -> ImageObject:
        return from_array_u8(self.data, self.mode)

    def release(self) -> None:
        self._data = None

    def __repr__(self) -> str:
        state = "released" if self.released else f"{self.width}x{self.height}"
        return f"<ResultBuffer {self.mode} {state}>"
