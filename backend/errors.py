""" Errors reported by the channel packing engine. Only UnreadableSource can be retried. """

from typing import List, Sequence, Tuple


class ChannelPackerError(Exception):
    recoverable: bool = False # True when the caller may remediate and run the same request again.


class NoSourceAssigned(ChannelPackerError):
    def __init__(self, message: str = "Please assign at least one texture.") -> None:
        super().__init__(message)


class NoChannelSelected(ChannelPackerError):
    def __init__(self) -> None:
        super().__init__("Please select at least one channel to unpack.")


class UnreadableSource(ChannelPackerError):
# Raised when assigned sources exist but their pixels cannot be read.

    def __init__(self, names: Sequence[str], recoverable: bool = True) -> None:
        self.names: List[str] = list(names) # Slot labels, e.g., ["Red", "Alpha"] or ["Source"].
        self.recoverable = recoverable
        listed = "\n".join(f"- {name}" for name in self.names)
        super().__init__(f"The following textures are not readable:\n{listed}")


class DimensionMismatch(ChannelPackerError):
    def __init__(self, name: str, actual: Tuple[int, int], expected: Tuple[int, int]) -> None:
        self.name = name
        self.actual = actual
        self.expected = expected
        super().__init__(
            f"All textures must have the same dimensions. {name} texture is "
            f"{actual[0]}x{actual[1]}, expected {expected[0]}x{expected[1]}.")


class SourceNotLoadable(ChannelPackerError):
# The asset handle does not point at a loadable image.

    def __init__(self, name: str, reason: str = "") -> None:
        self.name = name
        self.reason = reason
        message = f"Texture '{name}' is not an imported asset."
        super().__init__(f"{message} {reason}" if reason else message)


class AllocationFailure(ChannelPackerError):
    def __init__(self, width: int, height: int) -> None:
        super().__init__(f"Cannot allocate a {width}x{height} result buffer.")


class OperationInProgress(ChannelPackerError):
    def __init__(self) -> None:
        super().__init__("Another pack or unpack operation is still running.")


class OperationCancelled(ChannelPackerError):
    def __init__(self, label: str, row: int, total: int) -> None:
        self.row = row
        super().__init__(f"{label} cancelled at row {row}/{total}.")
