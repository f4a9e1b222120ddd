"""
Binary transport codec.

The bridge between the host and the sandboxed session only carries JSON
values, so recorded bytes travel as "binary strings": every byte becomes the
character with the same code point (0-255). Conversion is done in fixed-size
blocks so no intermediate object grows beyond one block.
"""

from typing import Iterator


BLOCK_SIZE = 8192


def encode(buffer: bytes) -> str:
    """
    Convert a byte buffer into a transport-safe string.

    Args:
        buffer: Bytes of any length.

    Returns:
        String with one character per input byte.
    """
    view = memoryview(buffer)
    length = len(view)
    block_length = (length // BLOCK_SIZE) * BLOCK_SIZE

    parts = []
    for offset in range(0, block_length, BLOCK_SIZE):
        parts.append(bytes(view[offset:offset + BLOCK_SIZE]).decode('latin-1'))

    # Trailing partial block, if the length is not a multiple of the block size.
    if length > block_length:
        parts.append(bytes(view[block_length:length]).decode('latin-1'))

    return ''.join(parts)


def decode(text: str) -> bytes:
    """
    Reconstruct the bytes produced by :func:`encode`.

    Raises:
        ValueError: If the text holds a character above U+00FF.
    """
    try:
        return text.encode('latin-1')
    except UnicodeEncodeError as e:
        raise ValueError(f"Not a binary string: character at {e.start} is out of range") from None


def iter_slices(buffer: bytes, size: int) -> Iterator[bytes]:
    """Split a payload into consecutive slices of at most ``size`` bytes."""
    if size <= 0:
        raise ValueError("size must be positive")
    for offset in range(0, len(buffer), size):
        yield buffer[offset:offset + size]
