"""
Calldata word reader.

Bounds-checked access to an ABI-encoded buffer in 32-byte words. Every
read validates its range against the buffer before slicing, so offsets
taken from attacker-controlled calldata can never read past the end.
"""

from __future__ import annotations

from dataclasses import dataclass

from roles_modifier.policy.schema import WORD_SIZE


class CalldataOutOfBounds(Exception):
    """A read fell outside the calldata buffer."""

    def __init__(self, offset: int, size: int, length: int) -> None:
        self.offset = offset
        self.size = size
        self.length = length
        super().__init__(f"read of {size} bytes at {offset} exceeds bound {length}")


def padded_size(length: int) -> int:
    """Round `length` up to a whole number of words."""
    return -(-length // WORD_SIZE) * WORD_SIZE


class WordReader:
    """
    Read-only view over a calldata buffer.

    Every read takes an optional `end`: the exclusive bound of the enclosing
    container. Bytes at or past it belong to something else, even when the
    buffer itself is longer.
    """

    __slots__ = ("data",)

    def __init__(self, data: bytes) -> None:
        self.data = bytes(data)

    def __len__(self) -> int:
        return len(self.data)

    def check(self, offset: int, size: int, end: int | None = None) -> None:
        limit = len(self.data) if end is None else min(end, len(self.data))
        if offset < 0 or size < 0 or offset > limit - size:
            raise CalldataOutOfBounds(offset, size, limit)

    def slice(self, offset: int, size: int, end: int | None = None) -> bytes:
        self.check(offset, size, end)
        return self.data[offset : offset + size]

    def word(self, offset: int, end: int | None = None) -> bytes:
        return self.slice(offset, WORD_SIZE, end)

    def uint(self, offset: int, end: int | None = None) -> int:
        return int.from_bytes(self.word(offset, end), "big")


@dataclass
class HeadCursor:
    """
    Position of the next child head inside a container's encoding.

    `base` is where the container's head region starts; offsets found in
    the heads of non-inline children are relative to it.
    """

    base: int
    position: int

    @classmethod
    def at(cls, base: int) -> HeadCursor:
        return cls(base=base, position=base)

    def advance(self, size: int) -> int:
        """Return the current head position and move past `size` bytes."""
        current = self.position
        self.position += size
        return current
