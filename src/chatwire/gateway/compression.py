"""
zlib-stream transport decompression.

With ``compress=zlib-stream`` the server sends one deflate stream per socket,
split across binary frames. A message is complete when the buffered data ends
with the ``00 00 ff ff`` flush marker; the decompressor is shared for the life
of the socket.
"""

from __future__ import annotations

import zlib

from chatwire.gateway.constants import ZLIB_SUFFIX


class ZlibStreamInflater:
    """Reassemble and inflate zlib-stream frames for one socket."""

    def __init__(self) -> None:
        self._inflator = zlib.decompressobj()
        self._buffer = bytearray()

    @property
    def buffered(self) -> int:
        """Bytes waiting for the flush marker."""
        return len(self._buffer)

    def feed(self, data: bytes) -> bytes | None:
        """
        Add one binary frame.

        Returns:
            The inflated message when ``data`` completes one, else None.

        Raises:
            zlib.error: On corrupt input.
        """
        self._buffer.extend(data)
        if len(self._buffer) < len(ZLIB_SUFFIX) or self._buffer[-4:] != ZLIB_SUFFIX:
            return None
        message = self._inflator.decompress(bytes(self._buffer))
        self._buffer.clear()
        return message

    def reset(self) -> None:
        """Start over for a new socket."""
        self._inflator = zlib.decompressobj()
        self._buffer.clear()
