"""
Lossless compression for stored blobs.

Compression is applied before encryption during backup and reversed after
decryption during restore. Uses Zstandard frames with the content size
written into the header, so a truncated or corrupt stream is detected on
decompression rather than yielding short output.
"""

from __future__ import annotations

import zstandard

from securebackup.backup.errors import CompressionError

DEFAULT_COMPRESSION_LEVEL = 3
MIN_COMPRESSION_LEVEL = 1
MAX_COMPRESSION_LEVEL = 22


class CompressionCodec:
    """Zstandard compressor/decompressor pair for one run."""

    def __init__(self, level: int = DEFAULT_COMPRESSION_LEVEL) -> None:
        if not MIN_COMPRESSION_LEVEL <= level <= MAX_COMPRESSION_LEVEL:
            raise ValueError(
                f"Compression level must be between {MIN_COMPRESSION_LEVEL} "
                f"and {MAX_COMPRESSION_LEVEL}, got {level}"
            )
        self.level = level
        self._compressor = zstandard.ZstdCompressor(level=level, write_content_size=True)
        self._decompressor = zstandard.ZstdDecompressor()

    def compress(self, data: bytes) -> bytes:
        """
        Compress data into a single Zstandard frame.

        Raises:
            CompressionError: If the compressor fails.
        """
        try:
            return self._compressor.compress(data)
        except zstandard.ZstdError as e:
            raise CompressionError(f"Compression failed: {e}") from e

    def decompress(self, data: bytes, expected_size: int | None = None) -> bytes:
        """
        Decompress a frame produced by compress().

        Args:
            data: Compressed frame.
            expected_size: Original size if known. Bounds the output buffer
                for frames without a content size and is checked against
                the decompressed length.

        Raises:
            CompressionError: If the stream is corrupt, truncated, or does
                not decompress to expected_size bytes.
        """
        max_output_size = max(expected_size, 1) if expected_size is not None else 0
        try:
            result = self._decompressor.decompress(data, max_output_size=max_output_size)
        except zstandard.ZstdError as e:
            raise CompressionError(f"Corrupt compressed stream: {e}") from e

        if expected_size is not None and len(result) != expected_size:
            raise CompressionError(
                f"Decompressed size mismatch: expected {expected_size}, got {len(result)}"
            )
        return result
