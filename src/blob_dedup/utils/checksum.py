"""Content digests for uploads.

The digest is the base64 encoding of the binary hash, which is what
storage services (S3 Content-MD5, GCS md5Hash) report and what clients
send ahead of a direct upload.
"""

from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass
from typing import BinaryIO

from blob_dedup.errors import MalformedUploadError, UploadReadError

DEFAULT_CHUNK_SIZE = 5 * 1024 * 1024


@dataclass(frozen=True)
class ContentDigest:
    """Checksum and size of a byte stream."""

    checksum: str
    byte_size: int


class ChecksumComputer:
    """Streams a file-like object through a hash function.

    Usage:
        computer = ChecksumComputer()
        digest = computer.compute(io)
        digest.checksum  # "mO1Q...=="
    """

    def __init__(self, algorithm: str = "md5", *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        if algorithm not in hashlib.algorithms_available:
            raise ValueError(f"Unsupported checksum algorithm: {algorithm}")
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self._algorithm = algorithm
        self._chunk_size = chunk_size

    @property
    def algorithm(self) -> str:
        return self._algorithm

    def compute(self, io: BinaryIO) -> ContentDigest:
        """Digest the remaining content of ``io``.

        The stream is put back at the position it started from, so the same
        object can be handed to a storage service and the bytes it sends are
        exactly the bytes that were hashed.

        Raises:
            UploadReadError: If the stream cannot be read or cannot be rewound.
            MalformedUploadError: If the stream yields something other than bytes.
        """
        if not io.seekable():
            raise UploadReadError(
                "Upload stream is not rewindable; its bytes cannot be hashed and then stored"
            )

        hasher = hashlib.new(self._algorithm)
        byte_size = 0
        try:
            start = io.tell()
            while chunk := io.read(self._chunk_size):
                if not isinstance(chunk, (bytes, bytearray, memoryview)):
                    raise MalformedUploadError(
                        f"Upload stream returned {type(chunk).__name__}, expected bytes"
                    )
                hasher.update(chunk)
                byte_size += len(chunk)
            io.seek(start)
        except OSError as exc:
            raise UploadReadError(f"Could not read upload content: {exc}") from exc

        checksum = base64.b64encode(hasher.digest()).decode("ascii")
        if not checksum:
            raise MalformedUploadError("No checksum could be computed for upload")
        return ContentDigest(checksum=checksum, byte_size=byte_size)

    def compute_bytes(self, data: bytes) -> ContentDigest:
        hasher = hashlib.new(self._algorithm, data)
        return ContentDigest(
            checksum=base64.b64encode(hasher.digest()).decode("ascii"), byte_size=len(data)
        )
