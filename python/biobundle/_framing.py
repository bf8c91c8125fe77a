# This file is part of biobundle.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

"""Low-level binary layout of bundle data and index files.

A bundle data file is a contiguous sequence of records with no padding.  Each
record is:

- a 12-byte signature of three big-endian 32-bit integers: the header length,
  the payload length, and the `ImageFormat` code;
- the header bytes (see `ImageHeader.to_bytes`);
- the raw, codec-specific payload bytes.

A bundle index file starts with a 24-byte preamble (a 32-bit magic number,
two reserved 64-bit zeros, and a 32-bit count of extra bytes to skip), which
is followed by one big-endian 64-bit offset per record, each marking the
position in the data file just after that record.
"""

from __future__ import annotations

__all__ = (
    "INDEX_MAGIC",
    "INDEX_PREAMBLE_SIZE",
    "OFFSET_SIZE",
    "SIGNATURE_SIZE",
    "RecordSignature",
    "decode_index_preamble",
    "decode_offsets",
    "decode_signature",
    "encode_index_preamble",
    "encode_offsets",
    "encode_signature",
    "read_fully",
    "read_offsets",
)

from typing import IO, NamedTuple

import numpy as np

from ._errors import InvalidBundleError, MalformedRecordError
from ._format import ImageFormat

INDEX_MAGIC = 0x81911B18

_SIGNATURE_DTYPE = np.dtype([("header_length", ">i4"), ("payload_length", ">i4"), ("format", ">i4")])

_INDEX_PREAMBLE_DTYPE = np.dtype(
    [("magic", ">u4"), ("reserved1", ">i8"), ("reserved2", ">i8"), ("skip", ">i4")]
)

_OFFSET_DTYPE = np.dtype(">i8")

SIGNATURE_SIZE = _SIGNATURE_DTYPE.itemsize
INDEX_PREAMBLE_SIZE = _INDEX_PREAMBLE_DTYPE.itemsize
OFFSET_SIZE = _OFFSET_DTYPE.itemsize


class RecordSignature(NamedTuple):
    """The decoded form of a record signature."""

    header_length: int
    """Number of header bytes following the signature."""

    payload_length: int
    """Number of payload bytes following the header."""

    format: ImageFormat
    """Storage format of the payload."""

    @property
    def record_size(self) -> int:
        """Total size of the record in bytes, including the signature."""
        return SIGNATURE_SIZE + self.header_length + self.payload_length


def encode_signature(header_length: int, payload_length: int, format_code: int) -> bytes:
    """Pack the three signature fields into 12 big-endian bytes."""
    return np.array([(header_length, payload_length, format_code)], dtype=_SIGNATURE_DTYPE).tobytes()


def decode_signature(data: bytes | bytearray | memoryview) -> RecordSignature:
    """Unpack and validate a record signature.

    Parameters
    ----------
    data
        Exactly `SIGNATURE_SIZE` bytes.

    Returns
    -------
    RecordSignature
        The header length, payload length, and storage format.

    Raises
    ------
    MalformedRecordError
        Raised if the data has the wrong size, either length is not
        positive, or the format code is unknown or `ImageFormat.UNDEFINED`.
    """
    if len(data) != SIGNATURE_SIZE:
        raise MalformedRecordError(
            f"Record signature must be {SIGNATURE_SIZE} bytes; got {len(data)}."
        )
    row = np.frombuffer(data, dtype=_SIGNATURE_DTYPE, count=1)[0]
    header_length = int(row["header_length"])
    if header_length <= 0:
        raise MalformedRecordError(f"Found image header length {header_length} <= 0.")
    payload_length = int(row["payload_length"])
    if payload_length <= 0:
        raise MalformedRecordError(f"Found image payload length {payload_length} <= 0.")
    try:
        image_format = ImageFormat.from_code(int(row["format"]))
    except ValueError as err:
        raise MalformedRecordError(f"Found invalid image storage format: {err}") from err
    if not image_format.is_defined:
        raise MalformedRecordError("Found UNDEFINED image storage format.")
    return RecordSignature(header_length, payload_length, image_format)


def encode_index_preamble() -> bytes:
    """Return the fixed preamble written at the start of every index file."""
    return np.array([(INDEX_MAGIC, 0, 0, 0)], dtype=_INDEX_PREAMBLE_DTYPE).tobytes()


def decode_index_preamble(stream: IO[bytes]) -> None:
    """Read and check an index file preamble, leaving the stream positioned
    at the first offset.

    Raises
    ------
    InvalidBundleError
        Raised if the preamble is truncated or the magic number does not
        match.
    """
    data = read_fully(stream, INDEX_PREAMBLE_SIZE)
    if len(data) != INDEX_PREAMBLE_SIZE:
        raise InvalidBundleError("Corrupted bundle index: preamble is truncated.")
    row = np.frombuffer(data, dtype=_INDEX_PREAMBLE_DTYPE, count=1)[0]
    if int(row["magic"]) != INDEX_MAGIC:
        raise InvalidBundleError("Corrupted bundle index: signature mismatch.")
    skip = int(row["skip"])
    if skip > 0 and len(read_fully(stream, skip)) != skip:
        raise InvalidBundleError("Corrupted bundle index: preamble is truncated.")


def encode_offsets(offsets: int | list[int]) -> bytes:
    """Pack one or more record end offsets for the index file."""
    return np.array(offsets, dtype=_OFFSET_DTYPE).tobytes()


def decode_offsets(data: bytes) -> list[int]:
    """Unpack record end offsets read from an index file.

    A trailing partial offset (from a torn write) is ignored.
    """
    count = len(data) // OFFSET_SIZE
    return np.frombuffer(data, dtype=_OFFSET_DTYPE, count=count).tolist()


def read_offsets(stream: IO[bytes], maximum: int = 0) -> list[int]:
    """Read record end offsets from an index stream positioned after the
    preamble.

    Parameters
    ----------
    stream
        Index file stream.
    maximum, optional
        Maximum number of offsets to read; 0 reads to the end of the stream.

    Returns
    -------
    list [ `int` ]
        The offsets read, which may be fewer than ``maximum``.
    """
    if maximum > 0:
        return decode_offsets(read_fully(stream, maximum * OFFSET_SIZE))
    return decode_offsets(stream.read())


def read_fully(stream: IO[bytes], size: int) -> bytes:
    """Read up to ``size`` bytes, looping over short reads.

    Fewer than ``size`` bytes are returned only if the end of the stream is
    reached first.
    """
    chunks: list[bytes] = []
    remaining = size
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)
