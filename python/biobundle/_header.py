# This file is part of biobundle.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

__all__ = ("ImageHeader",)

from collections.abc import Mapping
from typing import final

import numpy as np
import pydantic

from ._errors import MalformedRecordError
from ._format import ImageFormat, MetadataKey

_METADATA_ADAPTER = pydantic.TypeAdapter(dict[str, str])

# Fixed-size prefix of the header sub-format: format code, then JSON length.
_HEADER_PREFIX_DTYPE = np.dtype([("format", ">i4"), ("length", ">i4")])

# Keys shown on the summary line of `ImageHeader.__str__`, by format.
_SUMMARY_KEYS: dict[ImageFormat, tuple[MetadataKey, ...]] = {
    ImageFormat.JPEG: (MetadataKey.COLOR_SPACE, MetadataKey.WIDTH, MetadataKey.HEIGHT, MetadataKey.BANDS),
    ImageFormat.PNG: (MetadataKey.COLOR_SPACE, MetadataKey.WIDTH, MetadataKey.HEIGHT, MetadataKey.BANDS),
    ImageFormat.NIFTI: (
        MetadataKey.X_LENGTH,
        MetadataKey.Y_LENGTH,
        MetadataKey.Z_LENGTH,
        MetadataKey.T_LENGTH,
    ),
    ImageFormat.DICOM: (
        MetadataKey.PATIENT_ID,
        MetadataKey.PATIENT_NAME,
        MetadataKey.ROWS,
        MetadataKey.COLUMNS,
    ),
}


@final
class ImageHeader:
    """Format-tagged metadata for a single image, independent of its pixel or
    voxel content.

    Parameters
    ----------
    storage_format
        Format the image payload is stored in.  Cannot be changed after
        construction.
    metadata, optional
        Initial metadata key/value pairs.  Both keys and values must be
        strings.

    Notes
    -----
    The `metadata` property always returns a copy, so a header cannot be
    modified by mutating the result of an accessor; use `add_metadata`,
    `update_metadata`, or `set_metadata` instead.

    Headers are ordered by storage format only.
    """

    def __init__(self, storage_format: ImageFormat, metadata: Mapping[str, str] | None = None):
        self._storage_format = ImageFormat(storage_format)
        self._metadata: dict[str, str] = {}
        if metadata is not None:
            self.set_metadata(metadata)

    @property
    def storage_format(self) -> ImageFormat:
        """Format the image payload is stored in."""
        return self._storage_format

    @property
    def metadata(self) -> dict[str, str]:
        """A copy of all metadata key/value pairs."""
        return dict(self._metadata)

    def get_metadata(self, key: str, default: str | None = None) -> str | None:
        """Return the value for a metadata key, or ``default`` if it is not
        present.
        """
        return self._metadata.get(key, default)

    def add_metadata(self, key: str, value: str) -> None:
        """Add or replace a single metadata key/value pair."""
        self.update_metadata({key: value})

    def update_metadata(self, metadata: Mapping[str, str]) -> None:
        """Merge the given key/value pairs into this header, replacing any
        existing values for the same keys.

        Raises
        ------
        TypeError
            Raised if any key or value is not a string.
        """
        self._metadata.update(_validate_metadata(metadata))

    def set_metadata(self, metadata: Mapping[str, str]) -> None:
        """Replace all metadata with a copy of the given mapping.

        Raises
        ------
        TypeError
            Raised if any key or value is not a string.
        """
        self._metadata = _validate_metadata(metadata)

    def copy(self) -> ImageHeader:
        """Return an independent copy of this header."""
        return ImageHeader(self._storage_format, self._metadata)

    def to_bytes(self) -> bytes:
        """Serialize the header to the binary form stored in bundle records.

        The layout is a big-endian 32-bit format code, a big-endian 32-bit
        byte count, and that many bytes of UTF-8 JSON holding the metadata
        object.  An empty metadata mapping is written with a zero byte count
        and no JSON.
        """
        json_bytes = _METADATA_ADAPTER.dump_json(self._metadata) if self._metadata else b""
        prefix = np.array([(int(self._storage_format), len(json_bytes))], dtype=_HEADER_PREFIX_DTYPE)
        return prefix.tobytes() + json_bytes

    @classmethod
    def from_bytes(cls, data: bytes | bytearray | memoryview) -> ImageHeader:
        """Deserialize a header written by `to_bytes`.

        Parameters
        ----------
        data
            Header bytes.  Trailing bytes beyond the declared JSON length are
            ignored.

        Returns
        -------
        ImageHeader
            A new header that shares no memory with ``data``.

        Raises
        ------
        MalformedRecordError
            Raised if the bytes are truncated, the format code is unknown, or
            the JSON is not an object of strings.
        """
        data = bytes(data)
        if len(data) < _HEADER_PREFIX_DTYPE.itemsize:
            raise MalformedRecordError(
                f"Image header needs at least {_HEADER_PREFIX_DTYPE.itemsize} bytes; got {len(data)}."
            )
        prefix = np.frombuffer(data, dtype=_HEADER_PREFIX_DTYPE, count=1)[0]
        try:
            storage_format = ImageFormat.from_code(int(prefix["format"]))
        except ValueError as err:
            raise MalformedRecordError(str(err)) from err
        length = int(prefix["length"])
        start = _HEADER_PREFIX_DTYPE.itemsize
        if length < 0 or start + length > len(data):
            raise MalformedRecordError(
                f"Image header declares {length} bytes of metadata, but only "
                f"{len(data) - start} are present."
            )
        if length == 0:
            return cls(storage_format)
        try:
            metadata = _METADATA_ADAPTER.validate_json(data[start : start + length])
        except pydantic.ValidationError as err:
            raise MalformedRecordError(f"Invalid image header metadata: {err}") from err
        result = cls(storage_format)
        result._metadata = metadata
        return result

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ImageHeader):
            return self._storage_format == other._storage_format and self._metadata == other._metadata
        return NotImplemented

    def __lt__(self, other: ImageHeader) -> bool:
        if isinstance(other, ImageHeader):
            return self._storage_format < other._storage_format
        return NotImplemented

    def __le__(self, other: ImageHeader) -> bool:
        if isinstance(other, ImageHeader):
            return self._storage_format <= other._storage_format
        return NotImplemented

    def __gt__(self, other: ImageHeader) -> bool:
        if isinstance(other, ImageHeader):
            return self._storage_format > other._storage_format
        return NotImplemented

    def __ge__(self, other: ImageHeader) -> bool:
        if isinstance(other, ImageHeader):
            return self._storage_format >= other._storage_format
        return NotImplemented

    def __repr__(self) -> str:
        return f"ImageHeader({self._storage_format!r}, {self._metadata!r})"

    def __str__(self) -> str:
        if not self._storage_format.is_defined:
            raise ValueError("Format not specified.")
        summary_keys = _SUMMARY_KEYS[self._storage_format]
        values = [self._metadata.get(key) for key in summary_keys]
        match self._storage_format:
            case ImageFormat.JPEG | ImageFormat.PNG:
                color_space, *dims = values
                dims_str = " x ".join(map(str, dims))
                lines = [f"ImageHeader: ({self._storage_format.name} {color_space}) {dims_str}"]
            case ImageFormat.NIFTI:
                lines = [f"ImageHeader: ({self._storage_format.name}) {' x '.join(map(str, values))}"]
            case ImageFormat.DICOM:
                patient_id, patient_name, rows, columns = values
                lines = [
                    f"ImageHeader: ({self._storage_format.name}) patient_id: {patient_id} "
                    f"patient_name: {patient_name} rows: {rows} columns: {columns}"
                ]
        lines.extend(f"{key}: {value}" for key, value in self._metadata.items() if key not in summary_keys)
        return "\n".join(lines)


def _plain(value: object) -> object:
    # str subclasses (e.g. MetadataKey) are stored as plain strings.
    return str(value) if isinstance(value, str) else value


def _validate_metadata(metadata: Mapping[str, str]) -> dict[str, str]:
    plain = {_plain(key): _plain(value) for key, value in metadata.items()}
    try:
        return _METADATA_ADAPTER.validate_python(plain, strict=True)
    except pydantic.ValidationError as err:
        raise TypeError(f"Image header metadata keys and values must be strings: {err}") from err
