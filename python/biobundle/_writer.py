# This file is part of biobundle.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

__all__ = ("DATA_FILE_SUFFIX", "BundleWriter", "data_path_for")

from collections.abc import Mapping
from logging import getLogger
from types import TracebackType
from typing import IO, Self

import fsspec
from lsst.resources import ResourcePath, ResourcePathExpression

from ._errors import AlreadyExistsError, NotOpenForWriteError
from ._format import ImageFormat
from ._framing import (
    SIGNATURE_SIZE,
    decode_index_preamble,
    encode_index_preamble,
    encode_offsets,
    encode_signature,
    read_offsets,
)
from ._header import ImageHeader
from ._images import DomainImage
from .codecs import CodecRegistry

_LOG = getLogger(__name__)

DATA_FILE_SUFFIX = ".dat"


def data_path_for(index_path: ResourcePathExpression) -> ResourcePath:
    """Return the path of the data file that goes with a bundle index file.

    The data file is the index file with ``.dat`` appended to its name.
    """
    index_path = ResourcePath(index_path)
    return index_path.parent().join(index_path.basename() + DATA_FILE_SUFFIX)


def _open_binary(path: ResourcePath, mode: str) -> IO[bytes]:
    fs: fsspec.AbstractFileSystem
    fs, fp = path.to_fsspec()
    return fs.open(fp, mode)


class BundleWriter:
    """An append-only writer for a new bundle.

    Instances should be created with `open`, and closed with `close` or by
    using them as context managers.

    Parameters
    ----------
    index_stream
        Writable stream for the index file, already holding the preamble.
    data_stream
        Writable stream for the (empty) data file.
    codecs
        Registry used by `add_image_bytes` and `add_domain_image`.
    path
        Path of the index file, for diagnostics.

    Notes
    -----
    Records are written directly to the data file, and each record's end
    offset is appended to the index file as soon as the record has been
    written.  Nothing is buffered beyond what the underlying streams do, and
    nothing is rolled back: if a write fails, both files are closed and the
    bundle should be discarded.
    """

    def __init__(
        self,
        index_stream: IO[bytes],
        data_stream: IO[bytes],
        *,
        codecs: CodecRegistry,
        path: ResourcePath | None = None,
    ):
        self._index_stream: IO[bytes] | None = index_stream
        self._data_stream: IO[bytes] | None = data_stream
        self._codecs = codecs
        self._path = path
        self._offset = 0

    @classmethod
    def open(
        cls,
        path: ResourcePathExpression,
        *,
        overwrite: bool = False,
        codecs: CodecRegistry | None = None,
    ) -> BundleWriter:
        """Create a new, empty bundle.

        Parameters
        ----------
        path
            Index file to create; convertible to
            `lsst.resources.ResourcePath`.  The data file is created next to
            it (see `data_path_for`).
        overwrite, optional
            Whether to replace an existing bundle at the same location.
        codecs, optional
            Registry used to decode and encode images.  Defaults to
            `CodecRegistry.default`.

        Returns
        -------
        BundleWriter
            An open writer, with the index preamble already written.

        Raises
        ------
        AlreadyExistsError
            Raised if the index or data file exists and ``overwrite`` is
            `False`.
        OSError
            Raised if either file cannot be created.
        """
        index_path = ResourcePath(path)
        data_path = data_path_for(index_path)
        if not overwrite:
            for existing in (index_path, data_path):
                if existing.exists():
                    raise AlreadyExistsError(f"Bundle file {existing} already exists.")
        index_stream = _open_binary(index_path, "wb")
        try:
            data_stream = _open_binary(data_path, "wb")
        except BaseException:
            index_stream.close()
            raise
        try:
            index_stream.write(encode_index_preamble())
        except BaseException:
            try:
                data_stream.close()
            finally:
                index_stream.close()
            raise
        _LOG.debug("Created bundle %s.", index_path)
        return cls(
            index_stream,
            data_stream,
            codecs=codecs if codecs is not None else CodecRegistry.default(),
            path=index_path,
        )

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()

    @property
    def offset(self) -> int:
        """Length of the data file written so far, which is also the end
        offset of the last record.
        """
        return self._offset

    @property
    def closed(self) -> bool:
        """Whether the writer has been closed."""
        return self._data_stream is None

    @property
    def codecs(self) -> CodecRegistry:
        """Registry used to decode and encode images."""
        return self._codecs

    def add_image(self, header: ImageHeader, payload: bytes) -> int:
        """Append a record.

        Parameters
        ----------
        header
            Header for the record.  Its storage format is used as the record
            format.
        payload
            Encoded image bytes.  These are not checked against the header or
            decoded.

        Returns
        -------
        int
            The end offset of the new record, as written to the index.

        Raises
        ------
        NotOpenForWriteError
            Raised if the writer has been closed.
        ValueError
            Raised if the payload is empty or the header's storage format is
            `ImageFormat.UNDEFINED`; nothing is written in this case.
        OSError
            Raised if writing fails; the writer is closed first.
        """
        index_stream, data_stream = self._require_open()
        if not header.storage_format.is_defined:
            raise ValueError("Cannot add an image with an UNDEFINED storage format.")
        if not payload:
            raise ValueError("Cannot add an image with an empty payload.")
        header_bytes = header.to_bytes()
        offset = self._offset + SIGNATURE_SIZE + len(header_bytes) + len(payload)
        try:
            data_stream.write(encode_signature(len(header_bytes), len(payload), header.storage_format))
            data_stream.write(header_bytes)
            data_stream.write(payload)
            index_stream.write(encode_offsets(offset))
        except OSError:
            _LOG.error("Failed to write record ending at byte offset %d of %s.", offset, self._path)
            self._abort()
            raise
        self._offset = offset
        return offset

    def add_image_bytes(
        self,
        payload: bytes,
        image_format: ImageFormat,
        metadata: Mapping[str, str] | None = None,
    ) -> int:
        """Append a record, building its header by decoding the payload.

        Parameters
        ----------
        payload
            Encoded image bytes.
        image_format
            Storage format of the payload.
        metadata, optional
            Extra metadata to merge into the decoded header (e.g. a
            ``source`` entry).

        Returns
        -------
        int
            The end offset of the new record.

        Raises
        ------
        UnsupportedFormatError
            Raised if no codec is registered for the format.
        PayloadDecodeError
            Raised if the payload's header cannot be decoded.
        """
        self._require_open()
        header = self._codecs.get_decoder(ImageFormat(image_format)).decode_header(payload)
        if metadata:
            header.update_metadata(metadata)
        return self.add_image(header, payload)

    def add_domain_image(self, image: DomainImage) -> int:
        """Encode an image in its header's storage format and append it.

        Returns
        -------
        int
            The end offset of the new record.
        """
        self._require_open()
        return self.add_image(image.header, self._codecs.encode(image))

    def append_bundle(self, path: ResourcePathExpression, *, chunk_size: int = 1 << 20) -> list[int]:
        """Append all records of another bundle.

        The other bundle's data file is copied verbatim and its index offsets
        are shifted by the current `offset`.

        Parameters
        ----------
        path
            Index file of the bundle to append.
        chunk_size, optional
            Number of bytes to copy at a time.

        Returns
        -------
        list [ `int` ]
            The new index entries, in order.

        Raises
        ------
        InvalidBundleError
            Raised if the other bundle's index preamble is invalid.
        OSError
            Raised if reading or writing fails.  The target bundle is left
            corrupt in this case.
        """
        index_stream, data_stream = self._require_open()
        source_path = ResourcePath(path)
        with _open_binary(source_path, "rb") as source_index:
            decode_index_preamble(source_index)
            source_offsets = read_offsets(source_index)
        copied = 0
        with _open_binary(data_path_for(source_path), "rb") as source_data:
            while chunk := source_data.read(chunk_size):
                data_stream.write(chunk)
                copied += len(chunk)
        base = self._offset
        shifted = [base + offset for offset in source_offsets]
        if shifted:
            index_stream.write(encode_offsets(shifted))
        self._offset = base + copied
        _LOG.debug("Appended %d records from %s to %s.", len(shifted), source_path, self._path)
        return shifted

    def flush(self) -> None:
        """Flush both files."""
        index_stream, data_stream = self._require_open()
        data_stream.flush()
        index_stream.flush()

    def close(self) -> None:
        """Flush and close both files.

        Safe to call more than once.
        """
        try:
            if self._data_stream is not None:
                self._data_stream.close()
        finally:
            self._data_stream = None
            if self._index_stream is not None:
                self._index_stream.close()
            self._index_stream = None

    def _require_open(self) -> tuple[IO[bytes], IO[bytes]]:
        if self._index_stream is None or self._data_stream is None:
            raise NotOpenForWriteError(f"Bundle {self._path} is not open for writing.")
        return self._index_stream, self._data_stream

    def _abort(self) -> None:
        try:
            self.close()
        except OSError:
            _LOG.warning("Failed to close bundle %s after a write error.", self._path, exc_info=True)
