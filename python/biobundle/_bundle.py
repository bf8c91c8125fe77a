# This file is part of biobundle.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

__all__ = ("BundleMode", "ImageBundle", "merge")

import enum
from collections.abc import Iterable, Iterator, Mapping
from logging import getLogger
from types import TracebackType
from typing import IO, Self

import fsspec
from lsst.resources import ResourcePath, ResourcePathExpression

from ._errors import AlreadyOpenError, NotOpenForReadError, NotOpenForWriteError, ScanStatus
from ._format import ImageFormat
from ._framing import decode_index_preamble, read_offsets
from ._header import ImageHeader
from ._images import DomainImage
from ._reader import BundleReader
from ._writer import BundleWriter, data_path_for
from .codecs import CodecRegistry

_LOG = getLogger(__name__)


class BundleMode(enum.Enum):
    """The state of an `ImageBundle`."""

    UNOPENED = enum.auto()
    WRITE = enum.auto()
    READ = enum.auto()


class ImageBundle:
    """A bundle of images stored as an index file and a data file.

    Parameters
    ----------
    path
        Index file of the bundle; convertible to
        `lsst.resources.ResourcePath`.  The data file has the same name with
        ``.dat`` appended.
    codecs, optional
        Registry used to decode and encode images.  Defaults to
        `CodecRegistry.default`.

    Notes
    -----
    A bundle is always in exactly one of three modes (see `BundleMode`).  It
    starts unopened, moves to write or read mode with `open_for_write` or
    `open_for_read`, and goes back to unopened with `close`.  Write
    operations are only permitted in write mode, and read operations in read
    mode.

    `ImageBundle` is a convenience layer over `BundleWriter` and
    `BundleReader`, which may also be used directly (e.g. to read an
    arbitrary byte range of a bundle's data file).
    """

    def __init__(self, path: ResourcePathExpression, *, codecs: CodecRegistry | None = None):
        self._index_path = ResourcePath(path)
        self._data_path = data_path_for(self._index_path)
        self._codecs = codecs if codecs is not None else CodecRegistry.default()
        self._writer: BundleWriter | None = None
        self._reader: BundleReader | None = None
        self._index_stream: IO[bytes] | None = None

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()

    def __iter__(self) -> Iterator[tuple[ImageHeader, DomainImage | None]]:
        return iter(self._require_reader())

    def __repr__(self) -> str:
        return f"ImageBundle({str(self._index_path)!r}, mode={self.mode.name})"

    @property
    def index_path(self) -> ResourcePath:
        """Path of the index file."""
        return self._index_path

    @property
    def data_path(self) -> ResourcePath:
        """Path of the data file."""
        return self._data_path

    @property
    def codecs(self) -> CodecRegistry:
        """Registry used to decode and encode images."""
        return self._codecs

    @property
    def mode(self) -> BundleMode:
        """Whether the bundle is open, and how."""
        if self._writer is not None:
            return BundleMode.WRITE
        if self._reader is not None:
            return BundleMode.READ
        return BundleMode.UNOPENED

    @property
    def data_size(self) -> int:
        """Size of the data file in bytes."""
        if self._writer is not None:
            return self._writer.offset
        return self._data_path.size()

    @property
    def reader(self) -> BundleReader:
        """The reader used in read mode.

        Raises
        ------
        NotOpenForReadError
            Raised if the bundle is not open for reading.
        """
        return self._require_reader()

    def open_for_write(self, overwrite: bool = False) -> None:
        """Create the bundle files and enter write mode.

        Parameters
        ----------
        overwrite, optional
            Whether to replace an existing bundle.

        Raises
        ------
        AlreadyOpenError
            Raised if the bundle is already open.
        AlreadyExistsError
            Raised if the bundle exists and ``overwrite`` is `False`.
        OSError
            Raised if the files cannot be created.
        """
        self._require_unopened()
        self._writer = BundleWriter.open(self._index_path, overwrite=overwrite, codecs=self._codecs)

    def open_for_read(self, seek_to_index: int = 0, *, decode: bool = True) -> None:
        """Open the bundle and enter read mode.

        Parameters
        ----------
        seek_to_index, optional
            Number of records to skip before the first call to `next`.  The
            bundle index is used to find the byte offset of that record, so
            nothing is read from the data file for the records skipped.
        decode, optional
            Whether to decode record payloads (see `BundleReader`).

        Raises
        ------
        AlreadyOpenError
            Raised if the bundle is already open.
        ValueError
            Raised if ``seek_to_index`` is negative.
        FileNotFoundError
            Raised if the index or data file does not exist.
        InvalidBundleError
            Raised if the index file preamble is invalid.
        OSError
            Raised if ``seek_to_index`` is past the last record, or if reading
            fails.
        """
        self._require_unopened()
        if seek_to_index < 0:
            raise ValueError(f"Image index must not be negative; got {seek_to_index}.")
        for path in (self._index_path, self._data_path):
            if not path.exists():
                raise FileNotFoundError(f"Bundle file {path} not found while attempting open for read.")
        fs: fsspec.AbstractFileSystem
        fs, fp = self._index_path.to_fsspec()
        index_stream = fs.open(fp, "rb")
        try:
            decode_index_preamble(index_stream)
            start = 0
            if seek_to_index > 0:
                offsets = read_offsets(index_stream, seek_to_index)
                if len(offsets) != seek_to_index:
                    raise OSError(
                        f"Failed to seek to image index [{seek_to_index}] of {self._index_path}; "
                        f"it has only {len(offsets)} images."
                    )
                start = offsets[-1]
            reader = BundleReader(self._data_path, start, codecs=self._codecs, decode=decode)
        except BaseException:
            index_stream.close()
            raise
        self._index_stream = index_stream
        self._reader = reader

    def add_image(self, header: ImageHeader, payload: bytes) -> int:
        """Append a record with the given header and encoded payload.

        See `BundleWriter.add_image`.

        Raises
        ------
        NotOpenForWriteError
            Raised if the bundle is not open for writing.
        """
        return self._require_writer().add_image(header, payload)

    def add_image_bytes(
        self,
        payload: bytes,
        image_format: ImageFormat,
        metadata: Mapping[str, str] | None = None,
    ) -> int:
        """Append a record, building its header by decoding the payload.

        See `BundleWriter.add_image_bytes`.
        """
        return self._require_writer().add_image_bytes(payload, image_format, metadata)

    def add_domain_image(self, image: DomainImage) -> int:
        """Encode an image and append it.

        See `BundleWriter.add_domain_image`.
        """
        return self._require_writer().add_domain_image(image)

    def append(self, other: ImageBundle | ResourcePathExpression, *, chunk_size: int = 1 << 20) -> None:
        """Append all records of another bundle to this one.

        Parameters
        ----------
        other
            Bundle to append, or the path of its index file.  It is not
            modified.
        chunk_size, optional
            Number of bytes of the data file to copy at a time.

        Raises
        ------
        NotOpenForWriteError
            Raised if this bundle is not open for writing.
        AlreadyOpenError
            Raised if the other bundle is currently open for writing.
        ValueError
            Raised if the other bundle is this bundle.
        """
        writer = self._require_writer()
        if isinstance(other, ImageBundle):
            if other.mode is BundleMode.WRITE:
                raise AlreadyOpenError(f"Cannot append bundle {other.index_path} while it is being written.")
            other = other.index_path
        other = ResourcePath(other)
        if other == self._index_path:
            raise ValueError(f"Cannot append bundle {other} to itself.")
        writer.append_bundle(other, chunk_size=chunk_size)

    def next(self) -> bool:
        """Advance to the next record.

        See `BundleReader.next`.

        Raises
        ------
        NotOpenForReadError
            Raised if the bundle is not open for reading.
        """
        return self._require_reader().next()

    @property
    def current_header(self) -> ImageHeader | None:
        """A copy of the header of the current record."""
        return self._require_reader().current_header

    @property
    def current_image(self) -> DomainImage | None:
        """The decoded image of the current record."""
        return self._require_reader().current_image

    @property
    def status(self) -> ScanStatus:
        """State of the scan (see `BundleReader.status`)."""
        return self._require_reader().status

    def read_offsets(self, maximum: int = 0) -> list[int]:
        """Read record end offsets from the index file.

        Offsets are read from where the last read left off; right after
        `open_for_read` that is the first record after any skipped by
        ``seek_to_index``.

        Parameters
        ----------
        maximum, optional
            Maximum number of offsets to read; 0 reads them all.

        Raises
        ------
        NotOpenForReadError
            Raised if the bundle is not open for reading.
        """
        self._require_reader()
        assert self._index_stream is not None
        return read_offsets(self._index_stream, maximum)

    def read_all_offsets(self) -> list[int]:
        """Read all remaining record end offsets from the index file."""
        return self.read_offsets(0)

    def close(self) -> None:
        """Close any open files and return to `BundleMode.UNOPENED`.

        Safe to call more than once.
        """
        try:
            if self._writer is not None:
                self._writer.close()
            if self._reader is not None:
                self._reader.close()
            if self._index_stream is not None:
                self._index_stream.close()
        finally:
            self._writer = None
            self._reader = None
            self._index_stream = None

    def _require_unopened(self) -> None:
        if self.mode is not BundleMode.UNOPENED:
            raise AlreadyOpenError(f"Bundle {self._index_path} is already open ({self.mode.name}).")

    def _require_writer(self) -> BundleWriter:
        if self._writer is None:
            raise NotOpenForWriteError(
                f"Bundle {self._index_path} is not opened for writing. Must successfully open "
                "the bundle for writing before calling this method."
            )
        return self._writer

    def _require_reader(self) -> BundleReader:
        if self._reader is None:
            raise NotOpenForReadError(
                f"Bundle {self._index_path} is not opened for reading. Must successfully open "
                "the bundle for reading before calling this method."
            )
        return self._reader


def merge(
    target: ResourcePathExpression,
    sources: Iterable[ResourcePathExpression],
    *,
    overwrite: bool = False,
    codecs: CodecRegistry | None = None,
    chunk_size: int = 1 << 20,
) -> int:
    """Create a bundle holding the records of several others, in order.

    Parameters
    ----------
    target
        Index file of the bundle to create.
    sources
        Index files of the bundles to concatenate.
    overwrite, optional
        Whether to replace an existing bundle at ``target``.
    codecs, optional
        Registry for the new bundle.
    chunk_size, optional
        Number of bytes of each data file to copy at a time.

    Returns
    -------
    int
        The number of records in the new bundle.

    Raises
    ------
    ValueError
        Raised if ``target`` is also one of ``sources``.
    """
    target = ResourcePath(target)
    sources = [ResourcePath(source) for source in sources]
    if target in sources:
        raise ValueError(f"Cannot merge bundle {target} into itself.")
    count = 0
    with BundleWriter.open(target, overwrite=overwrite, codecs=codecs) as writer:
        for source in sources:
            count += len(writer.append_bundle(source, chunk_size=chunk_size))
    _LOG.info("Merged %d records into %s.", count, target)
    return count
