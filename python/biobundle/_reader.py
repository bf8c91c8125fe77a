# This file is part of biobundle.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

__all__ = ("BundleReader",)

from collections.abc import Iterator
from logging import getLogger
from types import TracebackType
from typing import IO, Self

import fsspec
from lsst.resources import ResourcePath, ResourcePathExpression

from ._errors import MalformedRecordError, ScanStatus, UnsupportedFormatError
from ._format import ImageFormat
from ._framing import SIGNATURE_SIZE, decode_signature, read_fully
from ._header import ImageHeader
from ._images import DomainImage
from .codecs import CodecRegistry

_LOG = getLogger(__name__)

_DEFAULT_PAGE_SIZE = 1 << 20


class BundleReader:
    """A sequential scanner over the records of a bundle data file.

    Parameters
    ----------
    path
        Bundle *data* file to read; convertible to
        `lsst.resources.ResourcePath`.
    start, optional
        Byte offset of the first record to read.  This must be a record
        boundary (0 or an offset from the bundle index).
    end, optional
        Inclusive upper byte bound of the range.  A record is read only if it
        starts at or before this offset, so it may extend past ``end``.  Zero
        means "until the end of the file".
    codecs, optional
        Registry used to decode record payloads.  Defaults to
        `CodecRegistry.default`.
    decode, optional
        If `False`, records are framed and their headers parsed, but payloads
        are not decoded and `current_image` is always `None`.
    page_size, optional
        Minimum number of bytes to read from the underlying file at once.

    Notes
    -----
    A reader over ``[start, end]`` with ``end = offsets[k] - 1`` yields
    exactly the records that begin in that range, so consecutive ranges
    built from the bundle index partition a bundle between independent
    readers.

    Records whose payloads fail to decode are logged and skipped.  A
    truncated or invalid signature, or a short read of a header or payload,
    ends the scan, since the position of the next record is then unknown;
    `status` records why the scan ended.
    """

    def __init__(
        self,
        path: ResourcePathExpression,
        start: int = 0,
        end: int = 0,
        *,
        codecs: CodecRegistry | None = None,
        decode: bool = True,
        page_size: int = _DEFAULT_PAGE_SIZE,
    ):
        if start < 0 or end < 0:
            raise ValueError(f"Byte range [{start}, {end}] must not be negative.")
        self._path = ResourcePath(path)
        self._codecs = codecs if codecs is not None else CodecRegistry.default()
        self._decode = decode
        self._start = start
        self._end = end
        self._offset = start
        self._status = ScanStatus.PENDING
        self._skipped = 0
        self._header: ImageHeader | None = None
        self._image: DomainImage | None = None
        self._payload: bytes | None = None
        self._format = ImageFormat.UNDEFINED
        fs: fsspec.AbstractFileSystem
        fs, fp = self._path.to_fsspec()
        self._stream: IO[bytes] | None = fs.open(fp, "rb", block_size=page_size)
        if start > 0:
            self._advance_to_start()
        _LOG.debug("Reading %s over byte range [%d, %d].", self._path, start, end)

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
        while self.next():
            assert self._header is not None
            yield self._header.copy(), self._image

    @property
    def path(self) -> ResourcePath:
        """The data file being read."""
        return self._path

    @property
    def start(self) -> int:
        """Byte offset the scan started at."""
        return self._start

    @property
    def end(self) -> int:
        """Inclusive upper byte bound of the scan (0 for end of file)."""
        return self._end

    @property
    def offset(self) -> int:
        """Byte offset just past the last record read."""
        return self._offset

    @property
    def status(self) -> ScanStatus:
        """State of the scan, including why it stopped."""
        return self._status

    @property
    def skipped(self) -> int:
        """Number of records discarded because they could not be decoded."""
        return self._skipped

    @property
    def current_header(self) -> ImageHeader | None:
        """A copy of the header of the current record, or `None` if there is
        no current record.
        """
        return self._header.copy() if self._header is not None else None

    @property
    def current_image(self) -> DomainImage | None:
        """The decoded image of the current record, or `None` if there is no
        current record or payloads are not being decoded.
        """
        return self._image

    @property
    def current_payload(self) -> bytes | None:
        """The raw payload bytes of the current record."""
        return self._payload

    @property
    def current_format(self) -> ImageFormat:
        """Storage format of the current record (`ImageFormat.UNDEFINED` if
        there is no current record).
        """
        return self._format

    @property
    def progress(self) -> float:
        """Fraction of the byte range consumed so far, in ``[0, 1]``.

        Only meaningful when `end` is set.  With ``end=0`` and ``start=0``
        this is 0.0 before the first record and 1.0 after it; with
        ``end=0`` and a later ``start`` it is always 0.0.
        """
        span = self._end - self._start + 1
        if span <= 0:
            return 0.0
        return min(max((self._offset - self._start) / span, 0.0), 1.0)

    def get_progress(self) -> float:
        """Return `progress`."""
        return self.progress

    def next(self) -> bool:
        """Advance to the next record in the range.

        Returns
        -------
        bool
            `True` if a record was read (and decoded, unless decoding is
            disabled); `False` if the range is exhausted or the scan had to
            stop, in which case `status` says which.

        Raises
        ------
        UnsupportedFormatError
            Raised if a record uses a format with no registered codec.  The
            scan is over after this, and later calls return `False`.
        """
        self._clear()
        if self._status.is_terminal:
            return False
        if self._stream is None:
            return self._finish(ScanStatus.EXHAUSTED)
        while True:
            if self._end > 0 and self._offset > self._end:
                return self._finish(ScanStatus.EXHAUSTED)
            record_start = self._offset
            signature_bytes = read_fully(self._stream, SIGNATURE_SIZE)
            if not signature_bytes:
                return self._finish(ScanStatus.EXHAUSTED)
            if len(signature_bytes) < SIGNATURE_SIZE:
                _LOG.error(
                    "Truncated record signature (%d bytes) at byte offset %d of %s.",
                    len(signature_bytes),
                    record_start,
                    self._path,
                )
                return self._finish(ScanStatus.SIGNATURE_ERROR)
            try:
                signature = decode_signature(signature_bytes)
            except MalformedRecordError as err:
                _LOG.error("%s Record at byte offset %d of %s.", err, record_start, self._path)
                return self._finish(ScanStatus.SIGNATURE_ERROR)
            header_bytes = read_fully(self._stream, signature.header_length)
            payload = read_fully(self._stream, signature.payload_length)
            if len(header_bytes) != signature.header_length or len(payload) != signature.payload_length:
                _LOG.error(
                    "Unexpected end of file in record at byte offset %d of %s.", record_start, self._path
                )
                return self._finish(ScanStatus.IO_ERROR)
            self._offset += signature.record_size
            try:
                header = ImageHeader.from_bytes(header_bytes)
                if header.storage_format is not signature.format:
                    raise MalformedRecordError(
                        f"Header format {header.storage_format.name} does not match "
                        f"signature format {signature.format.name}."
                    )
            except MalformedRecordError:
                self._skip_record(record_start)
                continue
            image: DomainImage | None = None
            if self._decode:
                try:
                    self._codecs.get_decoder(signature.format)
                except UnsupportedFormatError:
                    self._status = ScanStatus.UNSUPPORTED_FORMAT
                    _LOG.error(
                        "Unsupported storage format in record ending at byte offset %d of %s.",
                        self._offset,
                        self._path,
                    )
                    raise
                try:
                    image = self._codecs.decode(signature.format, payload, header.copy())
                except Exception:
                    self._skip_record(record_start)
                    continue
            self._header = header
            self._image = image
            self._payload = payload
            self._format = signature.format
            self._status = ScanStatus.OK
            return True

    def close(self) -> None:
        """Release the underlying file.

        Safe to call more than once.
        """
        if self._stream is not None:
            self._stream.close()
            self._stream = None
        self._clear()

    def _advance_to_start(self) -> None:
        assert self._stream is not None
        try:
            self._stream.seek(self._start)
        except OSError:
            # Not seekable; read and discard up to the start instead.
            remaining = self._start
            while remaining > 0:
                chunk = self._stream.read(min(remaining, _DEFAULT_PAGE_SIZE))
                if not chunk:
                    break
                remaining -= len(chunk)

    def _skip_record(self, record_start: int) -> None:
        self._skipped += 1
        _LOG.warning(
            "Skipping undecodable record at byte offset %d of %s.",
            record_start,
            self._path,
            exc_info=True,
        )

    def _finish(self, status: ScanStatus) -> bool:
        self._status = status
        return False

    def _clear(self) -> None:
        self._header = None
        self._image = None
        self._payload = None
        self._format = ImageFormat.UNDEFINED
