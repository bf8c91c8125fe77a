# This file is part of biobundle.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

__all__ = (
    "AlreadyExistsError",
    "AlreadyOpenError",
    "BundleError",
    "InvalidBundleError",
    "MalformedRecordError",
    "NotOpenForReadError",
    "NotOpenForWriteError",
    "PayloadDecodeError",
    "ScanStatus",
    "UnsupportedFormatError",
)

import enum


class BundleError(RuntimeError):
    """Base class for errors raised by this package.

    Low-level I/O failures are reported with the built-in `OSError` instead.
    """


class AlreadyOpenError(BundleError):
    """Exception raised when opening a bundle that is already open."""


class AlreadyExistsError(BundleError, FileExistsError):
    """Exception raised when a bundle to be written already exists and
    overwriting was not requested.
    """


class NotOpenForReadError(BundleError):
    """Exception raised when a read operation is attempted on a bundle that
    is not open for reading.
    """


class NotOpenForWriteError(BundleError):
    """Exception raised when a write operation is attempted on a bundle that
    is not open for writing.
    """


class MalformedRecordError(BundleError):
    """Exception raised when a record's signature or header bytes are not
    structurally valid.
    """


class InvalidBundleError(MalformedRecordError):
    """Exception raised when a bundle index file does not start with the
    expected preamble.
    """


class UnsupportedFormatError(BundleError):
    """Exception raised when no codec is registered for an image format."""


class PayloadDecodeError(BundleError):
    """Exception raised when a codec fails to decode the payload of a
    structurally valid record.
    """


class ScanStatus(enum.Enum):
    """The state of a `BundleReader` scan, and the reason it stopped.

    `BundleReader.next` only returns a `bool`; this enumeration tells an
    exhausted range apart from a scan that had to be abandoned.
    """

    PENDING = enum.auto()
    """No record has been requested yet."""

    OK = enum.auto()
    """The last call to `~BundleReader.next` produced a record."""

    EXHAUSTED = enum.auto()
    """The end of the file or of the requested byte range was reached."""

    SIGNATURE_ERROR = enum.auto()
    """A truncated or invalid record signature was found.

    The scan cannot continue because the signature is the only source of the
    position of the next record.
    """

    IO_ERROR = enum.auto()
    """The header or payload of a record could not be read in full."""

    UNSUPPORTED_FORMAT = enum.auto()
    """A record used a format with no registered codec."""

    @property
    def is_terminal(self) -> bool:
        """Whether no further records will be produced."""
        return self not in (ScanStatus.PENDING, ScanStatus.OK)

    @property
    def is_error(self) -> bool:
        """Whether the scan stopped before reaching the end of its range."""
        return self.is_terminal and self is not ScanStatus.EXHAUSTED
