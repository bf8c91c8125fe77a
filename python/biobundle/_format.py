# This file is part of biobundle.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

__all__ = ("ColorSpace", "ImageFormat", "MetadataKey")

import enum


class ImageFormat(enum.IntEnum):
    """Enumeration of the image storage formats that may appear in a bundle.

    The integer values are the codes written to record signatures and header
    bytes, and must never change.
    """

    UNDEFINED = 0x0
    JPEG = 0x1
    PNG = 0x2
    NIFTI = 0x3
    DICOM = 0x4

    @classmethod
    def from_code(cls, code: int) -> ImageFormat:
        """Look up a format from its integer code.

        Parameters
        ----------
        code
            Integer code, as stored in a record signature.

        Returns
        -------
        ImageFormat
            The matching enumeration member (which may be `UNDEFINED`).

        Raises
        ------
        ValueError
            Raised if no format has the given code.
        """
        try:
            return cls(code)
        except ValueError:
            raise ValueError(f"There is no image format associated with integer [{code}].") from None

    @classmethod
    def from_extension(cls, extension: str) -> ImageFormat:
        """Guess a format from a file extension (with or without the dot).

        Raises
        ------
        ValueError
            Raised if the extension is not recognized.
        """
        ext = extension.lower().removeprefix(".")
        for fmt in cls:
            if ext in fmt.extensions:
                return fmt
        raise ValueError(f"Unrecognized image file extension {extension!r}.")

    @property
    def extensions(self) -> tuple[str, ...]:
        """File extensions used for this format, preferred one first."""
        match self:
            case ImageFormat.JPEG:
                return ("jpg", "jpeg")
            case ImageFormat.PNG:
                return ("png",)
            case ImageFormat.NIFTI:
                return ("nii", "nii.gz")
            case ImageFormat.DICOM:
                return ("dcm", "dicom")
        return ()

    @property
    def is_defined(self) -> bool:
        """Whether this format may be used for a stored record."""
        return self is not ImageFormat.UNDEFINED


class ColorSpace(enum.StrEnum):
    """Color spaces recorded in raster image headers."""

    UNDEFINED = "UNDEFINED"
    RGB = "RGB"
    LUM = "LUM"


class MetadataKey(enum.StrEnum):
    """Header metadata keys recognized by the codecs in this package.

    The string values match those written by existing bundles, so they
    are part of the file format.  Any other key may also be stored.
    """

    SOURCE = "source"
    COLOR_SPACE = "color space"
    WIDTH = "width"
    HEIGHT = "height"
    BANDS = "number bands"
    X_LENGTH = "x-axis"
    Y_LENGTH = "y-axis"
    Z_LENGTH = "z-axis"
    T_LENGTH = "t-axis"
    PATIENT_ID = "patient id"
    PATIENT_NAME = "patient name"
    ROWS = "rows"
    COLUMNS = "columns"
