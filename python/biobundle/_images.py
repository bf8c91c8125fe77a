# This file is part of biobundle.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

__all__ = ("DicomImage", "DomainImage", "NiftiImage", "RasterImage")

from functools import cached_property
from typing import TYPE_CHECKING, Any, ClassVar, final

import numpy as np

from ._format import ColorSpace, ImageFormat, MetadataKey
from ._header import ImageHeader

if TYPE_CHECKING:
    import nibabel
    import pydicom


def _int_metadata(header: ImageHeader, key: MetadataKey) -> int:
    value = header.get_metadata(key)
    if value is None:
        raise KeyError(f"Image header has no {key.value!r} entry.")
    return int(value)


@final
class RasterImage:
    """A decoded 2-d raster (JPEG or PNG) image.

    Parameters
    ----------
    header
        Header with (at least) width, height, number of bands, and color
        space entries.
    pixels
        Array of 8-bit samples with shape ``(height, width, bands)``.

    Raises
    ------
    ValueError
        Raised if the header is not for a raster format or the pixel array
        shape does not match the header.
    """

    formats: ClassVar[frozenset[ImageFormat]] = frozenset({ImageFormat.JPEG, ImageFormat.PNG})

    def __init__(self, header: ImageHeader, pixels: np.ndarray):
        if header.storage_format not in self.formats:
            raise ValueError(f"{header.storage_format.name} is not a raster image format.")
        if pixels.ndim == 2:
            pixels = pixels[:, :, np.newaxis]
        self._header = header
        expected = (self.height, self.width, self.bands)
        if pixels.shape != expected:
            raise ValueError(
                f"Image dimensions in header {expected} do not match pixel array shape {pixels.shape}."
            )
        self._pixels = pixels

    @property
    def format(self) -> ImageFormat:
        """Storage format of the image."""
        return self._header.storage_format

    @property
    def header(self) -> ImageHeader:
        """The image header."""
        return self._header

    @property
    def pixels(self) -> np.ndarray:
        """Pixel samples, with shape ``(height, width, bands)``."""
        return self._pixels

    @property
    def width(self) -> int:
        return _int_metadata(self._header, MetadataKey.WIDTH)

    @property
    def height(self) -> int:
        return _int_metadata(self._header, MetadataKey.HEIGHT)

    @property
    def bands(self) -> int:
        """Number of bands (channels) per pixel."""
        return _int_metadata(self._header, MetadataKey.BANDS)

    @property
    def color_space(self) -> ColorSpace:
        return ColorSpace(self._header.get_metadata(MetadataKey.COLOR_SPACE, ColorSpace.UNDEFINED.value))

    def __eq__(self, other: object) -> bool:
        if isinstance(other, RasterImage):
            return self._header == other._header and np.array_equal(self._pixels, other._pixels)
        return NotImplemented

    def __repr__(self) -> str:
        return f"RasterImage({self.format.name}, {self.width} x {self.height} x {self.bands})"


@final
class NiftiImage:
    """A decoded NIfTI volume.

    Parameters
    ----------
    header
        Header with x/y/z/t axis length entries.
    volume
        The `nibabel.Nifti1Image` holding the voxels and the NIfTI header.
    """

    formats: ClassVar[frozenset[ImageFormat]] = frozenset({ImageFormat.NIFTI})

    def __init__(self, header: ImageHeader, volume: nibabel.Nifti1Image):
        if header.storage_format is not ImageFormat.NIFTI:
            raise ValueError(f"{header.storage_format.name} is not the NIfTI format.")
        self._header = header
        self._volume = volume

    @property
    def format(self) -> ImageFormat:
        """Storage format of the image."""
        return ImageFormat.NIFTI

    @property
    def header(self) -> ImageHeader:
        """The image header."""
        return self._header

    @property
    def volume(self) -> nibabel.Nifti1Image:
        """The backing nibabel image.

        This is an internal object that should not be modified in place.
        """
        return self._volume

    @cached_property
    def data(self) -> np.ndarray:
        """The voxel array, with any NIfTI scaling applied."""
        return np.asanyarray(self._volume.dataobj)

    @property
    def x_length(self) -> int:
        return _int_metadata(self._header, MetadataKey.X_LENGTH)

    @property
    def y_length(self) -> int:
        return _int_metadata(self._header, MetadataKey.Y_LENGTH)

    @property
    def z_length(self) -> int:
        return _int_metadata(self._header, MetadataKey.Z_LENGTH)

    @property
    def t_length(self) -> int:
        """Length of the time axis; 1 for volumes without one."""
        return _int_metadata(self._header, MetadataKey.T_LENGTH) or 1

    def __repr__(self) -> str:
        return f"NiftiImage({self.x_length} x {self.y_length} x {self.z_length} x {self.t_length})"


@final
class DicomImage:
    """A decoded DICOM dataset.

    Parameters
    ----------
    header
        Header with patient and dimension entries.
    dataset
        The parsed `pydicom.Dataset`, including its file meta information.
    """

    formats: ClassVar[frozenset[ImageFormat]] = frozenset({ImageFormat.DICOM})

    def __init__(self, header: ImageHeader, dataset: pydicom.Dataset):
        if header.storage_format is not ImageFormat.DICOM:
            raise ValueError(f"{header.storage_format.name} is not the DICOM format.")
        self._header = header
        self._dataset = dataset

    @property
    def format(self) -> ImageFormat:
        """Storage format of the image."""
        return ImageFormat.DICOM

    @property
    def header(self) -> ImageHeader:
        """The image header."""
        return self._header

    @property
    def dataset(self) -> pydicom.Dataset:
        """The backing pydicom dataset."""
        return self._dataset

    @cached_property
    def pixel_array(self) -> np.ndarray:
        """The decoded pixel data.

        Decoding compressed transfer syntaxes may require additional pydicom
        pixel-data handlers to be installed.
        """
        return self._dataset.pixel_array

    def get_field(self, keyword: str, default: Any = None) -> Any:
        """Return the value of a DICOM element by keyword (e.g.
        ``"PatientName"``), or ``default`` if it is not present.
        """
        return self._dataset.get(keyword, default)

    def __repr__(self) -> str:
        return f"DicomImage(patient_id={self._header.get_metadata(MetadataKey.PATIENT_ID)!r})"


type DomainImage = RasterImage | NiftiImage | DicomImage
