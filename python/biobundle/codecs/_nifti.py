# This file is part of biobundle.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

__all__ = ("NiftiCodec",)

import gzip
import io

import nibabel

from .._errors import PayloadDecodeError
from .._format import ImageFormat, MetadataKey
from .._header import ImageHeader
from .._images import DomainImage, NiftiImage
from ._base import ImageCodec

_GZIP_MAGIC = b"\x1f\x8b"

_AXIS_KEYS = (MetadataKey.X_LENGTH, MetadataKey.Y_LENGTH, MetadataKey.Z_LENGTH, MetadataKey.T_LENGTH)


def _uncompressed(data: bytes) -> bytes:
    # Payloads copied from .nii.gz files are accepted as-is.
    if data[:2] == _GZIP_MAGIC:
        return gzip.decompress(data)
    return data


class NiftiCodec(ImageCodec):
    """Codec for single-file NIfTI-1 volumes, backed by nibabel.

    Payloads may be plain ``.nii`` bytes or gzip-compressed; encoding always
    produces plain ``.nii`` bytes.
    """

    @property
    def image_format(self) -> ImageFormat:
        return ImageFormat.NIFTI

    def decode_header(self, data: bytes) -> ImageHeader:
        try:
            nifti_header = nibabel.Nifti1Header.from_fileobj(io.BytesIO(_uncompressed(data)))
            dim = [int(d) for d in nifti_header["dim"]]
        except Exception as err:
            raise PayloadDecodeError(f"Failed to decode NIfTI header: {err}") from err
        header = ImageHeader(ImageFormat.NIFTI)
        header.update_metadata({key: str(dim[n]) for n, key in enumerate(_AXIS_KEYS, start=1)})
        return header

    def decode_image(self, data: bytes, header: ImageHeader) -> NiftiImage:
        try:
            volume = nibabel.Nifti1Image.from_bytes(_uncompressed(data))
        except Exception as err:
            raise PayloadDecodeError(f"Failed to decode NIfTI volume: {err}") from err
        return NiftiImage(header, volume)

    def encode_image(self, image: DomainImage) -> bytes:
        if not isinstance(image, NiftiImage):
            raise TypeError("NIfTI encoder supports only NiftiImage inputs.")
        return image.volume.to_bytes()
