# This file is part of biobundle.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

__all__ = ("DicomCodec",)

import io

import pydicom

from .._errors import PayloadDecodeError
from .._format import ImageFormat, MetadataKey
from .._header import ImageHeader
from .._images import DicomImage, DomainImage
from ._base import ImageCodec

# DICOM keywords copied into image headers.
_HEADER_KEYWORDS = {
    MetadataKey.PATIENT_ID: "PatientID",
    MetadataKey.PATIENT_NAME: "PatientName",
    MetadataKey.ROWS: "Rows",
    MetadataKey.COLUMNS: "Columns",
}


class DicomCodec(ImageCodec):
    """Codec for DICOM Part 10 files, backed by pydicom."""

    @property
    def image_format(self) -> ImageFormat:
        return ImageFormat.DICOM

    def decode_header(self, data: bytes) -> ImageHeader:
        try:
            dataset = pydicom.dcmread(io.BytesIO(data), stop_before_pixels=True)
            metadata = {
                key: str(value)
                for key, keyword in _HEADER_KEYWORDS.items()
                if (value := dataset.get(keyword)) is not None
            }
        except Exception as err:
            raise PayloadDecodeError(f"Failed to decode DICOM header: {err}") from err
        return ImageHeader(ImageFormat.DICOM, metadata)

    def decode_image(self, data: bytes, header: ImageHeader) -> DicomImage:
        try:
            dataset = pydicom.dcmread(io.BytesIO(data))
        except Exception as err:
            raise PayloadDecodeError(f"Failed to decode DICOM dataset: {err}") from err
        return DicomImage(header, dataset)

    def encode_image(self, image: DomainImage) -> bytes:
        if not isinstance(image, DicomImage):
            raise TypeError("DICOM encoder supports only DicomImage inputs.")
        buffer = io.BytesIO()
        pydicom.dcmwrite(buffer, image.dataset, enforce_file_format=True)
        return buffer.getvalue()
