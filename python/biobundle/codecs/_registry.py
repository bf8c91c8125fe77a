# This file is part of biobundle.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

__all__ = ("CodecRegistry",)

from collections.abc import Iterable, Set

from .._errors import PayloadDecodeError, UnsupportedFormatError
from .._format import ImageFormat
from .._header import ImageHeader
from .._images import DicomImage, DomainImage, NiftiImage, RasterImage
from ._base import ImageCodec

_VARIANTS: dict[ImageFormat, type[RasterImage] | type[NiftiImage] | type[DicomImage]] = {
    ImageFormat.JPEG: RasterImage,
    ImageFormat.PNG: RasterImage,
    ImageFormat.NIFTI: NiftiImage,
    ImageFormat.DICOM: DicomImage,
}


class CodecRegistry:
    """A mapping from image storage format to the codec that handles it.

    Parameters
    ----------
    codecs, optional
        Codecs to register.  Later codecs replace earlier ones for the same
        format.

    Notes
    -----
    Registries are constructed explicitly and passed to bundle readers and
    writers; there is no process-wide registry.  Use `default` for one with
    the codecs shipped in this package.
    """

    def __init__(self, codecs: Iterable[ImageCodec] = ()):
        self._codecs: dict[ImageFormat, ImageCodec] = {}
        for codec in codecs:
            self.register(codec)

    @classmethod
    def default(cls) -> CodecRegistry:
        """Return a new registry with the JPEG, PNG, NIfTI, and DICOM codecs
        defined in this package.
        """
        from ._dicom import DicomCodec
        from ._nifti import NiftiCodec
        from ._raster import JpegCodec, PngCodec

        return cls([JpegCodec(), PngCodec(), NiftiCodec(), DicomCodec()])

    def register(self, codec: ImageCodec) -> None:
        """Register a codec for its `~ImageCodec.image_format`.

        Raises
        ------
        ValueError
            Raised if the codec claims the `ImageFormat.UNDEFINED` format.
        """
        if not codec.image_format.is_defined:
            raise ValueError(f"Codec {codec!r} cannot be registered for an UNDEFINED format.")
        self._codecs[codec.image_format] = codec

    @property
    def formats(self) -> Set[ImageFormat]:
        """The formats with a registered codec."""
        return self._codecs.keys()

    def get_decoder(self, image_format: ImageFormat) -> ImageCodec:
        """Return the codec to use to decode payloads in the given format.

        Raises
        ------
        UnsupportedFormatError
            Raised if no codec is registered for the format.
        """
        return self._get(image_format)

    def get_encoder(self, image_format: ImageFormat) -> ImageCodec:
        """Return the codec to use to encode images in the given format.

        Raises
        ------
        UnsupportedFormatError
            Raised if no codec is registered for the format.
        """
        return self._get(image_format)

    def decode(self, image_format: ImageFormat, data: bytes, header: ImageHeader) -> DomainImage:
        """Decode a payload and check that the codec produced the image
        variant for its format.

        Raises
        ------
        UnsupportedFormatError
            Raised if no codec is registered for the format.
        PayloadDecodeError
            Raised if decoding fails.
        """
        codec = self.get_decoder(image_format)
        image = codec.decode_image(data, header)
        if not isinstance(image, _VARIANTS[image_format]):
            raise PayloadDecodeError(
                f"Codec {codec!r} returned a {type(image).__name__} for an {image_format.name} payload."
            )
        return image

    def encode(self, image: DomainImage) -> bytes:
        """Encode an image in its header's storage format.

        Raises
        ------
        UnsupportedFormatError
            Raised if no codec is registered for the format.
        """
        return self.get_encoder(image.header.storage_format).encode_image(image)

    def _get(self, image_format: ImageFormat) -> ImageCodec:
        try:
            return self._codecs[image_format]
        except KeyError:
            raise UnsupportedFormatError(
                f"Image format {ImageFormat(image_format).name} is currently unsupported."
            ) from None

    def __contains__(self, image_format: object) -> bool:
        return image_format in self._codecs

    def __repr__(self) -> str:
        return f"CodecRegistry({list(self._codecs.values())!r})"
