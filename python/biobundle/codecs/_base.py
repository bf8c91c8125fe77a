# This file is part of biobundle.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

__all__ = ("ImageCodec",)

from abc import ABC, abstractmethod
from typing import IO

from .._format import ImageFormat
from .._header import ImageHeader
from .._images import DomainImage


class ImageCodec(ABC):
    """Base class for objects that decode and encode the payloads of a single
    image storage format.

    Notes
    -----
    Codecs hold no per-image state, so a single instance may be shared by any
    number of readers and writers, including concurrently.  Any options they
    have are fixed at construction.

    All decoding methods raise `.PayloadDecodeError` when the payload cannot
    be decoded, whatever the underlying library raised.
    """

    @property
    @abstractmethod
    def image_format(self) -> ImageFormat:
        """The storage format handled by this codec."""
        raise NotImplementedError()

    @abstractmethod
    def decode_header(self, data: bytes) -> ImageHeader:
        """Decode just the header of an encoded image.

        This should avoid materializing the pixel or voxel data.

        Parameters
        ----------
        data
            Encoded image bytes.

        Returns
        -------
        ImageHeader
            A new header with the format-specific metadata filled in.
        """
        raise NotImplementedError()

    @abstractmethod
    def decode_image(self, data: bytes, header: ImageHeader) -> DomainImage:
        """Decode the full image.

        Parameters
        ----------
        data
            Encoded image bytes.
        header
            Previously-decoded header for the image, which is attached to the
            returned image.

        Returns
        -------
        DomainImage
            The decoded image, of the variant that corresponds to
            `image_format`.
        """
        raise NotImplementedError()

    def decode_header_and_image(self, source: bytes | IO[bytes]) -> DomainImage:
        """Decode the header and then the full image from the same source.

        Parameters
        ----------
        source
            Encoded image bytes, or a binary stream positioned at the start of
            the encoded image (which is read to the end).

        Returns
        -------
        DomainImage
            The decoded image.
        """
        data = source if isinstance(source, bytes) else source.read()
        return self.decode_image(data, self.decode_header(data))

    @abstractmethod
    def encode_image(self, image: DomainImage) -> bytes:
        """Encode an image in this codec's storage format.

        Parameters
        ----------
        image
            Image to encode.

        Returns
        -------
        bytes
            Encoded image, suitable for use as a bundle record payload.

        Raises
        ------
        TypeError
            Raised if the image is not of a variant this codec can encode.
        ValueError
            Raised if the image's dimensions or color space cannot be
            represented in this format.
        """
        raise NotImplementedError()

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"
