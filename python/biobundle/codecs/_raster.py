# This file is part of biobundle.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

__all__ = ("JpegCodec", "PngCodec", "RasterCodec")

import io
from typing import ClassVar

import numpy as np
import PIL.Image

from .._errors import PayloadDecodeError
from .._format import ColorSpace, ImageFormat, MetadataKey
from .._header import ImageHeader
from .._images import DomainImage, RasterImage
from ._base import ImageCodec

# Pillow modes that decode to a single luminance band.
_LUMINANCE_MODES = frozenset({"1", "L", "LA", "I", "I;16", "F"})


class RasterCodec(ImageCodec):
    """Base class for codecs of 2-d raster formats backed by Pillow.

    Decoded pixels are always 8-bit, either a single luminance band or three
    RGB bands.
    """

    pillow_format: ClassVar[str]
    """Name of the Pillow plugin for this format."""

    def decode_header(self, data: bytes) -> ImageHeader:
        try:
            # Image.open only parses the header; pixels are read by load().
            with PIL.Image.open(io.BytesIO(data), formats=[self.pillow_format]) as pil_image:
                self._check_source(pil_image)
                width, height = pil_image.size
                color_space = ColorSpace.LUM if pil_image.mode in _LUMINANCE_MODES else ColorSpace.RGB
        except PayloadDecodeError:
            raise
        except Exception as err:
            raise PayloadDecodeError(f"Failed to decode {self.image_format.name} header: {err}") from err
        header = ImageHeader(self.image_format)
        header.update_metadata(
            {
                MetadataKey.COLOR_SPACE: color_space.value,
                MetadataKey.WIDTH: str(width),
                MetadataKey.HEIGHT: str(height),
                MetadataKey.BANDS: "1" if color_space is ColorSpace.LUM else "3",
            }
        )
        return header

    def decode_image(self, data: bytes, header: ImageHeader) -> RasterImage:
        color_space = ColorSpace(header.get_metadata(MetadataKey.COLOR_SPACE, ColorSpace.RGB.value))
        try:
            with PIL.Image.open(io.BytesIO(data), formats=[self.pillow_format]) as pil_image:
                pil_image.load()
                converted = pil_image.convert("L" if color_space is ColorSpace.LUM else "RGB")
                pixels = np.array(converted, dtype=np.uint8)
        except Exception as err:
            raise PayloadDecodeError(f"Failed to decode {self.image_format.name} image: {err}") from err
        try:
            return RasterImage(header, pixels)
        except (KeyError, ValueError) as err:
            raise PayloadDecodeError(str(err)) from err

    def encode_image(self, image: DomainImage) -> bytes:
        if not isinstance(image, RasterImage):
            raise TypeError(f"{self.image_format.name} encoder supports only RasterImage inputs.")
        if image.width <= 0 or image.height <= 0:
            raise ValueError("Invalid image resolution.")
        self._check_encodable(image)
        pixels = image.pixels[:, :, 0] if image.bands == 1 else image.pixels
        pil_image = PIL.Image.fromarray(np.ascontiguousarray(pixels, dtype=np.uint8))
        buffer = io.BytesIO()
        pil_image.save(buffer, format=self.pillow_format, **self._save_options())
        return buffer.getvalue()

    def _check_source(self, pil_image: PIL.Image.Image) -> None:
        """Raise `PayloadDecodeError` if an opened image cannot be decoded
        by this codec.
        """

    def _check_encodable(self, image: RasterImage) -> None:
        if image.bands not in (1, 3):
            raise ValueError(f"{self.image_format.name} encoder supports only one or three band images.")

    def _save_options(self) -> dict[str, object]:
        return {}


class JpegCodec(RasterCodec):
    """Codec for the JPEG storage format.

    Parameters
    ----------
    quality, optional
        JPEG quality level used when encoding (1-100).
    """

    pillow_format = "JPEG"

    def __init__(self, quality: int = 95):
        if not 1 <= quality <= 100:
            raise ValueError(f"JPEG quality must be between 1 and 100; got {quality}.")
        self._quality = quality

    @property
    def image_format(self) -> ImageFormat:
        return ImageFormat.JPEG

    @property
    def quality(self) -> int:
        """JPEG quality level used when encoding."""
        return self._quality

    def _check_source(self, pil_image: PIL.Image.Image) -> None:
        if (depth := getattr(pil_image, "bits", 8)) != 8:
            raise PayloadDecodeError(f"Image has unsupported bit depth [{depth}].")

    def _check_encodable(self, image: RasterImage) -> None:
        if image.color_space is not ColorSpace.RGB:
            raise ValueError("JPEG encoder supports only RGB color space.")
        if image.bands != 3:
            raise ValueError("JPEG encoder supports only three band images.")

    def _save_options(self) -> dict[str, object]:
        return {"quality": self._quality}

    def __repr__(self) -> str:
        return f"JpegCodec(quality={self._quality})"


class PngCodec(RasterCodec):
    """Codec for the PNG storage format."""

    pillow_format = "PNG"

    @property
    def image_format(self) -> ImageFormat:
        return ImageFormat.PNG
