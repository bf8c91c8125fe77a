# This file is part of biobundle.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

"""Codecs that turn bundle record payloads into images and back.

Each concrete codec handles one `.ImageFormat`:

- `JpegCodec` and `PngCodec` decode to `.RasterImage`, using Pillow.
- `NiftiCodec` decodes to `.NiftiImage`, using nibabel.
- `DicomCodec` decodes to `.DicomImage`, using pydicom.

A `CodecRegistry` maps formats to codecs, and is what bundle readers and
writers are given.
"""

from ._base import *
from ._dicom import *
from ._nifti import *
from ._raster import *
from ._registry import *
