# This file is part of biobundle.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

"""Storage of biomedical images in bundles.

A bundle is a pair of flat files: a data file holding a contiguous sequence
of image records, and an index file holding the end offset of each record.
Bundles are written once, append-only, and read sequentially, optionally
over a byte range so that independent readers can process disjoint parts of
the same bundle.
"""

from ._bundle import *
from ._errors import *
from ._format import *
from ._framing import *
from ._header import *
from ._images import *
from ._reader import *
from ._writer import *
from .codecs import CodecRegistry, ImageCodec
from .version import *
