# This file is part of biobundle.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

import io
import os
import tempfile
import unittest
import unittest.mock

from biobundle import (
    INDEX_PREAMBLE_SIZE,
    AlreadyExistsError,
    AlreadyOpenError,
    BundleMode,
    BundleReader,
    BundleWriter,
    DicomImage,
    ImageBundle,
    ImageFormat,
    ImageHeader,
    InvalidBundleError,
    MetadataKey,
    NiftiImage,
    NotOpenForReadError,
    NotOpenForWriteError,
    RasterImage,
    ScanStatus,
    UnsupportedFormatError,
    data_path_for,
    merge,
)
from biobundle.codecs import CodecRegistry
from biobundle.tests import MarkerCodec, make_dicom_bytes, make_jpeg_bytes, make_nifti_bytes, make_png_bytes


def _marker_records(n: int) -> list[tuple[ImageHeader, bytes]]:
    """Return ``n`` (header, payload) pairs decodable by `MarkerCodec`."""
    return [
        (ImageHeader(ImageFormat.JPEG, {MetadataKey.SOURCE: f"image-{i}.jpg"}), b"GOOD" + b"x" * (i + 1))
        for i in range(n)
    ]


class _FailingStream(io.BytesIO):
    """An in-memory stream whose writes fail after ``fail_after`` have
    succeeded.
    """

    def __init__(self, fail_after: int):
        super().__init__()
        self._remaining = fail_after

    def write(self, data: bytes) -> int:
        if self._remaining <= 0:
            raise OSError("No space left on device.")
        self._remaining -= 1
        return super().write(data)


class BundleTestCase(unittest.TestCase):
    """Tests for writing and reading bundles."""

    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.tmp = tmp.name
        self.marker_codecs = CodecRegistry([MarkerCodec(ImageFormat.JPEG)])

    def path(self, name: str) -> str:
        return os.path.join(self.tmp, name)

    def write_records(
        self, name: str, records: list[tuple[ImageHeader, bytes]], codecs: CodecRegistry | None = None
    ) -> list[int]:
        """Write a bundle and return the offsets returned by the writer."""
        with BundleWriter.open(self.path(name), codecs=codecs or self.marker_codecs) as writer:
            return [writer.add_image(header, payload) for header, payload in records]

    def read_records(self, reader: BundleReader) -> list[tuple[ImageHeader, bytes]]:
        result = []
        while reader.next():
            header = reader.current_header
            assert header is not None and reader.current_payload is not None
            result.append((header, reader.current_payload))
        return result

    def test_offset_invariant(self) -> None:
        """Test that the index holds one cumulative end offset per record,
        the last of which is the data file length.
        """
        records = _marker_records(5)
        offsets = self.write_records("a.hib", records)
        expected = []
        total = 0
        for header, payload in records:
            total += 12 + len(header.to_bytes()) + len(payload)
            expected.append(total)
        self.assertEqual(offsets, expected)
        self.assertEqual(os.path.getsize(self.path("a.hib")), INDEX_PREAMBLE_SIZE + 8 * len(records))
        self.assertEqual(os.path.getsize(self.path("a.hib.dat")), offsets[-1])
        with ImageBundle(self.path("a.hib"), codecs=self.marker_codecs) as bundle:
            bundle.open_for_read()
            self.assertEqual(bundle.read_all_offsets(), offsets)
            self.assertEqual(bundle.data_size, offsets[-1])

    def test_empty_bundle(self) -> None:
        """Test writing and reading a bundle with no records."""
        self.assertEqual(self.write_records("empty.hib", []), [])
        self.assertEqual(os.path.getsize(self.path("empty.hib")), INDEX_PREAMBLE_SIZE)
        with BundleReader(self.path("empty.hib.dat")) as reader:
            self.assertFalse(reader.next())
            self.assertIs(reader.status, ScanStatus.EXHAUSTED)

    def test_sequential_read(self) -> None:
        """Test that reading yields what was written, in order, with the
        real codecs.
        """
        payloads = [
            (make_jpeg_bytes(), ImageFormat.JPEG),
            (make_png_bytes(color="L"), ImageFormat.PNG),
            (make_nifti_bytes(), ImageFormat.NIFTI),
            (make_dicom_bytes(), ImageFormat.DICOM),
        ]
        with ImageBundle(self.path("mixed.hib")) as bundle:
            self.assertIs(bundle.mode, BundleMode.UNOPENED)
            bundle.open_for_write()
            self.assertIs(bundle.mode, BundleMode.WRITE)
            for n, (payload, image_format) in enumerate(payloads):
                bundle.add_image_bytes(payload, image_format, {MetadataKey.SOURCE: f"file{n}"})
            bundle.close()
            self.assertIs(bundle.mode, BundleMode.UNOPENED)
            bundle.open_for_read()
            self.assertIs(bundle.mode, BundleMode.READ)
            images = []
            for n, (payload, image_format) in enumerate(payloads):
                self.assertTrue(bundle.next())
                header = bundle.current_header
                assert header is not None
                self.assertIs(header.storage_format, image_format)
                self.assertEqual(header.get_metadata(MetadataKey.SOURCE), f"file{n}")
                self.assertEqual(bundle.reader.current_payload, payload)
                images.append(bundle.current_image)
            self.assertFalse(bundle.next())
            self.assertIs(bundle.status, ScanStatus.EXHAUSTED)
            self.assertIsNone(bundle.current_header)
            self.assertFalse(bundle.next())
        self.assertEqual(
            [type(image) for image in images], [RasterImage, RasterImage, NiftiImage, DicomImage]
        )
        self.assertEqual(images[1].header.get_metadata(MetadataKey.COLOR_SPACE), "LUM")

    def test_current_header_is_copy(self) -> None:
        """Test that modifying the current header does not affect the
        reader.
        """
        self.write_records("a.hib", _marker_records(1))
        with BundleReader(self.path("a.hib.dat"), codecs=self.marker_codecs) as reader:
            self.assertTrue(reader.next())
            header = reader.current_header
            assert header is not None
            header.add_metadata(MetadataKey.SOURCE, "changed")
            self.assertEqual(reader.current_header.get_metadata(MetadataKey.SOURCE), "image-0.jpg")

    def test_current_image_header_is_separate(self) -> None:
        """Test that modifying the decoded image's header does not affect
        the reader's current header.
        """
        with BundleWriter.open(self.path("a.hib")) as writer:
            writer.add_image_bytes(make_png_bytes(), ImageFormat.PNG, {MetadataKey.SOURCE: "b.png"})
        with BundleReader(self.path("a.hib.dat")) as reader:
            self.assertTrue(reader.next())
            image = reader.current_image
            assert image is not None
            image.header.add_metadata(MetadataKey.SOURCE, "changed")
            self.assertEqual(reader.current_header.get_metadata(MetadataKey.SOURCE), "b.png")

    def test_range_isolation(self) -> None:
        """Test that readers over adjacent byte ranges partition the
        records.
        """
        records = _marker_records(6)
        offsets = self.write_records("a.hib", records)
        data_path = self.path("a.hib.dat")
        with BundleReader(data_path, codecs=self.marker_codecs) as reader:
            everything = self.read_records(reader)
        self.assertEqual(everything, records)
        for k in range(len(offsets)):
            with self.subTest(k=k):
                with BundleReader(data_path, 0, offsets[k] - 1, codecs=self.marker_codecs) as first:
                    head = self.read_records(first)
                    self.assertIs(first.status, ScanStatus.EXHAUSTED)
                    self.assertEqual(first.progress, 1.0)
                end = offsets[-1] - 1
                with BundleReader(data_path, offsets[k], end, codecs=self.marker_codecs) as second:
                    tail = self.read_records(second)
                self.assertEqual(len(head), k + 1)
                self.assertEqual(head + tail, everything)

    def test_progress(self) -> None:
        """Test progress reporting over a range."""
        offsets = self.write_records("a.hib", _marker_records(4))
        with BundleReader(self.path("a.hib.dat"), 0, offsets[-1] - 1, decode=False) as reader:
            self.assertEqual(reader.get_progress(), 0.0)
            self.assertTrue(reader.next())
            self.assertAlmostEqual(reader.progress, offsets[0] / offsets[-1])
            while reader.next():
                pass
            self.assertEqual(reader.progress, 1.0)
        with BundleReader(self.path("a.hib.dat"), 10, 5, decode=False) as reader:
            self.assertEqual(reader.progress, 0.0)
        # An open-ended scan from 0 spans a single byte.
        with BundleReader(self.path("a.hib.dat"), decode=False) as reader:
            self.assertEqual(reader.progress, 0.0)
            self.assertTrue(reader.next())
            self.assertEqual(reader.progress, 1.0)
            while reader.next():
                pass
            self.assertEqual(reader.progress, 1.0)
        with BundleReader(self.path("a.hib.dat"), offsets[0], decode=False) as reader:
            while reader.next():
                self.assertEqual(reader.progress, 0.0)

    def test_payload_corruption(self) -> None:
        """Test that records whose payloads cannot be decoded are skipped."""
        records = _marker_records(5)
        header, payload = records[2]
        records[2] = (header, b"BAD!" + payload[4:])
        self.write_records("a.hib", records)
        with self.assertLogs("biobundle", level="WARNING") as logs:
            with BundleReader(self.path("a.hib.dat"), codecs=self.marker_codecs) as reader:
                result = self.read_records(reader)
                self.assertIs(reader.status, ScanStatus.EXHAUSTED)
                self.assertEqual(reader.skipped, 1)
        self.assertEqual(result, records[:2] + records[3:])
        self.assertTrue(any("Skipping" in message for message in logs.output))

    def test_many_corrupt_payloads(self) -> None:
        """Test that long runs of undecodable records are skipped without
        recursion.
        """
        records = [(ImageHeader(ImageFormat.JPEG), b"BAD")] * 3000 + _marker_records(1)
        self.write_records("a.hib", records)
        with self.assertLogs("biobundle", level="WARNING"):
            with BundleReader(self.path("a.hib.dat"), codecs=self.marker_codecs) as reader:
                self.assertEqual(self.read_records(reader), records[-1:])
                self.assertEqual(reader.skipped, 3000)

    def test_header_corruption(self) -> None:
        """Test that a record with unreadable header bytes, or a header
        whose format disagrees with the signature, is skipped.
        """
        records = _marker_records(3)
        offsets = self.write_records("a.hib", records)
        data_path = self.path("a.hib.dat")
        with open(data_path, "r+b") as stream:
            # Break the JSON of the first header.
            stream.seek(12 + 8)
            stream.write(b"#")
            # Change the header format code of the second record.
            stream.seek(offsets[0] + 12)
            stream.write(ImageFormat.PNG.to_bytes(4, "big"))
        with self.assertLogs("biobundle", level="WARNING"):
            with BundleReader(data_path, codecs=self.marker_codecs) as reader:
                self.assertEqual(self.read_records(reader), records[2:])
                self.assertEqual(reader.skipped, 2)

    def test_signature_corruption(self) -> None:
        """Test that a zeroed signature ends the scan."""
        records = _marker_records(5)
        offsets = self.write_records("a.hib", records)
        data_path = self.path("a.hib.dat")
        with open(data_path, "r+b") as stream:
            stream.seek(offsets[1])
            stream.write(b"\x00" * 12)
        with self.assertLogs("biobundle", level="ERROR"):
            with BundleReader(data_path, codecs=self.marker_codecs) as reader:
                self.assertEqual(self.read_records(reader), records[:2])
                self.assertIs(reader.status, ScanStatus.SIGNATURE_ERROR)
                self.assertTrue(reader.status.is_error)
                self.assertFalse(reader.next())

    def test_truncation(self) -> None:
        """Test scans of data files cut off in the middle of a record."""
        records = _marker_records(3)
        for status in (ScanStatus.SIGNATURE_ERROR, ScanStatus.IO_ERROR):
            with self.subTest(status=status):
                name = f"{status.name}.hib"
                offsets = self.write_records(name, records)
                # Cut inside the third signature, or just before the end of
                # its payload.
                cut = offsets[1] + 5 if status is ScanStatus.SIGNATURE_ERROR else offsets[2] - 1
                data_path = self.path(name + ".dat")
                with open(data_path, "r+b") as stream:
                    stream.truncate(cut)
                with self.assertLogs("biobundle", level="ERROR"):
                    with BundleReader(data_path, codecs=self.marker_codecs) as reader:
                        self.assertEqual(self.read_records(reader), records[:2])
                        self.assertIs(reader.status, status)

    def test_unsupported_format(self) -> None:
        """Test that a record with no registered codec raises, and ends the
        scan.
        """
        records = _marker_records(1) + [(ImageHeader(ImageFormat.DICOM), b"GOOD")] + _marker_records(1)
        self.write_records("a.hib", records)
        with self.assertLogs("biobundle", level="ERROR"):
            with BundleReader(self.path("a.hib.dat"), codecs=self.marker_codecs) as reader:
                self.assertTrue(reader.next())
                with self.assertRaises(UnsupportedFormatError):
                    reader.next()
                self.assertIs(reader.status, ScanStatus.UNSUPPORTED_FORMAT)
                self.assertFalse(reader.next())
        # Raw mode does not need codecs at all.
        with BundleReader(self.path("a.hib.dat"), codecs=self.marker_codecs, decode=False) as reader:
            self.assertEqual(len(self.read_records(reader)), 3)

    def test_raw_example(self) -> None:
        """Test reading back a record with a small undecodable payload
        without decoding it.
        """
        header = ImageHeader(
            ImageFormat.JPEG, {MetadataKey.WIDTH: "2", MetadataKey.HEIGHT: "1", MetadataKey.BANDS: "3"}
        )
        with BundleWriter.open(self.path("example.hib")) as writer:
            writer.add_image(header, bytes(range(6)))
        with BundleReader(data_path_for(self.path("example.hib")), decode=False) as reader:
            self.assertTrue(reader.next())
            read_header = reader.current_header
            assert read_header is not None
            self.assertEqual(read_header.metadata["width"], "2")
            self.assertEqual(len(reader.current_payload or b""), 6)
            self.assertIsNone(reader.current_image)
            self.assertIs(reader.current_format, ImageFormat.JPEG)
            self.assertFalse(reader.next())

    def test_iteration(self) -> None:
        """Test iterating over a reader and a bundle."""
        records = _marker_records(3)
        self.write_records("a.hib", records)
        with BundleReader(self.path("a.hib.dat"), codecs=self.marker_codecs) as reader:
            pairs = list(reader)
        self.assertEqual([header for header, _ in pairs], [header for header, _ in records])
        self.assertTrue(all(isinstance(image, RasterImage) for _, image in pairs))
        with ImageBundle(self.path("a.hib"), codecs=self.marker_codecs) as bundle:
            bundle.open_for_read(1)
            self.assertEqual([header for header, _ in bundle], [header for header, _ in records[1:]])

    def test_writer_rejections(self) -> None:
        """Test that the writer refuses records readers would reject, and
        existing bundles unless asked to overwrite.
        """
        self.write_records("a.hib", _marker_records(1))
        with self.assertRaises(AlreadyExistsError):
            BundleWriter.open(self.path("a.hib"))
        with self.assertRaises(FileExistsError):
            BundleWriter.open(self.path("a.hib"))
        with BundleWriter.open(self.path("a.hib"), overwrite=True, codecs=self.marker_codecs) as writer:
            with self.assertRaises(ValueError):
                writer.add_image(ImageHeader(ImageFormat.JPEG), b"")
            with self.assertRaises(ValueError):
                writer.add_image(ImageHeader(ImageFormat.UNDEFINED), b"GOOD")
            self.assertEqual(writer.offset, 0)
            writer.add_domain_image(
                self.marker_codecs.get_decoder(ImageFormat.JPEG).decode_header_and_image(b"GOOD!")
            )
        self.assertTrue(writer.closed)
        with self.assertRaises(NotOpenForWriteError):
            writer.add_image(ImageHeader(ImageFormat.JPEG), b"GOOD")
        writer.close()
        with BundleReader(self.path("a.hib.dat"), codecs=self.marker_codecs) as reader:
            self.assertEqual(len(self.read_records(reader)), 1)

    def test_write_failure(self) -> None:
        """Test that a failed write closes the writer and propagates."""
        index_stream = io.BytesIO()
        data_stream = _FailingStream(fail_after=1)
        writer = BundleWriter(index_stream, data_stream, codecs=self.marker_codecs)
        header, payload = _marker_records(1)[0]
        with self.assertRaises(OSError):
            writer.add_image(header, payload)
        self.assertTrue(writer.closed)
        self.assertTrue(index_stream.closed)
        self.assertTrue(data_stream.closed)
        self.assertEqual(writer.offset, 0)
        with self.assertRaises(NotOpenForWriteError):
            writer.add_image(header, payload)
        writer.close()

    def test_open_failure(self) -> None:
        """Test that both files are closed if the index preamble cannot be
        written.
        """
        index_stream = _FailingStream(fail_after=0)
        data_stream = io.BytesIO()
        with unittest.mock.patch("biobundle._writer._open_binary", side_effect=[index_stream, data_stream]):
            with self.assertRaises(OSError):
                BundleWriter.open(self.path("a.hib"))
        self.assertTrue(index_stream.closed)
        self.assertTrue(data_stream.closed)

    def test_seek(self) -> None:
        """Test opening a bundle for read at a record index."""
        records = _marker_records(4)
        offsets = self.write_records("a.hib", records)
        with ImageBundle(self.path("a.hib"), codecs=self.marker_codecs) as bundle:
            for index in range(len(records) + 1):
                with self.subTest(index=index):
                    bundle.open_for_read(index)
                    self.assertEqual(bundle.reader.start, 0 if index == 0 else offsets[index - 1])
                    self.assertEqual(self.read_records(bundle.reader), records[index:])
                    bundle.close()
            with self.assertRaises(OSError):
                bundle.open_for_read(len(records) + 1)
            self.assertIs(bundle.mode, BundleMode.UNOPENED)
            with self.assertRaises(ValueError):
                bundle.open_for_read(-1)
            bundle.open_for_read(2)
            self.assertEqual(bundle.read_offsets(1), offsets[2:3])
            self.assertEqual(bundle.read_all_offsets(), offsets[3:])

    def test_lifecycle(self) -> None:
        """Test that operations are only allowed in the right mode."""
        bundle = ImageBundle(self.path("a.hib"), codecs=self.marker_codecs)
        with self.assertRaises(NotOpenForReadError):
            bundle.next()
        with self.assertRaises(NotOpenForWriteError):
            bundle.add_image(*_marker_records(1)[0])
        with self.assertRaises(FileNotFoundError):
            bundle.open_for_read()
        bundle.open_for_write()
        with self.assertRaises(AlreadyOpenError):
            bundle.open_for_write(overwrite=True)
        with self.assertRaises(AlreadyOpenError):
            bundle.open_for_read()
        with self.assertRaises(NotOpenForReadError):
            bundle.read_offsets()
        bundle.add_image(*_marker_records(1)[0])
        bundle.close()
        bundle.close()
        bundle.open_for_read()
        with self.assertRaises(NotOpenForWriteError):
            bundle.add_image(*_marker_records(1)[0])
        with self.assertRaises(NotOpenForWriteError):
            bundle.append(self.path("b.hib"))
        bundle.close()
        self.assertEqual(bundle.index_path.basename(), "a.hib")
        self.assertEqual(bundle.data_path.basename(), "a.hib.dat")

    def test_bad_index(self) -> None:
        """Test that a bundle whose index has the wrong magic number cannot
        be opened.
        """
        self.write_records("a.hib", _marker_records(1))
        with open(self.path("a.hib"), "r+b") as stream:
            stream.write(b"\x00\x00\x00\x00")
        with ImageBundle(self.path("a.hib"), codecs=self.marker_codecs) as bundle:
            with self.assertRaises(InvalidBundleError):
                bundle.open_for_read()
            self.assertIs(bundle.mode, BundleMode.UNOPENED)


class MergeTestCase(unittest.TestCase):
    """Tests for appending bundles to each other."""

    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.tmp = tmp.name
        self.codecs = CodecRegistry([MarkerCodec(ImageFormat.JPEG)])

    def path(self, name: str) -> str:
        return os.path.join(self.tmp, name)

    def make_bundle(self, name: str, records: list[tuple[ImageHeader, bytes]]) -> None:
        with BundleWriter.open(self.path(name), codecs=self.codecs) as writer:
            for header, payload in records:
                writer.add_image(header, payload)

    def read_all(self, name: str) -> tuple[list[tuple[ImageHeader, bytes]], list[int]]:
        with ImageBundle(self.path(name), codecs=self.codecs) as bundle:
            bundle.open_for_read()
            offsets = bundle.read_all_offsets()
            records = []
            while bundle.next():
                assert bundle.current_header is not None
                records.append((bundle.current_header, bundle.reader.current_payload))
            self.assertIs(bundle.status, ScanStatus.EXHAUSTED)
        return records, offsets

    def test_append(self) -> None:
        """Test that appended records follow the originals, with strictly
        increasing offsets.
        """
        first = _marker_records(3)
        second = [
            (ImageHeader(ImageFormat.JPEG, {MetadataKey.SOURCE: f"second-{i}"}), b"GOOD" + bytes([i]) * 50)
            for i in range(4)
        ]
        self.make_bundle("b.hib", second)
        with ImageBundle(self.path("a.hib"), codecs=self.codecs) as target:
            target.open_for_write()
            first_end = 0
            for header, payload in first:
                first_end = target.add_image(header, payload)
            source = ImageBundle(self.path("b.hib"))
            target.append(source, chunk_size=7)
            self.assertEqual(target.data_size, first_end + os.path.getsize(self.path("b.hib.dat")))
            # Records added after a merge continue from the new end.
            target.add_image(*first[0])
        records, offsets = self.read_all("a.hib")
        self.assertEqual(records, first + second + first[:1])
        self.assertEqual(len(offsets), 8)
        self.assertTrue(all(a < b for a, b in zip(offsets, offsets[1:])))
        self.assertEqual(offsets[-1], os.path.getsize(self.path("a.hib.dat")))

    def test_append_open_writer(self) -> None:
        """Test that a bundle cannot be appended while it is being
        written.
        """
        with ImageBundle(self.path("a.hib"), codecs=self.codecs) as target:
            target.open_for_write()
            with ImageBundle(self.path("b.hib"), codecs=self.codecs) as source:
                source.open_for_write()
                with self.assertRaises(AlreadyOpenError):
                    target.append(source)

    def test_merge(self) -> None:
        """Test the merge function."""
        self.make_bundle("a.hib", _marker_records(2))
        self.make_bundle("b.hib", [])
        self.make_bundle("c.hib", _marker_records(1))
        sources = [self.path(name) for name in ("a.hib", "b.hib", "c.hib")]
        count = merge(self.path("out.hib"), sources, codecs=self.codecs)
        self.assertEqual(count, 3)
        records, offsets = self.read_all("out.hib")
        self.assertEqual(records, _marker_records(2) + _marker_records(1))
        self.assertEqual(len(offsets), 3)
        with self.assertRaises(AlreadyExistsError):
            merge(self.path("out.hib"), [self.path("a.hib")])

    def test_merge_into_source(self) -> None:
        """Test that merging a bundle into itself is rejected before
        anything is overwritten.
        """
        records = _marker_records(3)
        self.make_bundle("a.hib", records)
        self.make_bundle("b.hib", _marker_records(1))
        size = os.path.getsize(self.path("a.hib.dat"))
        with self.assertRaises(ValueError):
            merge(
                self.path("a.hib"),
                [self.path("b.hib"), self.path("a.hib")],
                overwrite=True,
                codecs=self.codecs,
            )
        self.assertEqual(os.path.getsize(self.path("a.hib.dat")), size)
        self.assertEqual(self.read_all("a.hib")[0], records)

    def test_append_to_itself(self) -> None:
        """Test that a bundle cannot be appended to itself by path."""
        with ImageBundle(self.path("a.hib"), codecs=self.codecs) as target:
            target.open_for_write()
            target.add_image(*_marker_records(1)[0])
            with self.assertRaises(ValueError):
                target.append(self.path("a.hib"))
            self.assertIs(target.mode, BundleMode.WRITE)
        records, offsets = self.read_all("a.hib")
        self.assertEqual(records, _marker_records(1))
        self.assertEqual(len(offsets), 1)


if __name__ == "__main__":
    unittest.main()
