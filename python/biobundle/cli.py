# This file is part of biobundle.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

"""Command-line interface for creating, inspecting, exporting, and merging
bundles.
"""

from __future__ import annotations

__all__ = ("main",)

import logging
import os
from logging import getLogger

import click
from lsst.resources import ResourcePath

from ._bundle import ImageBundle, merge
from ._format import ImageFormat, MetadataKey
from ._reader import BundleReader
from ._writer import data_path_for

_LOG = getLogger(__name__)

# Export format choices, mapped to the formats they select.
_EXPORT_FORMATS = {
    "all": frozenset(fmt for fmt in ImageFormat if fmt.is_defined),
    "jpg": frozenset({ImageFormat.JPEG}),
    "png": frozenset({ImageFormat.PNG}),
    "nii": frozenset({ImageFormat.NIFTI}),
    "dcm": frozenset({ImageFormat.DICOM}),
}

# Longest first, so "nii.gz" is matched before shorter extensions.
_KNOWN_EXTENSIONS = sorted(
    ((ext, fmt) for fmt in ImageFormat for ext in fmt.extensions), key=lambda item: -len(item[0])
)


def _format_for_filename(filename: str) -> ImageFormat:
    name = filename.lower()
    for ext, fmt in _KNOWN_EXTENSIONS:
        if name.endswith(f".{ext}"):
            return fmt
    raise click.BadParameter(f"Cannot infer an image format from {filename!r}.", param_hint="FILES")


def _base_name(source: str) -> str:
    name = os.path.basename(source)
    for ext, _ in _KNOWN_EXTENSIONS:
        if name.lower().endswith(f".{ext}"):
            return name[: -len(ext) - 1]
    return os.path.splitext(name)[0]


@click.group("biobundle")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for diagnostics written to stderr.",
)
def main(log_level: str) -> None:
    """Create and read bundles of biomedical images."""
    logging.basicConfig(level=log_level.upper(), format="%(levelname)s %(name)s: %(message)s")


@main.command("create")
@click.argument("bundle")
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("--overwrite", is_flag=True, help="Replace an existing bundle.")
def create(bundle: str, files: tuple[str, ...], overwrite: bool) -> None:
    """Create BUNDLE from image FILES.

    The format of each file is inferred from its extension, and its name is
    recorded in the 'source' metadata entry.
    """
    formats = [_format_for_filename(filename) for filename in files]
    with ImageBundle(bundle) as image_bundle:
        image_bundle.open_for_write(overwrite=overwrite)
        for filename, image_format in zip(files, formats):
            with open(filename, "rb") as stream:
                payload = stream.read()
            image_bundle.add_image_bytes(
                payload, image_format, {MetadataKey.SOURCE: os.path.basename(filename)}
            )
            _LOG.info("Added %s as %s.", filename, image_format.name)
    click.echo(f"Wrote {len(files)} images to {bundle}.")


@main.command("info")
@click.argument("bundle")
@click.option("--start", default=0, show_default=True, help="Byte offset of the first record to show.")
@click.option("--end", default=0, show_default=True, help="Inclusive last byte offset (0 for end of file).")
def info(bundle: str, start: int, end: int) -> None:
    """Print the header of each record in BUNDLE."""
    count = 0
    with BundleReader(data_path_for(bundle), start, end, decode=False) as reader:
        for header, _ in reader:
            click.echo(f"[{count}] {header}")
            count += 1
        click.echo(f"{count} records; scan status: {reader.status.name}.")


@main.command("export")
@click.argument(
    "export_format", metavar="FORMAT", type=click.Choice(list(_EXPORT_FORMATS), case_sensitive=False)
)
@click.argument("bundle")
@click.argument("outdir")
def export(export_format: str, bundle: str, outdir: str) -> None:
    """Write images of FORMAT (all, jpg, png, nii, or dcm) in BUNDLE to files
    in OUTDIR.

    Each image is written to a file named after its 'source' metadata entry,
    with the extension of its format.
    """
    selected = _EXPORT_FORMATS[export_format.lower()]
    out_root = ResourcePath(outdir, forceDirectory=True)
    out_root.mkdir()
    with ImageBundle(bundle) as image_bundle:
        image_bundle.open_for_read()
        for header, image in image_bundle:
            if header.storage_format not in selected or image is None:
                continue
            source = header.get_metadata(MetadataKey.SOURCE)
            if source is None:
                _LOG.warning("Failed to locate source metadata entry, skipping.")
                continue
            base = _base_name(source)
            if not base:
                _LOG.warning("Failed to determine base name of source %r, skipping.", source)
                continue
            try:
                data = image_bundle.codecs.encode(image)
            except (TypeError, ValueError) as err:
                _LOG.warning(
                    "Failed to encode %s as %s, skipping: %s", source, header.storage_format.name, err
                )
                continue
            out_root.join(f"{base}.{header.storage_format.extensions[0]}").write(data, overwrite=True)
            click.echo(f"{header.storage_format.name}\t{base}")


@main.command("merge")
@click.argument("target")
@click.argument("sources", nargs=-1, required=True)
def merge_command(target: str, sources: tuple[str, ...]) -> None:
    """Create TARGET from the records of the SOURCES bundles, in order.

    An existing TARGET bundle is replaced.
    """
    try:
        count = merge(target, sources, overwrite=True)
    except ValueError as err:
        raise click.BadParameter(str(err), param_hint="SOURCES") from err
    click.echo(f"Merged {count} records from {len(sources)} bundles into {target}.")


if __name__ == "__main__":
    main()
