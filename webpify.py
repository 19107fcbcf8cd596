#!/usr/bin/env python3
"""webpify - convert images to WebP at responsive widths.

Each input image is converted to WebP next to the original, then resized
copies are written for every target width narrower than the source:

    photo.png -> photo.webp, photo-400w.webp, photo-800w.webp, ...

Encoding is done by the `cwebp` command-line tool. Pillow is only used to
read the source width.

Usage (CLI):
    webpify hero.png gallery/*.jpg
"""

import argparse
import logging
import os
import shutil
import subprocess
import sys
import warnings
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from pluginpack import (
    SUCCESS,
    CommandError,
    Pathlike,
    run_command,
    setup_logging,
)

__version__ = "0.1.0"

DEFAULT_WIDTHS = (400, 800, 1200)

# cwebp quality for the full-size conversion and for resized copies
CONVERT_QUALITY = 90
RESIZE_QUALITY = 85

# Checked in order when cwebp is not on PATH
CWEBP_FALLBACK_PATHS = [
    Path("/opt/homebrew/bin/cwebp"),
    Path("/usr/local/bin/cwebp"),
]

NOTIFICATION_TITLE = "WebP Conversion Complete"
ERROR_TITLE = "WebP Error"


class WebPError(Exception):
    """Base exception class for webpify errors."""


class ToolNotFoundError(WebPError):
    """Exception raised when cwebp cannot be located."""


class ConversionError(WebPError):
    """Exception raised when an image cannot be converted."""


def find_cwebp() -> Path:
    """Locate the cwebp binary.

    Raises:
        ToolNotFoundError: If cwebp is neither on PATH nor in a Homebrew prefix
    """
    found = shutil.which("cwebp")
    if found:
        return Path(found)
    for candidate in CWEBP_FALLBACK_PATHS:
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return candidate
    raise ToolNotFoundError("cwebp not found. Install with: brew install webp")


def image_width(path: Pathlike) -> int:
    """Read the pixel width of an image.

    Raises:
        ConversionError: If the file is not a readable image
    """
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", Image.DecompressionBombWarning)
            with Image.open(path) as img:
                return img.width
    except (
        UnidentifiedImageError,
        Image.DecompressionBombError,
        OSError,
    ) as e:
        raise ConversionError(
            f"Could not determine width of {path}: {e}"
        ) from e


def responsive_widths(
    original_width: int, widths: tuple[int, ...] = DEFAULT_WIDTHS
) -> list[int]:
    """Target widths strictly narrower than the original, in order."""
    return [width for width in widths if width < original_width]


def notify(message: str, title: str = NOTIFICATION_TITLE) -> None:
    """Post a macOS notification. Failures are only logged."""
    log = logging.getLogger("webpify")
    script = (
        f"display notification {_applescript_str(message)} "
        f"with title {_applescript_str(title)}"
    )
    try:
        subprocess.run(
            ["osascript", "-e", script],
            shell=False,
            check=False,
            capture_output=True,
        )
    except FileNotFoundError:
        log.debug("osascript not available, notification skipped")


def _applescript_str(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


class WebPConverter:
    """Converts images to WebP and writes resized variants.

    Args:
        cwebp: Path to the cwebp binary
        widths: Target widths for the responsive variants
        dry_run: If True, show commands without executing
    """

    def __init__(
        self,
        cwebp: Pathlike,
        widths: tuple[int, ...] = DEFAULT_WIDTHS,
        dry_run: bool = False,
    ) -> None:
        self.cwebp = str(cwebp)
        self.widths = widths
        self.dry_run = dry_run
        self.log = logging.getLogger(self.__class__.__name__)

    def run_command(self, command: list[str], description: str) -> str:
        """Run a cwebp command, honoring dry-run."""
        return run_command(
            command, description, dry_run=self.dry_run, log=self.log
        )

    def to_webp(self, source: Path) -> Path:
        """Return a WebP version of source, converting it if needed."""
        if source.suffix.lower() == ".webp":
            self.log.info("File is already WebP")
            return source

        target = source.with_suffix(".webp")
        try:
            self.run_command(
                [
                    self.cwebp,
                    "-q",
                    str(CONVERT_QUALITY),
                    str(source),
                    "-o",
                    str(target),
                ],
                f"Converting to WebP: {target}",
            )
        except CommandError as e:
            raise ConversionError(f"Failed to convert {source}: {e}") from e
        self.log.log(SUCCESS, "Conversion successful")
        return target

    def resize(self, webp: Path, stem: Path, width: int) -> Path | None:
        """Write a `<stem>-<width>w.webp` copy; None if cwebp failed."""
        output = stem.parent / f"{stem.name}-{width}w.webp"
        try:
            self.run_command(
                [
                    self.cwebp,
                    "-q",
                    str(RESIZE_QUALITY),
                    "-resize",
                    str(width),
                    "0",
                    str(webp),
                    "-o",
                    str(output),
                ],
                f"Creating {width}w version: {output}",
            )
        except CommandError as e:
            self.log.error("Failed to create %s: %s", output.name, e)
            return None
        self.log.log(SUCCESS, "Created successfully")
        return output

    def convert(self, source: Pathlike) -> list[Path]:
        """Convert one image and write its responsive variants.

        Returns:
            Every WebP file written (or reused) for this image

        Raises:
            ConversionError: If the file is missing, unreadable or cannot be
                converted
        """
        source = Path(source)
        self.log.info("Processing: %s", source)
        if not source.is_file():
            raise ConversionError(f"File not found - {source}")

        width = image_width(source)
        self.log.info("Original width: %dpx", width)
        if width <= 0:
            raise ConversionError(f"Could not determine width of {source}")

        webp = self.to_webp(source)
        written = [webp]
        stem = source.with_suffix("")
        targets = responsive_widths(width, self.widths)
        for target in self.widths:
            if target not in targets:
                self.log.info(
                    "Skipping %dw (original is only %dpx)", target, width
                )
                continue
            output = self.resize(webp, stem, target)
            if output is not None:
                written.append(output)

        self.log.log(SUCCESS, "Completed: %s", webp.name)
        return written

    def convert_all(self, sources: list[Pathlike]) -> tuple[int, int]:
        """Convert every source, continuing past failures.

        Returns:
            (converted, failed) counts
        """
        converted = failed = 0
        for source in sources:
            try:
                self.convert(source)
            except WebPError as e:
                self.log.error("%s", e)
                failed += 1
                continue
            converted += 1
        return converted, failed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="webpify",
        description=(
            "Convert images to WebP plus "
            + ", ".join(f"{w}w" for w in DEFAULT_WIDTHS)
            + " responsive variants."
        ),
        epilog=(
            "Examples:\n"
            "  webpify hero.png\n"
            "  webpify --no-notify gallery/*.jpg\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "images",
        nargs="+",
        metavar="IMAGE",
        help="image to convert",
    )
    parser.add_argument(
        "--no-notify",
        action="store_true",
        help="do not post a macOS notification when done",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="show commands without executing",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="enable verbose/debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="disable colored output",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    """Command line interface for webpify."""
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("webpify")

    log.info("WebP conversion started: %d file(s)", len(args.images))
    try:
        cwebp = find_cwebp()
    except ToolNotFoundError as e:
        log.error("%s", e)
        if not args.no_notify:
            notify(str(e), title=ERROR_TITLE)
        sys.exit(1)
    log.info("Found cwebp at: %s", cwebp)

    converter = WebPConverter(cwebp, dry_run=args.dry_run)
    try:
        converted, failed = converter.convert_all(args.images)
    except KeyboardInterrupt:
        log.info("Interrupted by user")
        sys.exit(130)

    if failed:
        message = f"{converted} image(s) converted, {failed} failed"
        log.warning("Conversion complete: %s", message)
    else:
        message = "All images converted successfully"
        log.log(SUCCESS, "Conversion complete: %s", message)
    if not args.no_notify:
        notify(message)
    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
