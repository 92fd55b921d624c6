"""Add a uniform border to images, growing the canvas to the closest common ratio."""

from __future__ import annotations

import argparse
import logging
import os
import struct
import sys
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from fractions import Fraction
from pathlib import Path
from typing import Final, Iterable, Sequence

from PIL import Image, ImageColor, ImageOps, UnidentifiedImageError

Color = tuple[int, int, int, int]
Dimensions = tuple[int, int]

DEFAULT_BORDER: Final = 400
DEFAULT_COLOR: Final = "white"
OUTPUT_SUFFIX: Final = "_bordered"
_NO_ALPHA_SUFFIXES: Final = {".jpg", ".jpeg"}


class BorderError(Exception):
    """A failure scoped to a single input file."""

    kind = "error"

    def __init__(self, path: Path, detail: str) -> None:
        super().__init__(f"{self.kind}: {detail}")
        self.path = path
        self.detail = detail


class FileOpenError(BorderError):
    kind = "cannot open file"


class DecodeError(BorderError):
    kind = "cannot decode image"


class EncodeError(BorderError):
    kind = "cannot save image"


class TaskError(BorderError):
    """Anything else that went wrong while processing one file."""

    kind = "unexpected failure"


@dataclass(frozen=True)
class RatioCatalog:
    """Ordered candidate ratios; earlier entries win ties."""

    candidates: tuple[Fraction, ...]

    @classmethod
    def forced(cls, ratio: Fraction, orientation: bool = False) -> RatioCatalog:
        if orientation:
            return cls((ratio,))
        return cls((ratio, 1 / ratio))


DEFAULT_CATALOG: Final = RatioCatalog(
    (
        Fraction(1, 1),
        Fraction(3, 2),
        Fraction(2, 3),
        Fraction(4, 3),
        Fraction(3, 4),
        Fraction(4, 5),
        Fraction(5, 4),
        Fraction(16, 9),
        Fraction(9, 16),
    )
)


@dataclass(frozen=True)
class BorderConfig:
    border: int = DEFAULT_BORDER
    catalog: RatioCatalog = DEFAULT_CATALOG
    color: Color = (255, 255, 255, 255)


@dataclass(frozen=True)
class ProcessingResult:
    path: Path
    output: Path | None = None
    error: BorderError | None = field(default=None, compare=False)

    @property
    def ok(self) -> bool:
        return self.error is None

    def describe(self) -> str:
        if self.error is None:
            return f"ok: {self.path} -> {self.output}"
        return f"failed: {self.path}: {self.error}"


# ------------------------- ratio arithmetic -------------------------
def proximity(a: Fraction, b: Fraction) -> Fraction:
    """Return how far *a* is from *b*; 0 is a perfect match.

    The metric divides *a* by *b*, so it is not symmetric:
    ``proximity(2, 4) == 1/2`` while ``proximity(4, 2) == 1``.
    """

    check = a / b
    if check > 1:
        return check - 1
    return 1 - check


def approximate(dims: Dimensions, candidates: Iterable[Fraction]) -> Fraction:
    """Return the candidate closest to the ratio of *dims*.

    The first candidate wins ties. With no candidates the raw ratio of the
    dimensions is returned. A zero height is a caller error.
    """

    raw = Fraction(dims[0], dims[1])
    best = raw
    best_proximity: Fraction | None = None
    for candidate in candidates:
        score = proximity(candidate, raw)
        if best_proximity is None or score < best_proximity:
            best, best_proximity = candidate, score
    return best


def adjust(dims: Dimensions, border: int, ratio: Fraction) -> Dimensions:
    """Grow *dims* by *border* on the larger side and derive the other from *ratio*.

    Square images count as portrait. The derived side is truncated, so the
    result may be slightly off *ratio*. A zero numerator (landscape) or zero
    denominator (portrait) raises ``ZeroDivisionError``.
    """

    width, height = dims
    if width > height:
        new_width = width + border
        return new_width, new_width * ratio.denominator // ratio.numerator
    new_height = height + border
    return new_height * ratio.numerator // ratio.denominator, new_height


# ------------------------- compositing -------------------------
def _half(value: int) -> int:
    # truncates toward zero, unlike //
    half = abs(value) // 2
    return half if value >= 0 else -half


def compose(image: Image.Image, size: Dimensions, color: Color) -> Image.Image:
    """Return a new *size* canvas filled with *color* and *image* centered on it.

    Odd leftover padding goes to the right/bottom. Source transparency is
    blended over the border color. If *size* is smaller than the image on
    some axis, the image is clipped around its center.
    """

    canvas = Image.new("RGBA", size, color)
    source = image if image.mode == "RGBA" else image.convert("RGBA")
    offset_x = _half(size[0] - source.width)
    offset_y = _half(size[1] - source.height)
    canvas.alpha_composite(
        source,
        dest=(max(0, offset_x), max(0, offset_y)),
        source=(max(0, -offset_x), max(0, -offset_y)),
    )
    return canvas


# ------------------------- codec -------------------------
def output_path(path: Path) -> Path:
    """Return ``<stem>_bordered<suffix>`` beside *path*."""

    return path.with_name(f"{path.stem}{OUTPUT_SUFFIX}{path.suffix}")


def decode(path: Path) -> Image.Image:
    try:
        with open(path, "rb"):
            pass
    except OSError as exc:
        raise FileOpenError(path, exc.strerror or str(exc)) from exc

    try:
        with Image.open(path) as opened:
            opened.load()
            image = ImageOps.exif_transpose(opened)
            return image.convert("RGBA")
    except (
        UnidentifiedImageError,
        Image.DecompressionBombError,
        OSError,
        ValueError,
        struct.error,
    ) as exc:
        raise DecodeError(path, str(exc)) from exc


def encode(image: Image.Image, path: Path) -> None:
    if path.suffix.lower() in _NO_ALPHA_SUFFIXES:
        image = image.convert("RGB")
    try:
        image.save(path, quality=95)
    except (OSError, ValueError, KeyError, struct.error) as exc:
        raise EncodeError(path, str(exc)) from exc


# ------------------------- batch -------------------------
def process_file(path: Path, config: BorderConfig) -> ProcessingResult:
    """Border one file end to end; failures are captured in the result."""

    try:
        image = decode(path)
        ratio = approximate(image.size, config.catalog.candidates)
        size = adjust(image.size, config.border, ratio)
        logging.debug(
            "%s: %dx%d, ratio %s -> %dx%d", path, *image.size, ratio, *size
        )
        bordered = compose(image, size, config.color)
        destination = output_path(path)
        encode(bordered, destination)
    except BorderError as exc:
        logging.warning("%s: %s", path, exc)
        return ProcessingResult(path, error=exc)

    logging.info("wrote %s", destination)
    return ProcessingResult(path, output=destination)


def unique_paths(paths: Iterable[str | os.PathLike[str]]) -> list[Path]:
    return list(dict.fromkeys(Path(p) for p in paths))


def run_batch(
    paths: Iterable[str | os.PathLike[str]],
    config: BorderConfig,
    workers: int | None = None,
) -> list[ProcessingResult]:
    """Process every unique path concurrently and wait for all of them.

    Results are returned in completion order. A task that dies with an
    unexpected exception still yields a result carrying a ``TaskError``.
    """

    files = unique_paths(paths)
    if not files:
        return []

    max_workers = max(1, workers or os.cpu_count() or 1)
    logging.debug("processing %d file(s) with %d worker(s)", len(files), max_workers)
    results: list[ProcessingResult] = []
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        futures = {pool.submit(process_file, path, config): path for path in files}
        for future in as_completed(futures):
            path = futures[future]
            try:
                results.append(future.result())
            except Exception as exc:
                logging.error("%s: unexpected failure", path, exc_info=exc)
                error = TaskError(path, f"{type(exc).__name__}: {exc}")
                error.__cause__ = exc
                results.append(ProcessingResult(path, error=error))
    return results


# ------------------------- CLI -------------------------
def parse_ratio(value: str) -> Fraction:
    """Parse aspect ratio values like "4:5", "1080x1350", "4/5" or "0.8"."""

    text = value.strip().lower()
    for separator in (":", "x"):
        if separator in text:
            lhs, rhs = text.split(separator, 1)
            first, second = Fraction(lhs.strip()), Fraction(rhs.strip())
            if first <= 0 or second <= 0:
                raise ValueError("ratio components must be positive")
            return first / second

    ratio = Fraction(text)
    if ratio <= 0:
        raise ValueError("ratio must be positive")
    return ratio


def parse_color(value: str) -> Color:
    """Parse a Pillow color; the alpha channel is always forced opaque."""

    red, green, blue, _alpha = ImageColor.getcolor(value.strip(), "RGBA")
    return red, green, blue, 255


def _non_negative(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError("must be a non-negative integer")
    return number


def _positive(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError("must be a positive integer")
    return number


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        description=(
            "Add a border to images, padding the shorter side so the result "
            "matches the closest common aspect ratio."
        )
    )
    ap.add_argument("files", nargs="*", help="Image files to border.")
    ap.add_argument(
        "-b",
        "--border",
        type=_non_negative,
        default=DEFAULT_BORDER,
        help=f"Border size in pixels on the larger side. Default: {DEFAULT_BORDER}",
    )
    ap.add_argument(
        "-r",
        "--ratio",
        help="Force a ratio (W:H, WxH, W/H, or a positive decimal) instead of guessing.",
    )
    ap.add_argument(
        "-o",
        "--force-orientation",
        action="store_true",
        help="With --ratio, use it as given instead of also trying its reciprocal.",
    )
    ap.add_argument(
        "-c",
        "--color",
        default=DEFAULT_COLOR,
        help=f"Border color (name or #hex); always opaque. Default: {DEFAULT_COLOR}",
    )
    ap.add_argument(
        "-j",
        "--workers",
        type=_positive,
        default=None,
        help="Number of images processed at once. Default: CPU count",
    )
    ap.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase logging verbosity (-v, -vv).",
    )
    return ap


def config_from_args(
    ap: argparse.ArgumentParser, args: argparse.Namespace
) -> BorderConfig:
    try:
        color = parse_color(args.color)
    except ValueError:
        ap.error(f"unknown --color value: {args.color}")

    catalog = DEFAULT_CATALOG
    if args.ratio is not None:
        try:
            ratio = parse_ratio(args.ratio)
        except (ValueError, ZeroDivisionError):
            ap.error(
                "--ratio must be W:H, WxH, W/H, or a positive decimal (e.g., 4:5, 1080x1350, 0.8)"
            )
        catalog = RatioCatalog.forced(ratio, args.force_orientation)
    elif args.force_orientation:
        logging.warning("--force-orientation has no effect without --ratio")

    return BorderConfig(border=args.border, catalog=catalog, color=color)


def run_cli(argv: Sequence[str] | None = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)

    level = (
        logging.WARNING
        if args.verbose == 0
        else (logging.INFO if args.verbose == 1 else logging.DEBUG)
    )
    logging.basicConfig(
        level=level, stream=sys.stderr, format="%(levelname)s: %(message)s"
    )

    config = config_from_args(ap, args)
    if not args.files:
        logging.warning("no input files given")
        return 0

    results = run_batch(args.files, config, workers=args.workers)
    for result in results:
        print(result.describe())

    failed = sum(1 for result in results if not result.ok)
    if failed:
        logging.warning("%d of %d file(s) failed", failed, len(results))
        return 1
    return 0


def main() -> None:
    sys.exit(run_cli())


if __name__ == "__main__":  # pragma: no cover - entrypoint
    main()
