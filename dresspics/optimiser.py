#!/usr/bin/env python3
"""
Build-time image optimiser: responsive WebP variants + blur-up placeholder + manifest

For every source image under the input directory:
- Generates a ladder of WebP widths (default 320, 640, 1024, 2048), never upscaling.
  Rungs wider than the source collapse into a single variant at the native width.
- Writes them to <output>/<id>/<id>-<width>.webp, where <id> is the file stem
  with whitespace collapsed to hyphens.
- Encodes a ~20px, low quality WebP as a base64 data URI for blur-up loading.
- Records everything in one manifest.json, written only after all images are done.

A failed width or placeholder is logged and skipped; it never aborts the image
or the run. Only failing to create the output directory or to write the
manifest is fatal (exit status 1). A missing input directory is not an error.
"""

import argparse
import base64
import concurrent.futures as cf
import logging
import re
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from . import settings
from .encoders import ImageMagickEncoder, PillowEncoder
from .errors import EncodeError, EncoderUnavailable
from .manifest import Manifest, ManifestEntry, Variant, write_manifest
from .settings import OptimiserConfig
from .templates import update_templates
from .utils import is_transient

logger = logging.getLogger("dresspics.optimiser")

WHITESPACE_RE = re.compile(r"\s+")


def parse_variant_widths(s: str) -> List[int]:
    try:
        widths = sorted({int(x.strip()) for x in s.split(",") if x.strip()})
    except ValueError:
        raise argparse.ArgumentTypeError("Invalid --variant-widths. Example: 320,640,1024,2048")
    widths = [w for w in widths if w > 0]
    if not widths:
        raise argparse.ArgumentTypeError("--variant-widths needs at least one positive width")
    return widths

def normalise_identifier(stem: str) -> str:
    """Logical image id: the file stem with every whitespace run turned into one hyphen."""
    return WHITESPACE_RE.sub("-", stem.strip())

def collect_images(input_dir: Path) -> List[Path]:
    return sorted(
        p for p in input_dir.rglob("*")
        if p.is_file() and p.suffix.lower() in settings.IMAGE_EXTS and not is_transient(p)
    )

def plan_widths(ladder: Sequence[int], native_width: int) -> List[int]:
    """
    Widths to produce for a source of native_width pixels, ascending.
    The first rung that reaches the native width is clamped to it; the rest are dropped.
    """
    planned: List[int] = []
    for w in sorted(set(ladder)):
        if w < native_width:
            planned.append(w)
        else:
            planned.append(native_width)
            break
    return planned

def variant_name(identifier: str, width: int) -> str:
    return f"{identifier}-{width}.{settings.OUTPUT_FORMAT}"

def placeholder_data_uri(data: bytes) -> str:
    return f"data:image/{settings.OUTPUT_FORMAT};base64,{base64.b64encode(data).decode('ascii')}"

# ---------- Per-image processing ----------

def process_image(src: Path, config: OptimiserConfig, encoder) -> Tuple[str, ManifestEntry]:
    """
    Returns (identifier, entry). The entry only lists what was written successfully;
    an unreadable source still yields an entry, with nulls.
    Raises OSError only when the per-image output directory cannot be created.
    """
    identifier = normalise_identifier(src.stem)
    out_dir = config.output_dir / identifier

    try:
        native_w, native_h = encoder.read_size(src)
    except EncodeError as exc:
        logger.warning("ERR   %s: cannot read image: %s", src.name, exc)
        widths: List[int] = []
    else:
        widths = plan_widths(config.variant_widths, native_w)
        logger.debug("%s [%dx%d] -> widths %s", src.name, native_w, native_h, widths)

    variants: List[Variant] = []
    height: Optional[int] = None
    if widths:
        out_dir.mkdir(parents=True, exist_ok=True)
    for w in widths:
        filename = variant_name(identifier, w)
        try:
            _, h = encoder.resize_to_file(src, out_dir / filename, w, config.quality)
        except EncodeError as exc:
            logger.warning("ERR   %s variant %d: %s", src.name, w, exc)
            continue
        variants.append(Variant(w, config.variant_url(identifier, filename)))
        height = h

    placeholder: Optional[str] = None
    try:
        tiny = encoder.resize_to_bytes(src, config.placeholder_width, config.placeholder_quality)
    except EncodeError as exc:
        logger.warning("ERR   %s placeholder: %s", src.name, exc)
    else:
        placeholder = placeholder_data_uri(tiny)

    entry = ManifestEntry.from_variants(variants, placeholder=placeholder, height=height)
    if entry.is_empty:
        logger.warning("ERR   %s: no variants produced", src.name)
    else:
        logger.info("DONE  %s -> %s (max=%s)", src.name, [f"{v.width}w" for v in entry.variants], entry.width)
    return identifier, entry

def build_manifest(images: Sequence[Path], config: OptimiserConfig, encoder) -> Manifest:
    by_identifier: Dict[str, Path] = {}
    for p in images:
        identifier = normalise_identifier(p.stem)
        if identifier in by_identifier:
            logger.warning("SKIP  %s: id %r already taken by %s", p, identifier, by_identifier[identifier])
            continue
        by_identifier[identifier] = p

    entries: Dict[str, ManifestEntry] = {}
    with cf.ThreadPoolExecutor(max_workers=max(1, config.threads)) as ex:
        futures = {ex.submit(process_image, p, config, encoder): (identifier, p) for identifier, p in by_identifier.items()}
        for fut in cf.as_completed(futures):
            identifier, p = futures[fut]
            try:
                entries[identifier] = fut.result()[1]
            except OSError:
                raise
            except Exception as e:
                # one bad image never sinks the batch; it is recorded with nulls
                logger.warning("ERR   %s: %s: %s", p.name, type(e).__name__, e)
                entries[identifier] = ManifestEntry.from_variants([])

    return Manifest({identifier: entries[identifier] for identifier in sorted(entries)})

# ---------- Main processing ----------

def run(config: OptimiserConfig, encoder=None) -> int:
    """Run one batch. Returns the process exit status."""
    encoder = encoder or PillowEncoder()

    if not config.input_dir.exists():
        logger.info("SKIP  input directory not found: %s (nothing to optimise)", config.input_dir)
        return 0

    images = collect_images(config.input_dir)
    if not images:
        logger.info("No images found in %s; manifest not written", config.input_dir)
        return 0

    logger.info("Found %d image(s) in %s", len(images), config.input_dir)
    logger.info(
        "Variants: %s px, quality=%d, placeholder=%dpx q%d, encoder=%s, threads=%d",
        config.variant_widths, config.quality, config.placeholder_width,
        config.placeholder_quality, encoder.name, config.threads,
    )

    try:
        config.output_dir.mkdir(parents=True, exist_ok=True)
        manifest = build_manifest(images, config, encoder)
    except OSError as e:
        logger.error("Cannot create output directories under %s: %s", config.output_dir, e)
        return 1

    try:
        write_manifest(manifest, config.manifest_path)
    except OSError as e:
        logger.error("Failed to write manifest %s: %s", config.manifest_path, e)
        return 1

    logger.info("Wrote manifest: %s (%d entries)", config.manifest_path, len(manifest))
    return 0

def build_encoder(args: argparse.Namespace):
    if args.encoder == "imagemagick" or args.imagemagick_bin:
        return ImageMagickEncoder.discover(args.imagemagick_bin)
    return PillowEncoder()

def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Optimise source images into responsive WebP variants and a manifest.")
    parser.add_argument("--root", default=settings.PROJECT_ROOT, help="Project root (default: $DRESSPICS_ROOT or .)")
    parser.add_argument("--input", default=settings.INPUT_DIR, help="Source image directory, relative to root")
    parser.add_argument("--output", default=settings.OUTPUT_DIR, help="Derivative output directory, relative to root")
    parser.add_argument("--manifest", default=settings.MANIFEST_PATH, help="Manifest path, relative to root")
    parser.add_argument("--url-prefix", default=settings.OUTPUT_URL_PREFIX, help="Public URL of the output directory")
    parser.add_argument("--variant-widths", type=parse_variant_widths, default="320,640,1024,2048",
                        help="Comma-separated widths to generate (e.g. 320,640,1024,2048)")
    parser.add_argument("--quality", type=int, default=settings.QUALITY, help="WebP quality for variants")
    parser.add_argument("--placeholder-width", type=int, default=settings.PLACEHOLDER_WIDTH, help="Blur-up placeholder width")
    parser.add_argument("--placeholder-quality", type=int, default=settings.PLACEHOLDER_QUALITY, help="Blur-up placeholder quality")
    parser.add_argument("--encoder", choices=["pillow", "imagemagick"], default="pillow", help="Codec back-end")
    parser.add_argument("--imagemagick-bin", default=None, help='ImageMagick binary. For example "convert" or "magick"')
    parser.add_argument("--threads", type=int, default=1, help="Worker threads across images")

    # HTML control
    parser.add_argument("--templates", action="append", default=[],
                        help="HTML directory (relative to root) whose <img> tags get srcset/sizes; repeatable")
    parser.add_argument("--default-sizes", default=settings.DEFAULT_SIZES,
                        help='Default "sizes" attribute to use when no pattern matches')
    parser.add_argument("--no-lazy", action="store_true", help="Do not add loading=lazy to rewritten tags")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    return parser.parse_args(argv)

def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )

    config = OptimiserConfig.for_root(
        args.root,
        input_dir=args.input,
        output_dir=args.output,
        manifest_path=args.manifest,
        url_prefix=args.url_prefix,
        variant_widths=args.variant_widths,
        quality=args.quality,
        placeholder_width=args.placeholder_width,
        placeholder_quality=args.placeholder_quality,
        threads=args.threads,
    )

    try:
        encoder = build_encoder(args)
    except EncoderUnavailable as e:
        logger.error("%s", e)
        sys.exit(1)

    status = run(config, encoder)

    if status == 0 and args.templates and config.manifest_path.exists():
        changed = update_templates(
            [config.root / t for t in args.templates],
            Manifest.load(config.manifest_path),
            url_prefix=config.url_prefix,
            default_sizes=args.default_sizes,
            force_lazy=not args.no_lazy,
        )
        logger.info("Template updates: %d file(s) changed", changed)

    sys.exit(status)

if __name__ == "__main__":
    main()
