"""Codec back-ends used by the optimiser.

Both back-ends shrink only (never upscale) and write WebP. Pillow is the
default; ImageMagick is used when it is installed and explicitly requested.
"""

import io
import logging
import subprocess
from pathlib import Path
from typing import List, Optional, Tuple

from PIL import Image, ImageOps

from .errors import EncodeError, EncoderUnavailable

logger = logging.getLogger("dresspics.encoders")

WEBP_METHOD = 6

# what Pillow raises for unreadable, truncated or oversized sources
PILLOW_ERRORS = (OSError, ValueError, SyntaxError, Image.DecompressionBombError)


def has_alpha(im: Image.Image) -> bool:
    return ("A" in im.mode) or (im.info.get("transparency") is not None)


def read_size_with_pillow(path: Path) -> Tuple[int, int]:
    """Displayed size of the image, honouring the EXIF orientation tag."""
    with Image.open(path) as im:
        orientation = im.getexif().get(0x0112, 1)
        w, h = im.size
    # orientations 5-8 swap the axes
    if orientation in (5, 6, 7, 8):
        return h, w
    return w, h


class PillowEncoder:
    name = "pillow"

    def __init__(self, method: int = WEBP_METHOD):
        self.method = method

    def read_size(self, path: Path) -> Tuple[int, int]:
        try:
            return read_size_with_pillow(path)
        except PILLOW_ERRORS as exc:
            raise EncodeError(f"{path.name}: {exc}") from exc

    def _shrink(self, im: Image.Image, width: int) -> Image.Image:
        im = ImageOps.exif_transpose(im)
        if im.mode not in ("RGB", "RGBA"):
            im = im.convert("RGBA" if has_alpha(im) else "RGB")
        w, h = im.size
        if w <= width:
            return im
        height = max(1, round(h * width / w))
        return im.resize((width, height), Image.LANCZOS)

    def _encode(self, path: Path, width: int, quality: int, out) -> Tuple[int, int]:
        with Image.open(path) as im:
            resized = self._shrink(im, width)
            resized.save(out, format="WEBP", quality=quality, method=self.method)
            return resized.size

    def resize_to_file(self, src: Path, dst: Path, width: int, quality: int) -> Tuple[int, int]:
        try:
            return self._encode(src, width, quality, dst)
        except PILLOW_ERRORS as exc:
            raise EncodeError(f"{src.name} -> {dst.name}: {exc}", width) from exc

    def resize_to_bytes(self, src: Path, width: int, quality: int) -> bytes:
        buf = io.BytesIO()
        try:
            self._encode(src, width, quality, buf)
        except PILLOW_ERRORS as exc:
            raise EncodeError(f"{src.name} @ {width}px: {exc}", width) from exc
        return buf.getvalue()


# ---------- ImageMagick ----------

def find_imagemagick_bin(explicit: Optional[str] = None) -> Tuple[str, bool]:
    candidates = []
    if explicit:
        candidates.append(explicit)
    candidates += ["convert", "magick"]
    for exe in candidates:
        try:
            out = subprocess.run([exe, "-version"], capture_output=True, text=True)
            if out.returncode == 0 and ("ImageMagick" in out.stdout or "ImageMagick" in out.stderr):
                requires_wrapper = (exe == "magick")
                return exe, requires_wrapper
        except FileNotFoundError:
            continue
    raise EncoderUnavailable("Could not find ImageMagick. Install it or pass --imagemagick-bin")


class ImageMagickEncoder:
    name = "imagemagick"

    def __init__(self, im_bin: str, requires_wrapper: bool = False, method: int = WEBP_METHOD):
        self.im_bin = im_bin
        self.requires_wrapper = requires_wrapper
        self.method = method

    @classmethod
    def discover(cls, explicit: Optional[str] = None) -> "ImageMagickEncoder":
        im_bin, requires_wrapper = find_imagemagick_bin(explicit)
        logger.debug("Using ImageMagick binary %s", im_bin)
        return cls(im_bin, requires_wrapper)

    def build_convert_cmd(self, src: Path, dst: str, width: int, quality: int) -> List[str]:
        cmd = [self.im_bin, "convert"] if self.requires_wrapper else [self.im_bin]
        # ">" shrinks only
        cmd += [str(src), "-auto-orient", "-resize", f"{width}x>", "-strip"]
        cmd += ["-quality", str(quality), "-define", f"webp:method={self.method}"]
        cmd += [dst]
        return cmd

    def _identify(self, path: Path) -> Optional[Tuple[int, int]]:
        if self.requires_wrapper:
            cmd = [self.im_bin, "identify", "-format", "%w %h", str(path)]
        else:
            base = "identify" if self.im_bin == "convert" else self.im_bin
            cmd = [base, "-format", "%w %h", str(path)]
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True)
        except OSError:
            return None
        if proc.returncode == 0:
            parts = proc.stdout.strip().split()
            if len(parts) == 2 and parts[0].isdigit() and parts[1].isdigit():
                return int(parts[0]), int(parts[1])
        return None

    def read_size(self, path: Path) -> Tuple[int, int]:
        try:
            return read_size_with_pillow(path)
        except PILLOW_ERRORS:
            size = self._identify(path)
        if size is None:
            raise EncodeError(f"{path.name}: could not read size")
        return size

    def _run(self, cmd: List[str], width: int, text: bool) -> subprocess.CompletedProcess:
        try:
            proc = subprocess.run(cmd, capture_output=True, text=text)
        except OSError as exc:
            raise EncodeError(f"{cmd[0]}: {exc}", width) from exc
        if proc.returncode != 0:
            stderr = proc.stderr if text else proc.stderr.decode("utf-8", "replace")
            stdout = proc.stdout if text else ""
            raise EncodeError(stderr.strip() or stdout.strip() or f"exit status {proc.returncode}", width)
        return proc

    def resize_to_file(self, src: Path, dst: Path, width: int, quality: int) -> Tuple[int, int]:
        self._run(self.build_convert_cmd(src, str(dst), width, quality), width, text=True)
        return self.read_size(dst)

    def resize_to_bytes(self, src: Path, width: int, quality: int) -> bytes:
        proc = self._run(self.build_convert_cmd(src, "webp:-", width, quality), width, text=False)
        return proc.stdout
