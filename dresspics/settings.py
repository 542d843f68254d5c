"""Paths, defaults and environment overrides shared by the optimiser and the resolver."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

# Optional environment overrides
PROJECT_ROOT = os.environ.get("DRESSPICS_ROOT", ".")
SITE_BASE_URL = os.environ.get("DRESSPICS_BASE_URL", "http://localhost:8080/")

INPUT_DIR = "assets/images/original"
OUTPUT_DIR = "public/images/optimized"
MANIFEST_PATH = "public/images/manifest.json"

# Public URLs, as served by the static host
OUTPUT_URL_PREFIX = "/images/optimized"
MANIFEST_URL_PATH = "/images/manifest.json"

VARIANT_WIDTHS = [320, 640, 1024, 2048]
QUALITY = 75
PLACEHOLDER_WIDTH = 20
PLACEHOLDER_QUALITY = 40
OUTPUT_FORMAT = "webp"

IMAGE_EXTS = {".jpg", ".jpeg", ".png", ".webp"}

DEFAULT_SIZES = "(max-width: 768px) 90vw, 356px"
FETCH_TIMEOUT = 10.0


def ensure_base_url(url: str) -> str:
    """Normalise base URL to http(s)://.../ form."""
    if not url.startswith(("http://", "https://")):
        url = "https://" + url
    if not url.endswith("/"):
        url += "/"
    return url


def absolute_url(path: str, base_url: Optional[str] = None) -> str:
    """Return absolute URL for path or passthrough if already absolute."""
    if path.startswith(("http://", "https://")):
        return path
    return ensure_base_url(base_url or SITE_BASE_URL) + path.lstrip("/")


@dataclass
class OptimiserConfig:
    """Everything the batch optimiser needs to know about one run."""

    root: Path
    input_dir: Path
    output_dir: Path
    manifest_path: Path
    url_prefix: str = OUTPUT_URL_PREFIX
    variant_widths: List[int] = field(default_factory=lambda: list(VARIANT_WIDTHS))
    quality: int = QUALITY
    placeholder_width: int = PLACEHOLDER_WIDTH
    placeholder_quality: int = PLACEHOLDER_QUALITY
    threads: int = 1

    @classmethod
    def for_root(cls, root, **overrides) -> "OptimiserConfig":
        root = Path(root).resolve()
        return cls(
            root=root,
            input_dir=root / overrides.pop("input_dir", INPUT_DIR),
            output_dir=root / overrides.pop("output_dir", OUTPUT_DIR),
            manifest_path=root / overrides.pop("manifest_path", MANIFEST_PATH),
            **overrides,
        )

    def variant_url(self, identifier: str, filename: str) -> str:
        return f"{self.url_prefix.rstrip('/')}/{identifier}/{filename}"


@dataclass
class ResolverConfig:
    """Where the runtime finds the manifest and how it guesses fallback URLs."""

    manifest_url: str = field(default_factory=lambda: absolute_url(MANIFEST_URL_PATH))
    url_prefix: str = OUTPUT_URL_PREFIX
    fallback_ext: str = OUTPUT_FORMAT
    timeout: float = FETCH_TIMEOUT
