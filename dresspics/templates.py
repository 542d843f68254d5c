"""
Static HTML rewriting: point <img> tags at the optimised variants.

Any <img> whose src is under the optimised URL prefix, either the guessed
"<prefix>/<id>.webp" form or a concrete "<prefix>/<id>/<file>" variant, gets:
    * srcset with every variant in the manifest
    * sizes (from sizes.json patterns, else the default)
    * src set to the smallest variant
    * width/height when not already present
    * loading="lazy" (unless opted out or marked as priority)
    * decoding="async"
"""

import fnmatch
import json
import logging
import re
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from . import settings
from .manifest import Manifest, write_text_atomic
from .resolver import ResolutionSource, resolve_from_manifest
from .utils import is_transient

logger = logging.getLogger("dresspics.templates")

SIZES_JSON = "sizes.json"  # optional config in each templates dir

# Regex to find <img ... src="..."> case-insensitively
IMG_TAG_RE = re.compile(r"<img\b[^>]*(?<![\w-])src\s*=\s*(['\"])(?P<src>[^'\"]+)\1[^>]*>", re.IGNORECASE)
WIDTH_RE = re.compile(r"(?<![\w-])width\s*=\s*(['\"])[^'\"]+\1", re.IGNORECASE)
HEIGHT_RE = re.compile(r"(?<![\w-])height\s*=\s*(['\"])[^'\"]+\1", re.IGNORECASE)
LOADING_RE = re.compile(r"(?<![\w-])loading\s*=\s*(['\"])[^'\"]+\1", re.IGNORECASE)
DECODING_RE = re.compile(r"(?<![\w-])decoding\s*=\s*(['\"])[^'\"]+\1", re.IGNORECASE)


def load_sizes_map(json_path: Path) -> List[Tuple[str, str]]:
    """
    Returns list of (pattern, sizes_value) pairs. Patterns are glob-style and match the image id.
    Example JSON (templates/sizes.json):
      {
        "hero-*": "100vw",
        "thumb-*": "(max-width: 768px) 45vw, 200px"
      }
    """
    if not json_path.exists():
        return []
    try:
        data = json.loads(json_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable sizes map %s: %s", json_path, e)
        return []
    if not isinstance(data, dict):
        logger.warning("Ignoring sizes map %s: expected a JSON object", json_path)
        return []
    items = []
    for pattern, sizes in data.items():
        if isinstance(pattern, str) and isinstance(sizes, str) and pattern and sizes:
            items.append((pattern, sizes))
    return items


def find_sizes_for(identifier: str, sizes_map: List[Tuple[str, str]], default_sizes: str) -> str:
    for pattern, sizes in sizes_map:
        if fnmatch.fnmatch(identifier, pattern):
            return sizes
    return default_sizes


def insert_or_replace_attr(tag: str, attr: str, value: str) -> str:
    patt = re.compile(rf"(?<![\w-]){attr}\s*=\s*(['\"]).*?\1", re.IGNORECASE | re.DOTALL)
    if patt.search(tag):
        return patt.sub(lambda _: f'{attr}="{value}"', tag, count=1)
    # insert before '>'
    end = tag.rfind(">")
    if end == -1:
        return tag
    i = end - 1
    while i >= 0 and tag[i].isspace():
        i -= 1
    if i >= 0 and tag[i] == "/":
        return tag[:i].rstrip() + f' {attr}="{value}" ' + tag[i:]
    return tag[:end] + f' {attr}="{value}"' + tag[end:]


def identifier_from_src(src: str, url_prefix: str) -> Optional[str]:
    """'/images/optimized/Evening-Gown.webp' and '/images/optimized/Evening-Gown/Evening-Gown-640.webp' -> 'Evening-Gown'."""
    src = src.split("?", 1)[0].split("#", 1)[0]
    if src.lower().startswith("data:") or src.lower().endswith(".svg"):
        return None
    prefix = "/" + url_prefix.strip("/") + "/"
    if not src.startswith("/"):
        src = "/" + src
    if not src.startswith(prefix):
        return None
    rest = src[len(prefix):]
    if not rest:
        return None
    if "/" in rest:
        return rest.split("/", 1)[0]
    return Path(rest).stem or None


def rewrite_html(
    text: str,
    manifest: Manifest,
    url_prefix: str = settings.OUTPUT_URL_PREFIX,
    sizes_map: Optional[List[Tuple[str, str]]] = None,
    default_sizes: str = settings.DEFAULT_SIZES,
    force_lazy: bool = True,
) -> Tuple[str, int]:
    """Returns (new_text, number_of_tags_updated)."""
    edits = 0

    def repl(m: re.Match) -> str:
        nonlocal edits
        tag = m.group(0)
        identifier = identifier_from_src(m.group("src").strip(), url_prefix)
        if identifier is None:
            return tag
        image = resolve_from_manifest(identifier, manifest, url_prefix)
        if image.source is not ResolutionSource.MANIFEST:
            return tag

        if image.intrinsic_width and not WIDTH_RE.search(tag):
            tag = insert_or_replace_attr(tag, "width", str(image.intrinsic_width))
        if image.intrinsic_height and not HEIGHT_RE.search(tag):
            tag = insert_or_replace_attr(tag, "height", str(image.intrinsic_height))

        if image.srcset:
            tag = insert_or_replace_attr(tag, "srcset", image.srcset_attr())
            tag = insert_or_replace_attr(tag, "sizes", find_sizes_for(identifier, sizes_map or [], default_sizes))
        # Set src to the smallest candidate as a fallback
        tag = insert_or_replace_attr(tag, "src", image.smallest_url)

        # Skip forcing lazy if explicit data-lcp, fetchpriority="high" or loading already present
        tag_lower = tag.lower()
        is_priority = ("data-lcp" in tag_lower) or ('fetchpriority="high"' in tag_lower)
        if force_lazy and not is_priority and not LOADING_RE.search(tag):
            tag = insert_or_replace_attr(tag, "loading", "lazy")
        if not DECODING_RE.search(tag):
            tag = insert_or_replace_attr(tag, "decoding", "async")

        edits += 1
        return tag

    return IMG_TAG_RE.sub(repl, text), edits


def update_templates(
    dirs: Sequence[Path],
    manifest: Manifest,
    url_prefix: str = settings.OUTPUT_URL_PREFIX,
    default_sizes: str = settings.DEFAULT_SIZES,
    force_lazy: bool = True,
) -> int:
    """Rewrite every *.html under dirs in place. Returns the number of files changed."""
    changed = 0
    for d in dirs:
        if not d.exists():
            logger.info("SKIP  %s  templates directory not found", d)
            continue
        sizes_map = load_sizes_map(d / SIZES_JSON)
        for file_path in sorted(p for p in d.rglob("*.html") if not is_transient(p)):
            try:
                try:
                    text = file_path.read_text(encoding="utf-8")
                except UnicodeDecodeError:
                    text = file_path.read_text(encoding="latin-1")
            except OSError as e:
                logger.warning("SKIP  %s  read error: %s", file_path, e)
                continue

            new_text, edits = rewrite_html(text, manifest, url_prefix, sizes_map, default_sizes, force_lazy)
            if edits and new_text != text:
                write_text_atomic(file_path, new_text)
                changed += 1
                logger.info("EDIT  %s  responsive updates: %d", file_path, edits)
            else:
                logger.debug("SKIP  %s  no responsive changes", file_path)
    return changed
