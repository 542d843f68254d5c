"""Manifest schema: identifier -> derivatives, placeholder and intrinsic size.

The JSON file is the only contract between the build-time optimiser and the
runtime resolver, so both sides go through the types here. Parsing is strict
about shape but forgiving about content: a malformed field becomes ``None``
and a malformed variant is dropped, instead of every caller re-checking.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .errors import ManifestError

logger = logging.getLogger("dresspics.manifest")


def _positive_int(value: Any) -> Optional[int]:
    # bool is an int subclass; true/false are never a width
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        return None
    return value


def _string(value: Any) -> Optional[str]:
    if isinstance(value, str) and value:
        return value
    return None


@dataclass(frozen=True)
class Variant:
    width: int
    url: str

    def to_dict(self) -> Dict[str, Any]:
        return {"width": self.width, "url": self.url}


@dataclass
class ManifestEntry:
    src: Optional[str]
    variants: List[Variant] = field(default_factory=list)
    placeholder: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None

    @classmethod
    def from_variants(
        cls,
        variants: List[Variant],
        placeholder: Optional[str] = None,
        height: Optional[int] = None,
    ) -> "ManifestEntry":
        """Build an entry whose src/width come from the largest variant, or nulls if none."""
        ordered = sorted(variants, key=lambda v: v.width)
        if not ordered:
            return cls(src=None, variants=[], placeholder=placeholder, width=None, height=None)
        largest = ordered[-1]
        return cls(src=largest.url, variants=ordered, placeholder=placeholder, width=largest.width, height=height)

    @classmethod
    def from_dict(cls, identifier: str, data: Dict[str, Any]) -> "ManifestEntry":
        variants: Dict[int, Variant] = {}
        raw_variants = data.get("variants")
        if raw_variants is not None and not isinstance(raw_variants, list):
            logger.warning("Manifest entry %s: 'variants' is not a list, ignoring", identifier)
            raw_variants = None
        for item in raw_variants or []:
            if not isinstance(item, dict):
                continue
            width = _positive_int(item.get("width"))
            url = _string(item.get("url"))
            if width is None or url is None:
                logger.debug("Manifest entry %s: dropping malformed variant %r", identifier, item)
                continue
            variants.setdefault(width, Variant(width, url))
        return cls(
            src=_string(data.get("src")),
            variants=[variants[w] for w in sorted(variants)],
            placeholder=_string(data.get("placeholder")),
            width=_positive_int(data.get("width")),
            height=_positive_int(data.get("height")),
        )

    @property
    def is_empty(self) -> bool:
        return self.src is None and not self.variants

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "src": self.src,
            "variants": [v.to_dict() for v in self.variants],
            "placeholder": self.placeholder,
            "width": self.width,
        }
        if self.height is not None:
            data["height"] = self.height
        return data


@dataclass
class Manifest:
    entries: Dict[str, ManifestEntry] = field(default_factory=dict)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self.entries)

    def get(self, identifier: str) -> Optional[ManifestEntry]:
        return self.entries.get(identifier)

    @classmethod
    def from_dict(cls, data: Any) -> "Manifest":
        if not isinstance(data, dict):
            raise ManifestError(f"manifest must be a JSON object, got {type(data).__name__}")
        entries: Dict[str, ManifestEntry] = {}
        for identifier, raw in data.items():
            if not isinstance(raw, dict):
                logger.warning("Manifest entry %s is not an object, skipping", identifier)
                continue
            entries[identifier] = ManifestEntry.from_dict(identifier, raw)
        return cls(entries)

    @classmethod
    def loads(cls, text: str) -> "Manifest":
        try:
            data = json.loads(text)
        except (ValueError, RecursionError) as exc:
            raise ManifestError(f"manifest is not valid JSON: {exc}") from exc
        return cls.from_dict(data)

    @classmethod
    def load(cls, path: Path) -> "Manifest":
        return cls.loads(Path(path).read_text(encoding="utf-8"))

    def to_dict(self) -> Dict[str, Any]:
        return {identifier: entry.to_dict() for identifier, entry in self.entries.items()}

    def dumps(self) -> str:
        return json.dumps(self.to_dict(), indent=2) + "\n"


def write_text_atomic(target: Path, text: str) -> None:
    tmp = target.with_suffix(target.suffix + ".tmp")
    with open(tmp, "w", encoding="utf-8", newline="") as f:
        f.write(text)
    os.replace(tmp, target)


def write_manifest(manifest: Manifest, path: Path) -> None:
    """Write the whole manifest in one go; readers see the old file or the new one."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    write_text_atomic(path, manifest.dumps())
