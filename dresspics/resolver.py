"""Runtime lookup: logical image id -> URLs, srcset and sizing hints.

The manifest is fetched at most once per ``ManifestCache``. Callers that ask
before the fetch completes all await the same task. A failed fetch is
remembered and never retried; every lookup then degrades to a guessed URL.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

import httpx

from . import settings
from .errors import ManifestError
from .manifest import Manifest
from .settings import ResolverConfig

logger = logging.getLogger("dresspics.resolver")


class CacheState(enum.Enum):
    NOT_REQUESTED = "not-requested"
    PENDING = "pending"
    LOADED = "loaded"
    FAILED = "failed"


class ResolutionSource(enum.Enum):
    MANIFEST = "manifest"
    # key present, but the optimiser produced nothing for it
    EMPTY_ENTRY = "empty-entry"
    FALLBACK = "fallback"


@dataclass
class ResolvedImage:
    identifier: str
    smallest_url: str
    # width None marks a bare candidate (implicit 1x)
    srcset: List[Tuple[Optional[int], str]] = field(default_factory=list)
    intrinsic_width: Optional[int] = None
    intrinsic_height: Optional[int] = None
    placeholder: Optional[str] = None
    source: ResolutionSource = ResolutionSource.MANIFEST

    @property
    def largest_url(self) -> str:
        if self.srcset:
            return self.srcset[-1][1]
        return self.smallest_url

    def srcset_attr(self) -> str:
        return ", ".join(f"{url} {width}w" if width else url for width, url in self.srcset)


def fallback_image(
    identifier: str,
    url_prefix: str = settings.OUTPUT_URL_PREFIX,
    ext: str = settings.OUTPUT_FORMAT,
) -> ResolvedImage:
    return ResolvedImage(
        identifier=identifier,
        smallest_url=f"{url_prefix.rstrip('/')}/{identifier}.{ext}",
        source=ResolutionSource.FALLBACK,
    )


def resolve_from_manifest(
    identifier: str,
    manifest: Optional[Manifest],
    url_prefix: str = settings.OUTPUT_URL_PREFIX,
    ext: str = settings.OUTPUT_FORMAT,
) -> ResolvedImage:
    """Pure lookup; ``manifest=None`` means no manifest is available."""
    entry = manifest.get(identifier) if manifest is not None else None
    if entry is None:
        return fallback_image(identifier, url_prefix, ext)

    if entry.variants:
        variants = sorted(entry.variants, key=lambda v: v.width)
        return ResolvedImage(
            identifier=identifier,
            smallest_url=variants[0].url,
            srcset=[(v.width, v.url) for v in variants],
            intrinsic_width=entry.width or variants[-1].width,
            intrinsic_height=entry.height,
            placeholder=entry.placeholder,
        )

    if entry.src:
        return ResolvedImage(
            identifier=identifier,
            smallest_url=entry.src,
            srcset=[(entry.width, entry.src)],
            intrinsic_width=entry.width,
            intrinsic_height=entry.height,
            placeholder=entry.placeholder,
        )

    image = fallback_image(identifier, url_prefix, ext)
    image.placeholder = entry.placeholder
    image.source = ResolutionSource.EMPTY_ENTRY
    return image


class ManifestCache:
    """Owns the single manifest fetch for the lifetime of the process."""

    def __init__(
        self,
        url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = settings.FETCH_TIMEOUT,
    ):
        self.url = url
        self.timeout = timeout
        self.state = CacheState.NOT_REQUESTED
        self.fetch_count = 0
        self._client = client
        self._task: Optional["asyncio.Future[Optional[Manifest]]"] = None
        self._manifest: Optional[Manifest] = None

    async def _fetch(self) -> Manifest:
        self.fetch_count += 1
        if self._client is not None:
            resp = await self._client.get(self.url)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(self.url)
        resp.raise_for_status()
        return Manifest.loads(resp.text)

    async def _load(self) -> Optional[Manifest]:
        try:
            manifest = await self._fetch()
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.warning("Manifest fetch failed for %s: %s; using fallback URLs", self.url, exc)
            self.state = CacheState.FAILED
            return None
        except ManifestError as exc:
            logger.warning("Manifest at %s is unusable: %s; using fallback URLs", self.url, exc)
            self.state = CacheState.FAILED
            return None
        self._manifest = manifest
        self.state = CacheState.LOADED
        logger.debug("Loaded manifest from %s (%d entries)", self.url, len(manifest))
        return manifest

    async def get_manifest(self) -> Optional[Manifest]:
        if self.state is CacheState.LOADED:
            return self._manifest
        if self.state is CacheState.FAILED:
            return None
        if self._task is None:
            self.state = CacheState.PENDING
            self._task = asyncio.ensure_future(self._load())
        # one cancelled caller must not cancel the fetch everyone else waits on
        return await asyncio.shield(self._task)

    def peek(self) -> Optional[Manifest]:
        return self._manifest

    @property
    def settled(self) -> bool:
        return self.state in (CacheState.LOADED, CacheState.FAILED)


class ImageResolver:
    def __init__(self, cache: Optional[ManifestCache] = None, config: Optional[ResolverConfig] = None):
        self.config = config or ResolverConfig()
        self.cache = cache or ManifestCache(self.config.manifest_url, timeout=self.config.timeout)

    def _lookup(self, identifier: str, manifest: Optional[Manifest]) -> ResolvedImage:
        return resolve_from_manifest(identifier, manifest, self.config.url_prefix, self.config.fallback_ext)

    async def resolve(self, identifier: str) -> ResolvedImage:
        manifest = await self.cache.get_manifest()
        return self._lookup(identifier, manifest)

    async def resolve_many(self, identifiers: Iterable[str]) -> Dict[str, ResolvedImage]:
        identifiers = list(identifiers)
        images = await asyncio.gather(*(self.resolve(i) for i in identifiers))
        return dict(zip(identifiers, images))

    def resolve_cached(self, identifier: str) -> Optional[ResolvedImage]:
        """Synchronous lookup, only once the manifest fetch has settled; otherwise None."""
        if not self.cache.settled:
            return None
        return self._lookup(identifier, self.cache.peek())
