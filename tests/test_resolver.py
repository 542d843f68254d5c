import asyncio

import httpx

from dresspics.manifest import Manifest, ManifestEntry, Variant
from dresspics.resolver import (
    CacheState,
    ImageResolver,
    ManifestCache,
    ResolutionSource,
    resolve_from_manifest,
)
from dresspics.settings import ResolverConfig

MANIFEST_URL = "http://shop.test/images/manifest.json"

MANIFEST_JSON = {
    "Evening-Gown": {
        "src": "/images/optimized/Evening-Gown/Evening-Gown-1024.webp",
        "variants": [
            {"width": 1024, "url": "/images/optimized/Evening-Gown/Evening-Gown-1024.webp"},
            {"width": 320, "url": "/images/optimized/Evening-Gown/Evening-Gown-320.webp"},
            {"width": 640, "url": "/images/optimized/Evening-Gown/Evening-Gown-640.webp"},
        ],
        "placeholder": "data:image/webp;base64,AAAA",
        "width": 1024,
        "height": 1536,
    },
    "Legacy": {"src": "/images/legacy.webp", "variants": [], "placeholder": None, "width": 800},
    "Broken": {"src": None, "variants": [], "placeholder": "data:image/webp;base64,BBBB", "width": None},
}


class Recorder:
    """MockTransport handler that counts requests and answers after a short delay."""

    def __init__(self, status=200, json_body=None, text=None):
        self.calls = 0
        self.status = status
        self.json_body = json_body
        self.text = text

    async def __call__(self, request):
        self.calls += 1
        await asyncio.sleep(0.01)
        if self.text is not None:
            return httpx.Response(self.status, text=self.text)
        return httpx.Response(self.status, json=self.json_body)


def run_with_resolver(handler, coro_fn):
    async def main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            cache = ManifestCache(MANIFEST_URL, client=client)
            resolver = ImageResolver(cache, ResolverConfig(manifest_url=MANIFEST_URL))
            return await coro_fn(resolver)

    return asyncio.run(main())


def test_concurrent_lookups_share_one_fetch():
    handler = Recorder(json_body=MANIFEST_JSON)

    async def scenario(resolver):
        images = await asyncio.gather(*(resolver.resolve("Evening-Gown") for _ in range(10)))
        return resolver, images

    resolver, images = run_with_resolver(handler, scenario)

    assert handler.calls == 1
    assert resolver.cache.fetch_count == 1
    assert resolver.cache.state is CacheState.LOADED
    assert all(image == images[0] for image in images)


def test_srcset_is_sorted_by_width():
    handler = Recorder(json_body=MANIFEST_JSON)

    image = run_with_resolver(handler, lambda r: r.resolve("Evening-Gown"))

    assert image.source is ResolutionSource.MANIFEST
    assert [w for w, _ in image.srcset] == [320, 640, 1024]
    assert image.smallest_url == "/images/optimized/Evening-Gown/Evening-Gown-320.webp"
    assert image.largest_url == "/images/optimized/Evening-Gown/Evening-Gown-1024.webp"
    assert image.intrinsic_width == 1024
    assert image.intrinsic_height == 1536
    assert image.placeholder == "data:image/webp;base64,AAAA"
    assert image.srcset_attr().startswith("/images/optimized/Evening-Gown/Evening-Gown-320.webp 320w, ")


def test_server_error_falls_back_without_raising():
    handler = Recorder(status=500, text="boom")

    async def scenario(resolver):
        first = await resolver.resolve("Evening-Gown")
        second = await resolver.resolve("Evening-Gown")
        return resolver, first, second

    resolver, first, second = run_with_resolver(handler, scenario)

    assert resolver.cache.state is CacheState.FAILED
    assert handler.calls == 1
    assert first == second
    assert first.smallest_url == "/images/optimized/Evening-Gown.webp"
    assert first.srcset == []
    assert first.placeholder is None
    assert first.source is ResolutionSource.FALLBACK


def test_malformed_json_counts_as_no_manifest():
    handler = Recorder(text="<html>not json</html>")

    image = run_with_resolver(handler, lambda r: r.resolve("Evening-Gown"))

    assert image.source is ResolutionSource.FALLBACK


def test_deeply_nested_body_counts_as_no_manifest():
    handler = Recorder(text="[" * 200000 + "]" * 200000)

    async def scenario(resolver):
        await resolver.resolve("x")
        return resolver, await resolver.resolve("x")

    resolver, image = run_with_resolver(handler, scenario)

    assert image.smallest_url == "/images/optimized/x.webp"
    assert resolver.cache.state is CacheState.FAILED
    assert handler.calls == 1


def test_invalid_manifest_url_counts_as_no_manifest():
    handler = Recorder(json_body=MANIFEST_JSON)

    async def main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            cache = ManifestCache("http://shop.test:notaport/manifest.json", client=client)
            resolver = ImageResolver(cache)
            return cache, await resolver.resolve("Evening-Gown")

    cache, image = asyncio.run(main())

    assert image.source is ResolutionSource.FALLBACK
    assert image.smallest_url == "/images/optimized/Evening-Gown.webp"
    assert cache.state is CacheState.FAILED
    assert handler.calls == 0


def test_network_error_counts_as_no_manifest():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("offline", request=request)

    async def scenario(resolver):
        await resolver.resolve("a")
        return await resolver.resolve("b")

    image = run_with_resolver(handler, scenario)

    assert len(calls) == 1
    assert image.smallest_url == "/images/optimized/b.webp"


def test_unknown_identifier_falls_back_without_refetching():
    handler = Recorder(json_body=MANIFEST_JSON)

    async def scenario(resolver):
        first = await resolver.resolve("Mystery-Dress")
        second = await resolver.resolve("Mystery-Dress")
        known = await resolver.resolve("Evening-Gown")
        return first, second, known

    first, second, known = run_with_resolver(handler, scenario)

    assert handler.calls == 1
    assert first == second
    assert first.smallest_url == "/images/optimized/Mystery-Dress.webp"
    assert known.source is ResolutionSource.MANIFEST


def test_resolve_cached_only_after_the_fetch_settles():
    handler = Recorder(json_body=MANIFEST_JSON)

    async def scenario(resolver):
        before = resolver.resolve_cached("Evening-Gown")
        await resolver.resolve("Legacy")
        after = resolver.resolve_cached("Evening-Gown")
        return before, after

    before, after = run_with_resolver(handler, scenario)

    assert before is None
    assert after.smallest_url.endswith("Evening-Gown-320.webp")


def test_resolve_many():
    handler = Recorder(json_body=MANIFEST_JSON)

    images = run_with_resolver(handler, lambda r: r.resolve_many(["Evening-Gown", "Legacy", "Nope"]))

    assert handler.calls == 1
    assert images["Legacy"].smallest_url == "/images/legacy.webp"
    assert images["Nope"].source is ResolutionSource.FALLBACK


def test_entry_with_src_but_no_variants():
    manifest = Manifest.from_dict(MANIFEST_JSON)

    image = resolve_from_manifest("Legacy", manifest)

    assert image.smallest_url == "/images/legacy.webp"
    assert image.srcset == [(800, "/images/legacy.webp")]
    assert image.source is ResolutionSource.MANIFEST


def test_entry_with_src_and_no_width_is_a_bare_candidate():
    manifest = Manifest.from_dict({"Old": {"src": "/images/old.webp", "variants": [], "width": None}})

    image = resolve_from_manifest("Old", manifest)

    assert image.smallest_url == "/images/old.webp"
    assert image.srcset == [(None, "/images/old.webp")]
    assert image.srcset_attr() == "/images/old.webp"


def test_present_but_empty_entry_is_distinct_from_absent():
    manifest = Manifest.from_dict(MANIFEST_JSON)

    empty = resolve_from_manifest("Broken", manifest)
    absent = resolve_from_manifest("Missing", manifest)

    assert empty.source is ResolutionSource.EMPTY_ENTRY
    assert empty.smallest_url == "/images/optimized/Broken.webp"
    assert empty.placeholder == "data:image/webp;base64,BBBB"
    assert absent.source is ResolutionSource.FALLBACK


def test_resolver_sorts_entries_built_in_code():
    manifest = Manifest({
        "x": ManifestEntry(src="/x-2.webp", variants=[Variant(2048, "/x-2.webp"), Variant(320, "/x-1.webp")], width=2048)
    })

    image = resolve_from_manifest("x", manifest, url_prefix="/cdn")

    assert image.srcset == [(320, "/x-1.webp"), (2048, "/x-2.webp")]
    assert resolve_from_manifest("y", None, url_prefix="/cdn/").smallest_url == "/cdn/y.webp"
