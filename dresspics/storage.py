"""Public and signed URLs for catalog photos kept in the hosted object store.

The store can resize on the fly through its render endpoint, so photos
uploaded from the admin dashboard get a srcset without going through the
build-time optimiser. Private buckets need a signed URL, with the transform
fixed at signing time.
"""

import logging
from typing import Any, Dict, Optional, Sequence
from urllib.parse import quote, urlencode

import httpx

from . import settings
from .errors import StorageError
from .resolver import ResolvedImage, ResolutionSource

logger = logging.getLogger("dresspics.storage")

RESIZE_MODES = {"cover", "contain", "fill"}
SIGNED_URL_EXPIRES_IN = 60  # seconds


def _object_path(bucket: str, path: str) -> str:
    return f"{quote(bucket.strip('/'))}/{quote(path.lstrip('/'))}"


def transform_options(
    width: Optional[int] = None,
    height: Optional[int] = None,
    quality: Optional[int] = None,
    resize: Optional[str] = None,
    image_format: Optional[str] = None,
) -> Dict[str, Any]:
    """Validated transform, in the store's parameter order; unset options are left out."""
    if quality is not None and not 1 <= quality <= 100:
        raise ValueError(f"quality must be between 1 and 100, got {quality}")
    if resize is not None and resize not in RESIZE_MODES:
        raise ValueError(f"resize must be one of {sorted(RESIZE_MODES)}, got {resize!r}")
    options = (("width", width), ("height", height), ("quality", quality), ("resize", resize), ("format", image_format))
    return {k: v for k, v in options if v is not None}


def public_object_url(base_url: str, bucket: str, path: str) -> str:
    return f"{settings.ensure_base_url(base_url)}storage/v1/object/public/{_object_path(bucket, path)}"


def public_render_url(
    base_url: str,
    bucket: str,
    path: str,
    width: Optional[int] = None,
    height: Optional[int] = None,
    quality: Optional[int] = None,
    resize: Optional[str] = None,
    image_format: Optional[str] = None,
) -> str:
    """
    Transformed public URL. Leaving ``image_format`` unset lets the store pick WebP/AVIF
    per browser; ``image_format="origin"`` keeps the uploaded format.
    Without any transform this is the plain object URL.
    """
    params = transform_options(width, height, quality, resize, image_format)
    if not params:
        return public_object_url(base_url, bucket, path)
    return (
        f"{settings.ensure_base_url(base_url)}storage/v1/render/image/public/"
        f"{_object_path(bucket, path)}?{urlencode(list(params.items()))}"
    )


async def create_signed_url(
    client: httpx.AsyncClient,
    base_url: str,
    api_key: str,
    bucket: str,
    path: str,
    expires_in: int = SIGNED_URL_EXPIRES_IN,
    **transform: Any,
) -> str:
    """
    Ask the store to sign a private object. Keyword arguments are the same
    transform options as ``public_render_url`` and are baked into the signature.
    Raises StorageError when the store refuses or cannot be reached.
    """
    if expires_in <= 0:
        raise ValueError(f"expires_in must be positive, got {expires_in}")
    body: Dict[str, Any] = {"expiresIn": expires_in}
    options = transform_options(**transform)
    if options:
        body["transform"] = options

    base = settings.ensure_base_url(base_url)
    headers = {"Authorization": f"Bearer {api_key}", "apikey": api_key}
    try:
        resp = await client.post(f"{base}storage/v1/object/sign/{_object_path(bucket, path)}", json=body, headers=headers)
        resp.raise_for_status()
        data = resp.json()
    except (httpx.HTTPError, ValueError) as exc:
        raise StorageError(f"could not sign {bucket}/{path}: {exc}") from exc

    signed = data.get("signedURL") if isinstance(data, dict) else None
    if not isinstance(signed, str) or not signed:
        raise StorageError(f"could not sign {bucket}/{path}: response has no signedURL")
    logger.debug("Signed %s/%s for %ds", bucket, path, expires_in)
    return f"{base}storage/v1/{signed.lstrip('/')}"


def storage_image(
    base_url: str,
    bucket: str,
    path: str,
    widths: Sequence[int] = settings.VARIANT_WIDTHS,
    quality: Optional[int] = settings.QUALITY,
) -> ResolvedImage:
    """A ResolvedImage with one render URL per width, for the display layer."""
    ordered = sorted({w for w in widths if w > 0})
    if not ordered:
        return ResolvedImage(
            identifier=path,
            smallest_url=public_object_url(base_url, bucket, path),
            source=ResolutionSource.FALLBACK,
        )
    srcset = [(w, public_render_url(base_url, bucket, path, width=w, quality=quality)) for w in ordered]
    return ResolvedImage(
        identifier=path,
        smallest_url=srcset[0][1],
        srcset=srcset,
        intrinsic_width=ordered[-1],
    )
