"""Deferred, progressive display of a resolved image.

``LazyImage`` is a small state machine driven by two event sources:

    IDLE --(priority on mount | near-visible)--> LOADING --(decoded)--> LOADED
    LOADED --(src changes)--> LOADING

Nothing goes back to IDLE. Both event sources are subscribed on mount and
released on unmount; events arriving after unmount are ignored.
"""

import contextlib
import enum
import html
import logging
from typing import Callable, Dict, Iterator, List, Optional, Sequence

from .resolver import ResolvedImage

logger = logging.getLogger("dresspics.display")

DEFAULT_ROOT_MARGIN = 200
DEFAULT_SIZES = "100vw"


class Signal:
    """Minimal event source. ``subscribe`` returns the matching unsubscribe callable."""

    def __init__(self):
        self._handlers: List[Callable] = []

    def subscribe(self, handler: Callable) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            try:
                self._handlers.remove(handler)
            except ValueError:
                pass

        return unsubscribe

    def emit(self, *args) -> None:
        for handler in list(self._handlers):
            handler(*args)

    def __len__(self) -> int:
        return len(self._handlers)


class LoadState(enum.Enum):
    IDLE = "idle"
    LOADING = "loading"
    LOADED = "loaded"


def _attrs(pairs: Dict[str, Optional[str]]) -> str:
    return " ".join(f'{k}="{html.escape(str(v), quote=True)}"' for k, v in pairs.items() if v is not None)


def render_img_tag(
    image: ResolvedImage,
    alt: str = "",
    sizes: str = DEFAULT_SIZES,
    priority: bool = False,
    extra_attrs: Optional[Dict[str, str]] = None,
) -> str:
    srcset = image.srcset_attr()
    attrs: Dict[str, Optional[str]] = {
        "src": image.smallest_url,
        "srcset": srcset or None,
        "sizes": sizes if srcset else None,
        "alt": alt,
        "width": str(image.intrinsic_width) if image.intrinsic_width else None,
        "height": str(image.intrinsic_height) if image.intrinsic_height else None,
    }
    if priority:
        attrs["fetchpriority"] = "high"
    else:
        attrs["loading"] = "lazy"
    attrs["decoding"] = "async"
    attrs.update(extra_attrs or {})
    return f"<img {_attrs(attrs)}>"


class LazyImage:
    def __init__(
        self,
        image: ResolvedImage,
        alt: str = "",
        sizes: str = DEFAULT_SIZES,
        priority: bool = False,
        root_margin: float = DEFAULT_ROOT_MARGIN,
    ):
        self.image = image
        self.alt = alt
        self.sizes = sizes
        self.priority = priority
        self.root_margin = root_margin
        self.state = LoadState.IDLE
        self.loaded = False
        self.is_mounted = False
        self._stop_observing: Optional[Callable[[], None]] = None
        self._stop_decoded: Optional[Callable[[], None]] = None

    # ---------- lifecycle ----------

    def mount(self, visibility: Signal, decoded: Signal) -> None:
        if self.is_mounted:
            raise RuntimeError("LazyImage is already mounted")
        self.is_mounted = True
        self._stop_decoded = decoded.subscribe(self._on_decoded)
        if self.priority:
            self._start_loading()
        else:
            self._stop_observing = visibility.subscribe(self._on_visibility)

    def unmount(self) -> None:
        self._release_observer()
        if self._stop_decoded is not None:
            self._stop_decoded()
            self._stop_decoded = None
        self.is_mounted = False

    @contextlib.contextmanager
    def mounted(self, visibility: Signal, decoded: Signal) -> Iterator["LazyImage"]:
        self.mount(visibility, decoded)
        try:
            yield self
        finally:
            self.unmount()

    def _release_observer(self) -> None:
        if self._stop_observing is not None:
            self._stop_observing()
            self._stop_observing = None

    # ---------- transitions ----------

    def _start_loading(self) -> None:
        if self.state is LoadState.IDLE:
            self.state = LoadState.LOADING
            logger.debug("%s: loading %s", self.image.identifier, self.image.smallest_url)

    def _on_visibility(self, distance: float) -> None:
        """``distance`` is px between the element and the viewport; <= 0 when on screen."""
        if not self.is_mounted or self.state is not LoadState.IDLE:
            return
        if distance > self.root_margin:
            return
        self._release_observer()
        self._start_loading()

    def _on_decoded(self, url: str) -> None:
        if not self.is_mounted or self.state is not LoadState.LOADING:
            return
        if url != self.image.smallest_url and url not in {u for _, u in self.image.srcset}:
            # a late decode of the previous image
            return
        self.state = LoadState.LOADED
        self.loaded = True

    def set_image(self, image: ResolvedImage) -> None:
        changed = image.smallest_url != self.image.smallest_url or image.srcset != self.image.srcset
        self.image = image
        if not changed:
            return
        self.loaded = False
        if self.state is LoadState.LOADED:
            self.state = LoadState.LOADING

    # ---------- markup ----------

    def _placeholder_layer(self) -> str:
        if self.image.placeholder:
            return (
                f'<img {_attrs({"src": self.image.placeholder, "alt": ""})} aria-hidden="true" '
                'class="lazy-image__placeholder" style="filter: blur(20px); transform: scale(1.1)">'
            )
        return '<div class="lazy-image__placeholder" aria-hidden="true"></div>'

    def render(self) -> str:
        parts = []
        if not self.loaded:
            parts.append(self._placeholder_layer())
        if self.state is not LoadState.IDLE:
            opacity = "1" if self.loaded else "0"
            parts.append(render_img_tag(
                self.image,
                alt=self.alt,
                sizes=self.sizes,
                priority=self.priority,
                extra_attrs={"style": f"opacity: {opacity}; transition: opacity 0.5s"},
            ))
        return f'<div class="lazy-image" data-state="{self.state.value}">{"".join(parts)}</div>'


class ImageGallery:
    """Steps through images (already in display order) with a single reused ``LazyImage``."""

    def __init__(self, images: Sequence[ResolvedImage], display: LazyImage):
        if not images:
            raise ValueError("ImageGallery needs at least one image")
        self.images = list(images)
        self.display = display
        self.index = 0
        display.set_image(self.images[0])

    @property
    def current(self) -> ResolvedImage:
        return self.images[self.index]

    def show(self, index: int) -> ResolvedImage:
        self.index = index % len(self.images)
        self.display.set_image(self.current)
        return self.current

    def next(self) -> ResolvedImage:
        return self.show(self.index + 1)

    def previous(self) -> ResolvedImage:
        return self.show(self.index - 1)
