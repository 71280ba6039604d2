"""Card placement: find an on-screen spot for each annotation card.

Cards are centred on their word's target point when possible. A card that
would cover more than a quarter of its own area with an already placed card
is moved along a fixed ring of probe offsets, three rings deep. When no probe
is free the clamped target is used anyway.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from picturetalk.models import Point

SAFE_MARGIN = 20.0
OVERLAP_THRESHOLD = 0.25
PROBE_RINGS = 3

# Up, right, down, left, then the four diagonals.
PROBE_OFFSETS: tuple[tuple[float, float], ...] = (
    (0, -60),
    (60, 0),
    (0, 60),
    (-60, 0),
    (40, -40),
    (40, 40),
    (-40, 40),
    (-40, -40),
)


@dataclass(frozen=True)
class Size:
    width: float
    height: float


@dataclass(frozen=True)
class Rect:
    x: float
    y: float
    width: float
    height: float

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def max_x(self) -> float:
        return self.x + self.width

    @property
    def max_y(self) -> float:
        return self.y + self.height

    def intersection(self, other: Rect) -> Rect | None:
        left = max(self.x, other.x)
        top = max(self.y, other.y)
        right = min(self.max_x, other.max_x)
        bottom = min(self.max_y, other.max_y)
        if right <= left or bottom <= top:
            return None
        return Rect(left, top, right - left, bottom - top)


def card_rect(center: Point, card_size: Size) -> Rect:
    """Rectangle of a card centred on ``center``."""
    return Rect(
        center.x - card_size.width / 2,
        center.y - card_size.height / 2,
        card_size.width,
        card_size.height,
    )


def overlap_ratio(rect: Rect, other: Rect) -> float:
    """Intersection area as a fraction of ``rect``'s own area."""
    if rect.area <= 0:
        return 0.0
    inter = rect.intersection(other)
    if inter is None:
        return 0.0
    return inter.area / rect.area


def has_significant_overlap(rect: Rect, existing: Iterable[Rect]) -> bool:
    return any(overlap_ratio(rect, other) > OVERLAP_THRESHOLD for other in existing)


def _safe_bounds(image_size: Size, card_size: Size) -> tuple[float, float, float, float]:
    min_x = card_size.width / 2 + SAFE_MARGIN
    max_x = image_size.width - card_size.width / 2 - SAFE_MARGIN
    min_y = card_size.height / 2 + SAFE_MARGIN
    max_y = image_size.height - card_size.height / 2 - SAFE_MARGIN
    return min_x, max_x, min_y, max_y


def _clamp(point: Point, bounds: tuple[float, float, float, float]) -> Point:
    min_x, max_x, min_y, max_y = bounds
    return Point(min(max(point.x, min_x), max_x), min(max(point.y, min_y), max_y))


def place_card(
    target: Point,
    image_size: Size,
    card_size: Size,
    existing: Sequence[Rect] = (),
) -> Point:
    """Return the pixel centre for a card pointing at normalized ``target``.

    Args:
        target: Normalized (0..1) point the card annotates.
        image_size: Displayed image size in pixels.
        card_size: Card size in pixels.
        existing: Rectangles of cards placed so far.

    Returns:
        A centre inside the safe area of the image.
    """
    bounds = _safe_bounds(image_size, card_size)
    safe_target = _clamp(
        Point(target.x * image_size.width, target.y * image_size.height), bounds
    )

    if not has_significant_overlap(card_rect(safe_target, card_size), existing):
        return safe_target

    for multiplier in range(1, PROBE_RINGS + 1):
        for dx, dy in PROBE_OFFSETS:
            candidate = _clamp(
                Point(safe_target.x + dx * multiplier, safe_target.y + dy * multiplier),
                bounds,
            )
            if not has_significant_overlap(card_rect(candidate, card_size), existing):
                return candidate

    return safe_target


def layout_cards(
    targets: Iterable[Point],
    image_size: Size,
    card_size: Size,
) -> list[Point]:
    """Place cards for ``targets`` in order, each avoiding the ones before it."""
    placed: list[Rect] = []
    centers: list[Point] = []
    for target in targets:
        center = place_card(target, image_size, card_size, placed)
        centers.append(center)
        placed.append(card_rect(center, card_size))
    return centers
