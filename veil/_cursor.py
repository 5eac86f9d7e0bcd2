"""Human-like pointer movement for pages veil has attached to.

Paths are cubic Bézier curves with randomized control points, sampled
with ease-in/ease-out spacing so the pointer accelerates and slows like
a hand.  Long moves overshoot slightly and correct back.
"""

import asyncio
import logging
import math
import random

logger = logging.getLogger("veil")

_MIN_STEPS = 10
_MAX_STEPS = 100
_PX_PER_STEP = 8.0
_OVERSHOOT_THRESHOLD = 500.0
_OVERSHOOT_RADIUS = 12.0
_STEP_DELAY = (0.004, 0.012)
_PRE_CLICK_PAUSE = (0.05, 0.15)
_HOLD = (0.05, 0.12)
_BOX_PADDING = 0.2


def _ease(t: float) -> float:
    """Smoothstep: slow start, slow finish."""
    return t * t * (3 - 2 * t)


def _control_points(
    start: tuple[float, float], end: tuple[float, float]
) -> tuple[tuple[float, float], tuple[float, float]]:
    sx, sy = start
    ex, ey = end
    dx, dy = ex - sx, ey - sy
    dist = math.hypot(dx, dy) or 1.0
    # unit normal to the straight line
    nx, ny = -dy / dist, dx / dist
    spread = min(dist * 0.3, 200.0)
    c1_off = random.uniform(-spread, spread)
    c2_off = random.uniform(-spread, spread)
    c1 = (
        sx + dx * random.uniform(0.2, 0.4) + nx * c1_off,
        sy + dy * random.uniform(0.2, 0.4) + ny * c1_off,
    )
    c2 = (
        sx + dx * random.uniform(0.6, 0.8) + nx * c2_off,
        sy + dy * random.uniform(0.6, 0.8) + ny * c2_off,
    )
    return c1, c2


def bezier_path(
    start: tuple[float, float],
    end: tuple[float, float],
    steps: int | None = None,
) -> list[tuple[float, float]]:
    """Sample a curved path from *start* to *end*, end point inclusive.

    The start point itself is not included (the pointer is already
    there).  Step count grows with distance unless given.
    """
    dist = math.hypot(end[0] - start[0], end[1] - start[1])
    if steps is None:
        steps = int(dist / _PX_PER_STEP)
        steps = max(_MIN_STEPS, min(_MAX_STEPS, steps))
    c1, c2 = _control_points(start, end)

    points = []
    for i in range(1, steps + 1):
        t = _ease(i / steps)
        u = 1 - t
        x = (
            u ** 3 * start[0]
            + 3 * u * u * t * c1[0]
            + 3 * u * t * t * c2[0]
            + t ** 3 * end[0]
        )
        y = (
            u ** 3 * start[1]
            + 3 * u * u * t * c1[1]
            + 3 * u * t * t * c2[1]
            + t ** 3 * end[1]
        )
        points.append((x, y))
    points[-1] = (float(end[0]), float(end[1]))
    return points


def point_in_box(box: dict) -> tuple[float, float]:
    """A random point inside *box*, kept away from its edges."""
    pad_x = box["width"] * _BOX_PADDING
    pad_y = box["height"] * _BOX_PADDING
    return (
        box["x"] + random.uniform(pad_x, box["width"] - pad_x),
        box["y"] + random.uniform(pad_y, box["height"] - pad_y),
    )


class HumanCursor:
    """Pointer controller bound to one page.

    Tracks its own position, since the page cannot report where the
    mouse currently is.
    """

    def __init__(self, page, start: tuple[float, float] = (0.0, 0.0)):
        self.page = page
        self.x, self.y = float(start[0]), float(start[1])

    @property
    def position(self) -> tuple[float, float]:
        return self.x, self.y

    async def _trace(self, x: float, y: float, steps: int | None = None) -> None:
        for px, py in bezier_path((self.x, self.y), (x, y), steps):
            await self.page.mouse.move(px, py)
            await asyncio.sleep(random.uniform(*_STEP_DELAY))
        self.x, self.y = float(x), float(y)

    async def move_to(self, x: float, y: float, overshoot: bool = True) -> None:
        """Move along a curved path to page coordinates ``(x, y)``."""
        dist = math.hypot(x - self.x, y - self.y)
        if overshoot and dist > _OVERSHOOT_THRESHOLD:
            angle = random.uniform(0, 2 * math.pi)
            radius = random.uniform(_OVERSHOOT_RADIUS / 2, _OVERSHOOT_RADIUS)
            await self._trace(
                x + math.cos(angle) * radius, y + math.sin(angle) * radius
            )
            await self._trace(x, y, steps=_MIN_STEPS)
        else:
            await self._trace(x, y)

    async def move(self, selector: str) -> tuple[float, float]:
        """Move onto the first element matching *selector*.

        Raises:
            ValueError: the element has no layout box (hidden/detached).
        """
        locator = self.page.locator(selector).first
        await locator.scroll_into_view_if_needed()
        box = await locator.bounding_box()
        if not box:
            raise ValueError(f"Element {selector!r} has no bounding box")
        x, y = point_in_box(box)
        await self.move_to(x, y)
        return x, y

    async def click(
        self,
        selector: str | None = None,
        *,
        x: float | None = None,
        y: float | None = None,
        button: str = "left",
    ) -> None:
        """Move to *selector* (or ``(x, y)``, or stay put) and click."""
        if selector is not None:
            await self.move(selector)
        elif x is not None and y is not None:
            await self.move_to(x, y)

        await asyncio.sleep(random.uniform(*_PRE_CLICK_PAUSE))
        await self.page.mouse.down(button=button)
        await asyncio.sleep(random.uniform(*_HOLD))
        await self.page.mouse.up(button=button)
        logger.debug("Cursor click at (%.0f, %.0f)", self.x, self.y)
