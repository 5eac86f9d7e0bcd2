"""Cloudflare Turnstile resolver, the default challenge poller callback."""

import logging

logger = logging.getLogger("veil")

CHALLENGE_FRAME_HOST = "challenges.cloudflare.com"
RESPONSE_INPUT = '[name="cf-turnstile-response"]'

# Checkbox sits ~30px in from the widget's left edge, vertically centred.
_CHECKBOX_OFFSET_X = 30

# Turnstile renders into a childless, unpadded ~300px-wide div when the
# response input is inside a closed shadow root.
_FIND_WIDGET_BOXES = """
() => {
    const boxes = [];
    document.querySelectorAll('div').forEach(function (item) {
        try {
            const rect = item.getBoundingClientRect();
            const css = window.getComputedStyle(item);
            if (css.margin === '0px' && css.padding === '0px' &&
                    rect.width > 290 && rect.width <= 310 &&
                    !item.querySelector('*')) {
                boxes.push({ x: rect.x, y: rect.y, width: rect.width, height: rect.height });
            }
        } catch (e) {}
    });
    return boxes;
}
"""


def _checkbox_point(box: dict) -> tuple[float, float]:
    return box["x"] + _CHECKBOX_OFFSET_X, box["y"] + box["height"] / 2


async def check_turnstile(page) -> bool:
    """Try once to tick an unsolved Turnstile widget on *page*.

    Clicks the challenge iframe body when the frame is reachable,
    otherwise clicks the checkbox position of every widget box found.
    Returns True if anything was clicked.  Errors propagate; the poller
    swallows them.
    """
    for frame in page.frames:
        if CHALLENGE_FRAME_HOST in (frame.url or ""):
            await frame.locator("body").click(timeout=2000)
            logger.debug("Clicked Cloudflare Turnstile frame")
            return True

    boxes = []
    inputs = page.locator(RESPONSE_INPUT)
    count = await inputs.count()
    for i in range(count):
        box = await inputs.nth(i).locator("xpath=..").bounding_box()
        if box:
            boxes.append(box)

    if count == 0:
        boxes = await page.evaluate(_FIND_WIDGET_BOXES) or []

    for box in boxes:
        x, y = _checkbox_point(box)
        await page.mouse.click(x, y)
        logger.debug("Clicked Turnstile checkbox at (%.0f, %.0f)", x, y)
    return bool(boxes)
