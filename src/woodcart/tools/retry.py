"""One-shot retry for transport failures."""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from woodcart.tools.errors import TransportError


logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRY_DELAY_S = 0.5


def with_retry(
    fn: Callable[[], T],
    *,
    sleep: Callable[[float], None] = time.sleep,
    delay: float = RETRY_DELAY_S,
) -> T:
    """Call ``fn``; on TransportError wait ``delay`` and call it exactly once more.

    Application rejections and session expiry propagate immediately. A second
    transport failure propagates as-is.
    """
    try:
        return fn()
    except TransportError as e:
        logger.debug("Transport error, retrying once: %s", e.context)
        sleep(delay)
        return fn()
