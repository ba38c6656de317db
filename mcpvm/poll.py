"""Fixed-interval polling used for IP, SSH, and hostname readiness checks."""

from __future__ import annotations

import ipaddress
import time
from typing import Callable, Optional, TypeVar

from loguru import logger

log = logger

T = TypeVar('T')


def poll_until(
    condition: Callable[[], Optional[T]],
    *,
    max_attempts: int,
    interval: float,
    desc: str = 'condition',
    sleep: Callable[[float], None] = time.sleep,
) -> Optional[T]:
    """
    Call ``condition`` until it returns a truthy value or attempts run out.

    Sleeps ``interval`` seconds between attempts but never after the last
    one, so the total time spent sleeping is at most
    ``(max_attempts - 1) * interval``.

    Returns:
        The first truthy result of ``condition``, or None on timeout.

    Example:
        >>> from mcpvm.poll import poll_until
        >>> seen = iter([None, '', 'ok'])
        >>> poll_until(lambda: next(seen), max_attempts=5, interval=0,
        ...            sleep=lambda s: None)
        'ok'
        >>> poll_until(lambda: None, max_attempts=2, interval=0,
        ...            sleep=lambda s: None) is None
        True
    """
    attempts = max(1, int(max_attempts))
    for attempt in range(1, attempts + 1):
        value = condition()
        if value:
            log.debug('{} satisfied after {} attempt(s)', desc, attempt)
            return value
        if attempt < attempts:
            log.debug(
                'Waiting for {} (attempt {}/{}, next in {}s)',
                desc,
                attempt,
                attempts,
                interval,
            )
            sleep(interval)
    log.debug('Gave up waiting for {} after {} attempt(s)', desc, attempts)
    return None


def is_ipv4(text: str) -> bool:
    """True for a dotted-quad IPv4 address and nothing else."""
    text = (text or '').strip()
    if text.count('.') != 3:
        return False
    try:
        ipaddress.IPv4Address(text)
    except ValueError:
        return False
    return True
