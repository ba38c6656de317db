"""VM name and OS version rules, plus the collision-free name generator."""

from __future__ import annotations

import random
import re
from typing import Callable

from .errors import InvalidNameError, VMExistsError

VM_PREFIX = 'mcpvm-'
NAME_ATTEMPTS = 20

ADJECTIVES = [
    'amber', 'brave', 'calm', 'clever', 'cosmic', 'crisp', 'dusty', 'eager',
    'fancy', 'gentle', 'happy', 'jolly', 'keen', 'lively', 'lucky', 'mellow',
    'misty', 'nimble', 'polite', 'proud', 'quick', 'quiet', 'rapid', 'rusty',
    'shiny', 'silent', 'sleepy', 'snowy', 'sunny', 'swift', 'tidy', 'witty',
]
NOUNS = [
    'badger', 'beacon', 'canyon', 'comet', 'falcon', 'fern', 'glacier',
    'harbor', 'heron', 'island', 'lantern', 'maple', 'meadow', 'otter',
    'panda', 'pebble', 'pine', 'quartz', 'raven', 'reef', 'river', 'rocket',
    'sparrow', 'summit', 'thistle', 'tiger', 'tulip', 'valley', 'walrus',
    'willow', 'yak', 'zephyr',
]

# Anything after the prefix except periods, whitespace and path separators.
_NAME_RE = re.compile(r'^' + re.escape(VM_PREFIX) + r'[^.\s/]+$')
_VERSION_RE = re.compile(r'^[0-9]+\.[0-9]+$')


def is_managed_name(name: str) -> bool:
    """True if ``name`` follows the mcpvm naming convention."""
    return bool(_NAME_RE.fullmatch(name or ''))


def validate_vm_name(name: str) -> str:
    name = (name or '').strip()
    if '.' in name:
        raise InvalidNameError(
            f"VM name {name!r} cannot contain periods (.) as it is used as a "
            'hostname component'
        )
    if not is_managed_name(name):
        raise InvalidNameError(
            f'VM name {name!r} must start with {VM_PREFIX!r} followed by '
            f'at least one character with no spaces or slashes (e.g. {VM_PREFIX}test)'
        )
    return name


def validate_version(version: str) -> str:
    version = (version or '').strip()
    if not _VERSION_RE.match(version):
        raise InvalidNameError(
            f'Version must be in format X.Y (e.g., 9.5), got {version!r}'
        )
    return version


def generate_vm_name(
    exists: Callable[[str], bool],
    *,
    rng: random.Random | None = None,
    max_attempts: int = NAME_ATTEMPTS,
) -> str:
    """
    Pick an unused ``mcpvm-<adjective>-<noun>`` name.

    Args:
        exists: predicate answering whether a name is already taken.
        rng: random source, injectable for deterministic tests.
        max_attempts: number of candidates to try before giving up.

    Example:
        >>> import random
        >>> from mcpvm.naming import generate_vm_name, is_managed_name
        >>> name = generate_vm_name(lambda n: False, rng=random.Random(0))
        >>> is_managed_name(name)
        True
    """
    rng = rng or random.Random()
    tried: list[str] = []
    for _ in range(max(1, max_attempts)):
        cand = f'{VM_PREFIX}{rng.choice(ADJECTIVES)}-{rng.choice(NOUNS)}'
        if cand in tried:
            continue
        tried.append(cand)
        if not exists(cand):
            return cand
    raise VMExistsError(
        f'Could not generate an unused VM name after {max_attempts} attempts; '
        'pass an explicit name instead.'
    )
