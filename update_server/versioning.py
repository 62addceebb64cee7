"""
Version string comparison.

Versions follow ``major[.minor[.patch]][-prerelease][+build]`` precedence:
numeric parts compare numerically, missing parts count as zero, a
prerelease sorts before its release and build metadata is ignored. Tags
coming from GitHub often carry a leading ``v`` which is stripped before
parsing, so ``v1.2.0`` and ``1.2.0`` are the same version.
"""

import re

from enum import IntEnum
from typing import NamedTuple, Tuple, Union

from update_server.errors import InvalidVersionFormat

_VERSION_RE = re.compile(
    r"^(?P<release>\d+(?:\.\d+)*)"
    r"(?:-(?P<prerelease>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?$"
)


class Comparison(IntEnum):
    LESS = -1
    EQUAL = 0
    GREATER = 1


class Version(NamedTuple):
    release: Tuple[int, ...]
    prerelease: Tuple[Union[int, str], ...]


def normalize_version(tag: str) -> str:
    """Strip surrounding whitespace and a single leading ``v``/``V``."""
    tag = (tag or "").strip()
    if tag[:1] in ("v", "V"):
        tag = tag[1:]
    return tag


def parse_version(value: str) -> Version:
    normalized = normalize_version(value)
    match = _VERSION_RE.match(normalized)
    if match is None:
        raise InvalidVersionFormat(f"Invalid version format: {value!r}")

    release = tuple(int(part) for part in match.group("release").split("."))
    prerelease = match.group("prerelease")
    identifiers: Tuple[Union[int, str], ...] = ()
    if prerelease:
        identifiers = tuple(
            int(ident) if ident.isdigit() else ident for ident in prerelease.split(".")
        )
    return Version(release=release, prerelease=identifiers)


def canonical_version(value: str) -> str:
    """
    The form a version is stored and looked up under.

    Release parts are padded to three and trailing zeros past the third are
    dropped, so every spelling that compares equal maps to one string:
    ``v1.2``, ``1.2.0`` and ``1.2.0+build.7`` all become ``1.2.0``.
    """
    parsed = parse_version(value)
    release = list(parsed.release) + [0] * (3 - len(parsed.release))
    while len(release) > 3 and release[-1] == 0:
        release.pop()

    canonical = ".".join(str(part) for part in release)
    if parsed.prerelease:
        canonical += "-" + ".".join(str(ident) for ident in parsed.prerelease)
    return canonical


def is_valid_version(value: str) -> bool:
    try:
        parse_version(value)
    except InvalidVersionFormat:
        return False
    return True


def _cmp(a, b) -> int:
    return (a > b) - (a < b)


def _compare_release(a: Tuple[int, ...], b: Tuple[int, ...]) -> int:
    width = max(len(a), len(b), 3)
    a = a + (0,) * (width - len(a))
    b = b + (0,) * (width - len(b))
    return _cmp(a, b)


def _compare_identifier(a: Union[int, str], b: Union[int, str]) -> int:
    a_num = isinstance(a, int)
    b_num = isinstance(b, int)
    if a_num and b_num:
        return _cmp(a, b)
    if a_num:
        return -1
    if b_num:
        return 1
    return _cmp(a, b)


def _compare_prerelease(a: Tuple, b: Tuple) -> int:
    # No prerelease ranks above any prerelease of the same release
    if not a and not b:
        return 0
    if not a:
        return 1
    if not b:
        return -1

    for left, right in zip(a, b):
        result = _compare_identifier(left, right)
        if result:
            return result
    return _cmp(len(a), len(b))


def compare(a: str, b: str) -> Comparison:
    left = parse_version(a)
    right = parse_version(b)

    result = _compare_release(left.release, right.release)
    if result == 0:
        result = _compare_prerelease(left.prerelease, right.prerelease)
    return Comparison(result)


def is_newer(candidate: str, baseline: str) -> bool:
    return compare(candidate, baseline) is Comparison.GREATER
