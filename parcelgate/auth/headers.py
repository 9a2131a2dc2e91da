"""Inbound credential header normalisation.

Partner and webhook clients are inconsistent about header names, case and the
``Bearer`` prefix. These helpers turn raw request headers into a candidate
credential string before any lookup happens:

  - first_header():         value of the first present header from a list of
                            names, case-insensitive
  - extract_bearer_token(): token from an Authorization value, tolerating a
                            missing, lower-case or doubled ``Bearer`` prefix
"""

from __future__ import annotations

import re
from typing import Iterable, Mapping, Optional, Union

HeaderSource = Union[Mapping[str, str], Iterable[tuple[str, str]]]

# One or more leading "Bearer" schemes, any case.
_BEARER_PREFIX_RE = re.compile(r"^(?:bearer(?:\s+|$))+", re.IGNORECASE)


def _lowered(headers: HeaderSource) -> dict[str, str]:
    items = headers.items() if isinstance(headers, Mapping) else headers
    lowered: dict[str, str] = {}
    for name, value in items:
        # First occurrence wins for repeated headers.
        lowered.setdefault(name.lower(), value)
    return lowered


def first_header(headers: HeaderSource, names: Iterable[str]) -> Optional[str]:
    """Return the trimmed value of the first header in ``names`` that is present.

    Presence is what matters: a header sent with an empty value returns ``""``
    (a malformed credential), not None (no credential).
    """
    lowered = _lowered(headers)
    for name in names:
        value = lowered.get(name.lower())
        if value is not None:
            return value.strip()
    return None


def extract_bearer_token(authorization: str) -> str:
    """Strip any ``Bearer`` prefixes and surrounding whitespace.

    Examples:
        "Bearer abc"         → "abc"
        "bearer abc"         → "abc"
        "abc"                → "abc"
        "Bearer Bearer abc"  → "abc"
        "Bearer "            → ""
    """
    return _BEARER_PREFIX_RE.sub("", authorization.strip()).strip()
