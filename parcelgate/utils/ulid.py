"""ULID generation for ParcelGate record identifiers.

API key records are addressed by a 26-character ULID. The id is what admins
pass to deactivate/activate/delete; it is safe to log and display and carries
no information about the secret key value.

Uses the ``python-ulid`` library. Do NOT hand-roll ULID generation.
"""

from __future__ import annotations

from ulid import ULID


def generate_ulid() -> str:
    """Return a new 26-character uppercase ULID string.

    Charset is Crockford Base32 (``[0-9A-HJKMNP-TV-Z]``). Ids generated later
    sort after ids generated earlier, so ``ORDER BY id`` approximates creation
    order.
    """
    return str(ULID())
