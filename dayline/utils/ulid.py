"""ULID generation utility for Dayline.

Provides `generate_ulid()`, which returns a 26-character ULID used as:
  - user and device ids minted at registration
  - the per-request X-Request-ID header and log correlation key

ULIDs sort by creation time, so device lists ordered by id are also ordered
by registration time.

Uses the `python-ulid` library - do NOT hand-roll ULID generation.
"""

from __future__ import annotations

from ulid import ULID


def generate_ulid() -> str:
    """Generate a new ULID as a 26-character uppercase string.

    Returns:
        str: A 26-character ULID string, Crockford Base32
             (charset ``[0-9A-HJKMNP-TV-Z]``).

    Example::

        device_id = generate_ulid()
        # "01KJ0JRVHYA7KX32VPN5ZSCTMV"
        assert len(device_id) == 26
    """
    return str(ULID())
