"""Inbound webhook credential check.

An account without an ``inboundSecret`` accepts every request: leaving the
secret unset is an explicit opt-in to an unauthenticated webhook. With a
secret configured, the request must carry it in one of three places,
tried in order:

1. the ``X-Telegram-Bot-Api-Secret-Token`` header (Telegram's own scheme)
2. a ``secret`` query parameter
3. an ``Authorization: Bearer <secret>`` header

All comparisons use :func:`hmac.compare_digest`.
"""

from __future__ import annotations

import hmac
from collections.abc import Mapping

SECRET_TOKEN_HEADER = "x-telegram-bot-api-secret-token"


def _matches(candidate: str | None, expected: str) -> bool:
    if candidate is None:
        return False
    return hmac.compare_digest(candidate.encode(), expected.encode())


def verify_inbound_secret(
    headers: Mapping[str, str],
    query_params: Mapping[str, str],
    expected_secret: str | None,
) -> bool:
    """Return True if the request proves knowledge of ``expected_secret``.

    ``headers`` must be case-insensitive for lookups (Starlette's ``Headers``
    is) or already lower-cased.
    """
    if not expected_secret:
        return True
    if _matches(headers.get(SECRET_TOKEN_HEADER), expected_secret):
        return True
    if _matches(query_params.get("secret"), expected_secret):
        return True
    return _matches(headers.get("authorization"), f"Bearer {expected_secret}")
