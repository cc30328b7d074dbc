"""Target resolution for operator-initiated sends."""

from __future__ import annotations

import re
from collections.abc import Iterable

_TARGET_PREFIX = re.compile(r"^(tgrelay|telegram-relay|tg-relay):", re.IGNORECASE)

TARGET_HINT = "<chat_id|@username> or dm.allowFrom[0]"


class MissingTargetError(Exception):
    """No explicit target was given and the allowlist has nothing to fall back on."""

    def __init__(self, hint: str = TARGET_HINT) -> None:
        super().__init__(f"tgrelay needs a delivery target: {hint}")


def resolve_target(to: str | None, allow_from: Iterable[str | int] = ()) -> str:
    """Explicit target (prefix stripped), else the first non-wildcard allow entry."""
    allow_list = [e for e in (str(entry).strip() for entry in allow_from) if e and e != "*"]
    normalized = _TARGET_PREFIX.sub("", (to or "").strip())
    if normalized:
        return normalized
    if allow_list:
        return allow_list[0]
    raise MissingTargetError()


def coerce_chat_id(target: str) -> int | str:
    """Numeric chat ids go out as integers; usernames stay strings."""
    return int(target) if re.fullmatch(r"-?\d+", target) else target
