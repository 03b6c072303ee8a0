from __future__ import annotations

import re
import uuid
from typing import Optional, Tuple

# Binance accepts ``^[\.A-Z\:/a-z0-9_-]{1,36}$`` for newClientOrderId.
CLIENT_ID_MAX_LEN = 36
DEFAULT_PREFIX = "sgb"

_TAG_RE = re.compile(r"^(?P<prefix>[A-Za-z0-9]+)_(?P<side>buy|sell)_(?P<idx>\d+)_[0-9a-f]+$")


def uuid_external_id(
    prefix: str = DEFAULT_PREFIX, side: Optional[str] = None, idx: Optional[int] = None
) -> str:
    """Return a unique client order id tagged with side and node index.

    The random part is shortened so the whole id fits the exchange limit.
    """
    parts = [prefix.rstrip("_")]
    if side:
        parts.append(side.lower())
    if idx is not None:
        parts.append(str(idx))
    head = "_".join(filter(None, parts))
    room = CLIENT_ID_MAX_LEN - len(head) - 1
    if room < 8:
        raise ValueError(f"client id prefix too long: {head!r}")
    return f"{head}_{uuid.uuid4().hex[:min(room, 16)]}"


def parse_node_tag(
    client_order_id: Optional[str], prefix: str = DEFAULT_PREFIX
) -> Optional[Tuple[str, int]]:
    """Return ``(side, node_index)`` for ids produced by :func:`uuid_external_id`."""
    if not client_order_id:
        return None
    m = _TAG_RE.match(client_order_id)
    if not m or m.group("prefix") != prefix.rstrip("_"):
        return None
    return m.group("side").upper(), int(m.group("idx"))
