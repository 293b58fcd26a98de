"""Load community settings and room catalogs from JSON / JSONL files."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from roombook.models.catalog import CommunitySettings

log = logging.getLogger("roombook.catalog")


def load_catalog(path: str | Path) -> dict[str, CommunitySettings]:
    """Load every community from a catalog file.

    Accepts either a JSON array of community objects or JSONL with one
    community per line.  Returns a dict keyed by community ID.
    """
    path = Path(path)
    text = path.read_text(encoding="utf-8").strip()
    if not text:
        raise ValueError(f"No communities found in {path}")

    if text.startswith("["):
        raw = json.loads(text)
    else:
        # JSONL: one community per non-empty line
        raw = [json.loads(line) for line in text.splitlines() if line.strip()]

    communities: dict[str, CommunitySettings] = {}
    for data in raw:
        community = _parse_community(data)
        communities[community.id] = community

    log.info("Loaded %d communities from %s", len(communities), path)
    return communities


def _parse_community(data: dict) -> CommunitySettings:
    """Parse a raw dict into CommunitySettings.

    ``tokens`` may be given as a list; it is keyed by symbol.
    """
    tokens = data.get("tokens", {})
    if isinstance(tokens, list):
        data["tokens"] = {t["symbol"]: t for t in tokens}

    community = CommunitySettings(**data)
    for room in community.rooms:
        for price in room.prices:
            if price.token not in community.tokens:
                raise ValueError(
                    f"Room {room.slug!r} in community {community.id!r} is priced "
                    f"in unknown token {price.token!r}"
                )
    return community
