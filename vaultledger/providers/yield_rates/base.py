from __future__ import annotations

from typing import Any, Protocol


class YieldRateSource(Protocol):
    name: str

    async def fetch_rate(self) -> float:
        ...


def pick_usdt_rate(entries: Any, fields: tuple[str, ...]) -> float:
    # First USDT entry wins; the first numeric field in preference order is the rate.
    if not isinstance(entries, list):
        return 0.0
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        if str(entry.get("symbol") or "").upper() != "USDT":
            continue
        for name in fields:
            value = entry.get(name)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return float(value)
    return 0.0
