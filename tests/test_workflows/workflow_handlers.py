"""Step handlers referenced by the YAML workflow fixtures."""

import asyncio


def collect(input: dict, results: dict) -> dict:
    return {"items": list(range(input.get("count", 3)))}


async def total(input: dict, results: dict) -> int:
    await asyncio.sleep(0)
    return sum(results["collect"]["items"])


NOT_CALLABLE = 42
