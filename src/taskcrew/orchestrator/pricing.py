"""Turn reported token usage into cost units using `TASKCREW_PRICING`."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

PRICING_ENV = "TASKCREW_PRICING"


@dataclass(slots=True)
class TokenPrice:
    """Cost units per 1M input and output tokens."""

    input_per_1m: float
    output_per_1m: float

    def cost(self, usage: Mapping[str, int]) -> float | None:
        prompt = usage.get("prompt_tokens")
        completion = usage.get("completion_tokens")
        if prompt is not None and completion is not None:
            return (prompt * self.input_per_1m + completion * self.output_per_1m) / 1_000_000
        total = usage.get("total_tokens")
        return total * self.input_per_1m / 1_000_000 if total is not None else None


def token_cost(*, provider: str, model: str, usage: Mapping[str, int]) -> float | None:
    """None when no price is configured for the model or no usage was reported."""

    table = parse_pricing(os.getenv(PRICING_ENV, ""))
    provider = provider.strip().lower()
    for key in ((provider, model.strip()), (provider, "*"), ("*", "*")):
        price = table.get(key)
        if price is not None:
            return price.cost(usage)
    return None


def parse_pricing(raw: str) -> dict[tuple[str, str], TokenPrice]:
    """Parse comma-separated `provider:model:input_per_1m:output_per_1m` entries.

    `*` matches any provider or model. Malformed entries are skipped.
    """

    table: dict[tuple[str, str], TokenPrice] = {}
    for entry in raw.split(","):
        parts = [part.strip() for part in entry.split(":")]
        if len(parts) != 4:  # noqa: PLR2004
            continue
        provider, model, input_price, output_price = parts
        try:
            table[(provider.lower(), model)] = TokenPrice(float(input_price), float(output_price))
        except ValueError:
            continue
    return table
