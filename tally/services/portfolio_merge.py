"""Symbol-keyed merge of imported holdings into a dated snapshot."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Sequence

from tally.services.row_validators import PortfolioPosition

TOTAL_BPS = 10_000


@dataclass
class WeightedPosition(PortfolioPosition):
    weight_bps: int = 0
    sort_order: int = 0

    @property
    def weight_percent(self) -> float:
        return self.weight_bps / 100


def compute_weight_bps(values: Sequence[int]) -> List[int]:
    """Apportion 10000 basis points over ``values`` by largest remainder.

    Each value gets ``floor(value * 10000 / total)``; the units left over go
    one at a time to the largest fractional remainders, earlier index first
    on ties. The result always sums to exactly 10000 unless ``total <= 0``,
    in which case every weight is zero.
    """

    total = sum(values)
    if total <= 0:
        return [0 for _ in values]

    weights = [value * TOTAL_BPS // total for value in values]
    remaining = TOTAL_BPS - sum(weights)
    order = sorted(
        range(len(values)),
        key=lambda index: (-(values[index] * TOTAL_BPS % total), index),
    )
    for index in order:
        if remaining <= 0:
            break
        weights[index] += 1
        remaining -= 1
    return weights


def merge_portfolio_positions(
    existing: Sequence[PortfolioPosition],
    imported: Sequence[PortfolioPosition],
) -> List[WeightedPosition]:
    """Add ``imported`` onto ``existing`` and recompute weights.

    Symbols are matched case-insensitively. For a symbol present on both
    sides market value and shares add up, the imported company name replaces
    the stored one, and the imported exchange, currency and logo replace
    theirs only when the import provides them. Symbols only in ``existing``
    are kept unchanged. The result is ordered by market value descending,
    then symbol.
    """

    merged: Dict[str, PortfolioPosition] = {}
    for position in existing:
        symbol = position.symbol.strip().upper()
        merged[symbol] = PortfolioPosition(
            symbol=symbol,
            company_name=position.company_name,
            market_value_cents=position.market_value_cents,
            shares_micros=position.shares_micros,
            exchange=position.exchange or None,
            currency=position.currency or None,
            logo_url=position.logo_url or None,
        )

    for incoming in imported:
        symbol = incoming.symbol.strip().upper()
        current = merged.get(symbol)
        if current is None:
            merged[symbol] = PortfolioPosition(
                symbol=symbol,
                company_name=incoming.company_name,
                market_value_cents=incoming.market_value_cents,
                shares_micros=incoming.shares_micros,
                exchange=incoming.exchange,
                currency=incoming.currency,
                logo_url=incoming.logo_url,
            )
            continue
        current.market_value_cents += incoming.market_value_cents
        current.shares_micros += incoming.shares_micros
        current.company_name = incoming.company_name
        current.exchange = incoming.exchange or current.exchange
        current.currency = incoming.currency or current.currency
        current.logo_url = incoming.logo_url or current.logo_url

    ordered = sorted(merged.values(), key=lambda item: (-item.market_value_cents, item.symbol))
    weights = compute_weight_bps([item.market_value_cents for item in ordered])
    return [
        WeightedPosition(
            symbol=item.symbol,
            company_name=item.company_name,
            market_value_cents=item.market_value_cents,
            shares_micros=item.shares_micros,
            exchange=item.exchange,
            currency=item.currency,
            logo_url=item.logo_url,
            weight_bps=weight,
            sort_order=index,
        )
        for index, (item, weight) in enumerate(zip(ordered, weights))
    ]
