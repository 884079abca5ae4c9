"""Settlement arithmetic.

The only place supply / VAT / total / deposit / balance and helper payout are
computed. All amounts are integers in currency minor units; intermediate math
uses ``Decimal`` so rounding is exact:

- VAT, platform fee and commission splits round half-up.
- Deposit rounds down (floor), in the requester's favor.
- Driver payout never goes below zero.

Call sites that already hold a persisted settlement should read it through
``result_from_settlement`` instead of recomputing.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Any, Iterable

DEFAULT_ETC_PRICE_PER_UNIT = 1800
# VAT is statutory, not configurable.
VAT_RATE = Decimal("0.10")
DEFAULT_DEPOSIT_RATE = Decimal("0.10")

_ONE = Decimal("1")
_HUNDRED = Decimal("100")


def _dec(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() first so 0.2 stays 0.2 instead of its binary expansion.
    return Decimal(str(value))


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(_ONE, rounding=ROUND_HALF_UP))


def round_floor(value: Decimal) -> int:
    return int(value.quantize(_ONE, rounding=ROUND_FLOOR))


def percent_to_rate(percent: Any) -> Decimal:
    return _dec(percent) / _HUNDRED


@dataclass(frozen=True)
class ExtraCost:
    label: str
    amount: int

    def __post_init__(self) -> None:
        if int(self.amount) < 0:
            raise ValueError("extra cost amount must be >= 0")


@dataclass(frozen=True)
class ClosingData:
    delivered_count: int
    returned_count: int
    etc_count: int
    unit_price: int
    etc_price_per_unit: int = DEFAULT_ETC_PRICE_PER_UNIT
    extra_costs: tuple[ExtraCost, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        for name in (
            "delivered_count",
            "returned_count",
            "etc_count",
            "unit_price",
            "etc_price_per_unit",
        ):
            value = getattr(self, name)
            if value is None or int(value) < 0:
                raise ValueError(f"{name} must be a non-negative integer")
        if not isinstance(self.extra_costs, tuple):
            object.__setattr__(self, "extra_costs", tuple(self.extra_costs))


@dataclass(frozen=True)
class SettlementResult:
    total_billable_count: int
    delivery_return_amount: int
    etc_amount: int
    extra_costs_total: int
    supply_amount: int
    vat_amount: int
    total_amount: int
    deposit_amount: int
    balance_amount: int

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class HelperPayout(SettlementResult):
    platform_fee_rate: int
    platform_fee: int
    platform_commission: int
    team_leader_incentive: int
    damage_deduction: int
    driver_payout: int


def compute_settlement(
    closing: ClosingData,
    deposit_rate: Any,
) -> SettlementResult:
    """Compute the order-level settlement.

    ``deposit_rate`` is a fraction (0.2 == 20%). VAT is always 10% of supply.
    """

    deposit = _dec(deposit_rate)
    if deposit < 0 or deposit > 1:
        raise ValueError("deposit_rate must be between 0 and 1")

    total_billable_count = int(closing.delivered_count) + int(closing.returned_count)
    delivery_return_amount = total_billable_count * int(closing.unit_price)
    etc_amount = int(closing.etc_count) * int(closing.etc_price_per_unit)
    extra_costs_total = sum(int(c.amount) for c in closing.extra_costs)

    supply_amount = delivery_return_amount + etc_amount + extra_costs_total
    vat_amount = round_half_up(Decimal(supply_amount) * VAT_RATE)
    total_amount = supply_amount + vat_amount
    deposit_amount = round_floor(Decimal(total_amount) * deposit)
    balance_amount = total_amount - deposit_amount

    return SettlementResult(
        total_billable_count=total_billable_count,
        delivery_return_amount=delivery_return_amount,
        etc_amount=etc_amount,
        extra_costs_total=extra_costs_total,
        supply_amount=supply_amount,
        vat_amount=vat_amount,
        total_amount=total_amount,
        deposit_amount=deposit_amount,
        balance_amount=balance_amount,
    )


def platform_fee_for(total_amount: int, rate_percent: Any) -> int:
    return round_half_up(Decimal(int(total_amount)) * percent_to_rate(rate_percent))


def compute_helper_payout(
    closing: ClosingData,
    rate: Any,
    damage_deduction: int = 0,
    *,
    deposit_rate: Any = DEFAULT_DEPOSIT_RATE,
    platform_rate: Any | None = None,
    team_leader_rate: Any = 0,
) -> HelperPayout:
    """Settlement plus platform fee and driver payout.

    ``rate`` is the total commission in percent. ``platform_rate`` and
    ``team_leader_rate`` only split the fee for reporting; the fee itself is
    always computed from ``rate``.
    """

    total_rate = _dec(rate)
    if total_rate < 0 or total_rate > 100:
        raise ValueError("rate must be between 0 and 100")
    if total_rate != total_rate.to_integral_value():
        raise ValueError("rate must be a whole percent")
    if int(damage_deduction) < 0:
        raise ValueError("damage_deduction must be >= 0")

    base = compute_settlement(closing, deposit_rate)
    platform_fee = platform_fee_for(base.total_amount, rate)
    if platform_rate is None:
        platform_rate = _dec(rate) - _dec(team_leader_rate)
    platform_commission = platform_fee_for(base.total_amount, platform_rate)
    team_leader_incentive = platform_fee_for(base.total_amount, team_leader_rate)
    driver_payout = max(0, base.total_amount - platform_fee - int(damage_deduction))

    return HelperPayout(
        **base.as_dict(),
        platform_fee_rate=int(total_rate),
        platform_fee=platform_fee,
        platform_commission=platform_commission,
        team_leader_incentive=team_leader_incentive,
        damage_deduction=int(damage_deduction),
        driver_payout=driver_payout,
    )


def parse_extra_costs(raw: Any) -> tuple[ExtraCost, ...]:
    """Accept a list of ``{label|name, amount}`` dicts or its JSON text."""

    if raw is None or raw == "":
        return ()
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError("extra_costs is not valid JSON") from exc
    if not isinstance(raw, Iterable) or isinstance(raw, (str, bytes, dict)):
        raise ValueError("extra_costs must be a list")

    costs: list[ExtraCost] = []
    for item in raw:
        if isinstance(item, ExtraCost):
            costs.append(item)
            continue
        if not isinstance(item, dict):
            raise ValueError("extra cost entries must be objects")
        label = item.get("label") or item.get("name") or item.get("code") or ""
        costs.append(ExtraCost(label=str(label), amount=int(item.get("amount") or 0)))
    return tuple(costs)


def extra_costs_to_json(costs: Iterable[ExtraCost]) -> list[dict[str, Any]]:
    return [{"label": c.label, "amount": int(c.amount)} for c in costs]


def parse_closing_report(
    report: Any,
    order: Any,
    *,
    default_etc_price_per_unit: int = DEFAULT_ETC_PRICE_PER_UNIT,
) -> ClosingData:
    """Build ``ClosingData`` from a stored closing report and its order.

    The unit price always comes from the order; the helper cannot change it.
    """

    etc_price = getattr(report, "etc_price_per_unit", None)
    if etc_price is None:
        etc_price = getattr(order, "etc_price_per_unit", None)
    if etc_price is None:
        etc_price = default_etc_price_per_unit

    return ClosingData(
        delivered_count=int(report.delivered_count or 0),
        returned_count=int(report.returned_count or 0),
        etc_count=int(report.etc_count or 0),
        unit_price=int(order.unit_price or 0),
        etc_price_per_unit=int(etc_price),
        extra_costs=parse_extra_costs(getattr(report, "extra_costs", None)),
    )


def result_from_settlement(settlement: Any) -> SettlementResult:
    return SettlementResult(
        total_billable_count=int(settlement.total_billable_count),
        delivery_return_amount=int(settlement.delivery_return_amount),
        etc_amount=int(settlement.etc_amount),
        extra_costs_total=int(settlement.extra_costs_total),
        supply_amount=int(settlement.supply_amount),
        vat_amount=int(settlement.vat_amount),
        total_amount=int(settlement.total_amount),
        deposit_amount=int(settlement.deposit_amount),
        balance_amount=int(settlement.balance_amount),
    )
