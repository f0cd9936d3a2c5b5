"""Sales stage lookup tables.

Probability, forecast category and badge colour are fixed per stage. They are
derived whenever an opportunity is materialized and are never stored, so they
cannot drift from the stage they describe.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from enum import StrEnum
from types import MappingProxyType


class SalesStage(StrEnum):
    PROSPECTING = "Prospecting"
    QUALIFICATION = "Qualification"
    PROPOSAL = "Proposal"
    NEGOTIATION = "Negotiation"
    CLOSED_WON = "Closed Won"
    CLOSED_LOST = "Closed Lost"


class ForecastCategory(StrEnum):
    PIPELINE = "Pipeline"
    BEST_CASE = "Best Case"
    COMMIT = "Commit"
    CLOSED = "Closed"


DEFAULT_STAGE = SalesStage.PROSPECTING

STAGE_PROBABILITY = MappingProxyType(
    {
        SalesStage.PROSPECTING: 10,
        SalesStage.QUALIFICATION: 25,
        SalesStage.PROPOSAL: 50,
        SalesStage.NEGOTIATION: 75,
        SalesStage.CLOSED_WON: 100,
        SalesStage.CLOSED_LOST: 0,
    }
)

STAGE_FORECAST_CATEGORY = MappingProxyType(
    {
        SalesStage.PROSPECTING: ForecastCategory.PIPELINE,
        SalesStage.QUALIFICATION: ForecastCategory.PIPELINE,
        SalesStage.PROPOSAL: ForecastCategory.BEST_CASE,
        SalesStage.NEGOTIATION: ForecastCategory.COMMIT,
        SalesStage.CLOSED_WON: ForecastCategory.CLOSED,
        SalesStage.CLOSED_LOST: ForecastCategory.CLOSED,
    }
)

STAGE_COLOR = MappingProxyType(
    {
        SalesStage.PROSPECTING: "blue",
        SalesStage.QUALIFICATION: "indigo",
        SalesStage.PROPOSAL: "yellow",
        SalesStage.NEGOTIATION: "orange",
        SalesStage.CLOSED_WON: "green",
        SalesStage.CLOSED_LOST: "red",
    }
)


def probability_of(stage: SalesStage) -> int:
    return STAGE_PROBABILITY[stage]


def forecast_category_of(stage: SalesStage) -> ForecastCategory:
    return STAGE_FORECAST_CATEGORY[stage]


def stage_color(stage: SalesStage) -> str:
    return STAGE_COLOR[stage]


def weighted_value(deal_value: float | int | Decimal, stage: SalesStage) -> int:
    """Deal value scaled by stage probability, rounded half away from zero.

    ``Decimal`` keeps ``x.5`` products exact: 5 * 10% is 0.5 and rounds to 1,
    where binary float rounding could land on either side.
    """

    product = Decimal(str(deal_value)) * probability_of(stage) / 100
    return int(product.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_stage(value: object) -> SalesStage | None:
    """Map a stored value onto the enum; ``None`` when it is missing or unknown."""

    if isinstance(value, SalesStage):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        return SalesStage(value)
    except ValueError:
        return None
