"""
Staleness tracking.

Periods are only ever written by the assignment engine, inside the same
transaction as the assignment batch they describe.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.computed_property import ComputedPropertyPeriod, ComputedPropertyStep
from app.schemas.computed_properties import Freshness, PeriodStatus

logger = logging.getLogger(__name__)

# Fixed; consumers treat anything older as stale
STALENESS_THRESHOLD = timedelta(seconds=30)


class PeriodRegressionError(Exception):
    """Raised when a new period would end before the last recorded one."""


def freshness(last_recomputed: Optional[datetime], now: datetime) -> Freshness:
    if last_recomputed is None:
        return Freshness.NOT_COMPUTED
    if now - last_recomputed >= STALENESS_THRESHOLD:
        return Freshness.STALE
    return Freshness.UP_TO_DATE


async def get_latest_period(
    db: AsyncSession,
    workspace_id: str,
    step: str = ComputedPropertyStep.COMPUTE_ASSIGNMENTS.value,
) -> Optional[ComputedPropertyPeriod]:
    result = await db.execute(
        select(ComputedPropertyPeriod)
        .where(
            ComputedPropertyPeriod.workspace_id == workspace_id,
            ComputedPropertyPeriod.step == step,
        )
        .order_by(ComputedPropertyPeriod.period_end.desc(), ComputedPropertyPeriod.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def record_period(
    db: AsyncSession,
    workspace_id: str,
    step: str,
    period_start: Optional[datetime],
    period_end: datetime,
    definition_versions: dict[str, str],
) -> ComputedPropertyPeriod:
    """Stage a new period row. Flushes but does not commit."""
    latest = await get_latest_period(db, workspace_id, step)
    if latest is not None and period_end < latest.period_end:
        raise PeriodRegressionError(
            f"Period end {period_end.isoformat()} precedes last recorded "
            f"{latest.period_end.isoformat()} for {workspace_id}/{step}"
        )

    period = ComputedPropertyPeriod(
        workspace_id=workspace_id,
        step=step,
        period_start=period_start,
        period_end=period_end,
        definition_versions=dict(definition_versions),
        created_at=datetime.utcnow(),
    )
    db.add(period)
    await db.flush()
    return period


async def get_computed_property_periods(
    db: AsyncSession,
    workspace_id: str,
    step: Optional[str] = None,
    now: Optional[datetime] = None,
) -> list[PeriodStatus]:
    """Latest period per step with its freshness.

    When a step is requested but has never run it is reported as not computed.
    """
    now = now or datetime.utcnow()
    latest_end = (
        select(
            ComputedPropertyPeriod.step.label("step"),
            func.max(ComputedPropertyPeriod.period_end).label("period_end"),
        )
        .where(ComputedPropertyPeriod.workspace_id == workspace_id)
        .group_by(ComputedPropertyPeriod.step)
    )
    if step is not None:
        latest_end = latest_end.where(ComputedPropertyPeriod.step == step)
    latest_end = latest_end.subquery()

    result = await db.execute(
        select(ComputedPropertyPeriod)
        .join(
            latest_end,
            (ComputedPropertyPeriod.step == latest_end.c.step)
            & (ComputedPropertyPeriod.period_end == latest_end.c.period_end),
        )
        .where(ComputedPropertyPeriod.workspace_id == workspace_id)
        .order_by(ComputedPropertyPeriod.step, ComputedPropertyPeriod.id.desc())
    )

    statuses: dict[str, PeriodStatus] = {}
    for period in result.scalars().all():
        if period.step in statuses:
            continue
        statuses[period.step] = PeriodStatus(
            step=period.step,
            period_start=period.period_start,
            period_end=period.period_end,
            last_recomputed=period.created_at,
            freshness=freshness(period.created_at, now),
        )

    if step is not None and step not in statuses:
        statuses[step] = PeriodStatus(step=step, freshness=Freshness.NOT_COMPUTED)
    return list(statuses.values())
