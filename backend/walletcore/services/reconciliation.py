"""Compensating steps and the durable record left when one of them fails."""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from walletcore.core.exceptions import NotFound, InvalidState
from walletcore.models.reconciliation import ReconciliationIncident, IncidentStatus

logger = logging.getLogger(__name__)


def _json_safe(context: dict) -> dict:
    return {k: (str(v) if isinstance(v, (Decimal, datetime)) else v) for k, v in context.items()}


async def record_incident(
    db: AsyncSession,
    operation: str,
    step: str,
    error: str,
    user_id: Optional[int] = None,
    asset: Optional[str] = None,
    amount: Optional[Decimal] = None,
    context: Optional[dict] = None,
) -> Optional[ReconciliationIncident]:
    logger.critical(
        "RECONCILIATION REQUIRED op=%s step=%s user=%s asset=%s amount=%s error=%s context=%s",
        operation, step, user_id, asset, amount, error, context,
    )
    incident = ReconciliationIncident(
        operation=operation,
        step=step,
        user_id=user_id,
        asset=asset,
        amount=amount,
        error=error[:1000],
        context=_json_safe(context or {}),
    )
    try:
        db.add(incident)
        await db.commit()
    except Exception:
        await db.rollback()
        logger.critical("Could not persist reconciliation incident op=%s step=%s", operation, step, exc_info=True)
        return None
    return incident


async def compensate(
    db: AsyncSession,
    operation: str,
    step: str,
    action: Callable[[], Awaitable],
    user_id: Optional[int] = None,
    asset: Optional[str] = None,
    amount: Optional[Decimal] = None,
    context: Optional[dict] = None,
) -> bool:
    """Run a reversing step. On failure, persist an incident and return False."""
    try:
        await action()
    except Exception as e:
        await db.rollback()
        await record_incident(
            db, operation, step, f"{type(e).__name__}: {e}",
            user_id=user_id, asset=asset, amount=amount, context=context,
        )
        return False
    logger.info("Compensation applied op=%s step=%s user=%s amount=%s", operation, step, user_id, amount)
    return True


async def list_incidents(db: AsyncSession, status: Optional[IncidentStatus] = None) -> list[ReconciliationIncident]:
    query = select(ReconciliationIncident).order_by(ReconciliationIncident.created_at.desc())
    if status is not None:
        query = query.where(ReconciliationIncident.status == status)
    return list(await db.scalars(query))


async def resolve_incident(db: AsyncSession, incident_id: int, admin_id: int) -> ReconciliationIncident:
    incident = await db.get(ReconciliationIncident, incident_id)
    if not incident:
        raise NotFound("Incident not found")
    if incident.status == IncidentStatus.resolved:
        raise InvalidState("Incident already resolved")
    incident.status = IncidentStatus.resolved
    incident.resolved_at = datetime.now(timezone.utc)
    incident.resolved_by = admin_id
    await db.commit()
    return incident
