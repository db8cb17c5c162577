"""Quota ledger - admission credits per principal over a rolling window."""

import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from buildgate.config import settings
from buildgate.db.base import get_session
from buildgate.db.repositories import PlanRepository, QuotaRepository
from buildgate.models import Plan, QuotaDecision
from buildgate.observability.metrics import metrics
from buildgate.utils.time import utc_now

logger = logging.getLogger(__name__)


class QuotaLedger:
    """
    Gate for job admission.

    Records are replenished lazily: the first call after a window elapses
    resets the points. Consumption is a single conditional UPDATE, so two
    simultaneous requests can never both take the last point. Any
    persistence failure is reported as a denial (fail closed).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        window: timedelta | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self._window = window or timedelta(days=settings.quota_window_days)
        self._clock = clock

    async def try_consume(
        self,
        principal_id: str,
        cost: int,
        admission_key: str | None = None,
    ) -> QuotaDecision:
        """
        Consume ``cost`` points if available.

        When ``admission_key`` is given, a key that was already charged is
        reported as allowed without charging again.
        """
        if cost < 0:
            raise ValueError(f"cost must be non-negative, got {cost}")

        now = self._clock()
        plan = Plan.FREE
        try:
            async with get_session(self._session_factory) as session:
                plan = await PlanRepository(session).get(principal_id)
                if admission_key and await QuotaRepository(session).has_admission(admission_key):
                    logger.info(f"Admission {admission_key} already charged for {principal_id}")
                    return QuotaDecision(
                        allowed=True,
                        remaining=await self._remaining(session, principal_id),
                        plan=plan,
                    )

            await self._ensure_window(principal_id, settings.allotment_for(plan.value), now)

            async with get_session(self._session_factory) as session:
                quotas = QuotaRepository(session)
                if not await quotas.consume(principal_id, cost, now):
                    remaining = await self._remaining(session, principal_id)
                    metrics.inc_counter("quota.denied")
                    logger.info(
                        f"Quota denied for {principal_id} (plan={plan.value}, "
                        f"remaining={remaining}, cost={cost})"
                    )
                    return QuotaDecision(allowed=False, remaining=remaining, plan=plan)

                if admission_key:
                    await quotas.record_admission(admission_key, principal_id, cost)
                remaining = await self._remaining(session, principal_id)

        except IntegrityError:
            # A concurrent call charged this admission key first; our decrement rolled back.
            logger.info(f"Admission {admission_key} charged concurrently for {principal_id}")
            return QuotaDecision(allowed=True, remaining=await self._safe_remaining(principal_id), plan=plan)
        except SQLAlchemyError as e:
            logger.error(f"Quota ledger unavailable for {principal_id}: {e}", exc_info=True)
            metrics.inc_counter("quota.errors")
            return QuotaDecision(allowed=False, remaining=0, plan=plan)

        metrics.inc_counter("quota.admitted")
        logger.info(f"Quota admitted {principal_id} (plan={plan.value}, remaining={remaining})")
        return QuotaDecision(allowed=True, remaining=remaining, plan=plan)

    async def peek(self, principal_id: str, cost: int | None = None) -> QuotaDecision:
        """Pre-flight check: would a job be admitted right now? Never mutates."""
        cost = settings.job_cost if cost is None else cost
        now = self._clock()
        try:
            async with get_session(self._session_factory) as session:
                plan = await PlanRepository(session).get(principal_id)
                record = await QuotaRepository(session).get(principal_id)
        except SQLAlchemyError as e:
            logger.error(f"Quota ledger unavailable for {principal_id}: {e}", exc_info=True)
            metrics.inc_counter("quota.errors")
            return QuotaDecision(allowed=False, remaining=0)

        if record is None or record.is_expired(now):
            remaining = settings.allotment_for(plan.value)
        else:
            remaining = record.points_remaining
        return QuotaDecision(allowed=remaining >= cost, remaining=remaining, plan=plan)

    async def _ensure_window(self, principal_id: str, allotment: int, now: datetime) -> None:
        """Create the record if absent, or replenish it if its window has elapsed."""
        window_expires_at = now + self._window
        async with get_session(self._session_factory) as session:
            quotas = QuotaRepository(session)
            record = await quotas.get(principal_id)
            if record is not None:
                if record.is_expired(now) and await quotas.reset_expired(
                    principal_id, allotment, now, window_expires_at
                ):
                    metrics.inc_counter("quota.window_reset")
                    logger.info(f"Quota window reset for {principal_id} ({allotment} points)")
                return

        try:
            async with get_session(self._session_factory) as session:
                await QuotaRepository(session).insert(principal_id, allotment, window_expires_at)
        except IntegrityError:
            logger.debug(f"Quota record for {principal_id} created concurrently")

    async def _remaining(self, session: AsyncSession, principal_id: str) -> int:
        record = await QuotaRepository(session).get(principal_id)
        return record.points_remaining if record else 0

    async def _safe_remaining(self, principal_id: str) -> int:
        try:
            async with get_session(self._session_factory) as session:
                return await self._remaining(session, principal_id)
        except SQLAlchemyError:
            return 0
