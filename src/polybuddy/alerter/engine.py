"""Alert subscription matching and delivery.

One matching pass evaluates every active subscription against freshly
derived market facts and notifies the subscription's Telegram chat when
its condition enters a state it has not notified yet.

Subscription state changes go through a compare-and-set on the
subscription's version. A subscription is claimed (new state key recorded,
status ``fired``) before the message is sent, so two concurrent passes can
never both deliver the same transition. A claim whose delivery fails is
reverted and the subscription degraded with a recorded failure; a claim
whose delivery is cancelled is released for the next pass.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

from polybuddy.alerter.channels.telegram import DeliveryError
from polybuddy.alerter.conditions import InvalidConditionError, evaluate, parse_alert_type, should_fire
from polybuddy.alerter.formatter import AlertFormatter
from polybuddy.alerter.models import DeliveryOutcome, SubscriptionStatus
from polybuddy.alerter.retry import RetryPolicy
from polybuddy.ingestor.locks import JobLockError
from polybuddy.storage.repos import (
    ConnectionRepository,
    DeliveryFailureDTO,
    DeliveryFailureRepository,
    SubscriptionRepository,
)

if TYPE_CHECKING:
    from polybuddy.alerter.models import TriggerEvaluation
    from polybuddy.analytics.service import AnalyticsService, DerivedFacts
    from polybuddy.ingestor.locks import RedisJobLock
    from polybuddy.storage.database import DatabaseManager
    from polybuddy.storage.repos import ConnectionDTO, SubscriptionDTO

logger = logging.getLogger(__name__)


class MessageChannel(Protocol):
    """Outbound messaging channel."""

    name: str

    async def send_message(self, chat_id: str, text: str) -> None:
        """Send a message. Raises DeliveryError on failure."""
        ...


@dataclass
class AlertStats:
    """Statistics for the alert engine."""

    total_passes: int = 0
    messages_delivered: int = 0
    deliveries_failed: int = 0
    last_pass_time: datetime | None = None
    last_pass_duration_seconds: float = 0.0


@dataclass
class MatchReport:
    """Outcome of one matching pass."""

    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    evaluated: int = 0
    outcomes: Counter[DeliveryOutcome] = field(default_factory=Counter)
    duration_seconds: float = 0.0
    skipped: bool = False

    def record(self, outcome: DeliveryOutcome) -> None:
        self.evaluated += 1
        self.outcomes[outcome] += 1

    @property
    def delivered(self) -> int:
        return self.outcomes[DeliveryOutcome.DELIVERED]

    @property
    def degraded(self) -> int:
        return self.outcomes[DeliveryOutcome.DEGRADED]


class AlertEngine:
    """Matches subscriptions against derived facts and delivers alerts.

    Example:
        ```python
        engine = AlertEngine(db, AnalyticsService(db), TelegramChannel(token))
        report = await engine.run_once()
        print(report.delivered)
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        analytics: AnalyticsService,
        channel: MessageChannel,
        *,
        formatter: AlertFormatter | None = None,
        retry_policy: RetryPolicy | None = None,
        max_concurrent_deliveries: int = 4,
        lock: RedisJobLock | None = None,
    ) -> None:
        """Initialize the alert engine.

        Args:
            db: Database manager used for subscription state.
            analytics: Service deriving facts for each market.
            channel: Channel that delivers messages.
            formatter: Alert formatter.
            retry_policy: Retry policy for each delivery.
            max_concurrent_deliveries: Subscriptions processed at once.
            lock: Optional cross-instance lock taken for every pass.
        """
        self._db = db
        self._analytics = analytics
        self._channel = channel
        self._formatter = formatter or AlertFormatter()
        self._retry_policy = retry_policy or RetryPolicy()
        self._semaphore = asyncio.Semaphore(max_concurrent_deliveries)
        self._lock = lock
        self._pass_lock = asyncio.Lock()
        self._stats = AlertStats()

    @property
    def stats(self) -> AlertStats:
        """Current engine statistics."""
        return self._stats

    async def run_once(self, now: datetime | None = None) -> MatchReport:
        """Run one matching pass.

        Args:
            now: Evaluation time; defaults to the current time.

        Returns:
            Report of the pass. Skipped if another pass is running.
        """
        if self._pass_lock.locked():
            logger.info("Alert pass already in progress, skipping")
            return MatchReport(skipped=True)

        now = now or datetime.now(UTC)
        async with self._pass_lock:
            if self._lock is None:
                return await self._run_pass(now)
            try:
                async with self._lock.hold():
                    return await self._run_pass(now)
            except JobLockError as e:
                logger.info("Alert pass skipped: %s", e)
                return MatchReport(skipped=True)

    async def _run_pass(self, now: datetime) -> MatchReport:
        report = MatchReport()

        async with self._db.get_async_session() as session:
            subscriptions = await SubscriptionRepository(session).list_evaluable()

        facts_by_market: dict[int, DerivedFacts | None] = {}
        for market_id in dict.fromkeys(sub.market_id for sub in subscriptions):
            facts_by_market[market_id] = await self._analytics.derive_facts(market_id, now)

        outcomes = await asyncio.gather(
            *(self._guarded(sub, facts_by_market[sub.market_id], now) for sub in subscriptions)
        )
        for outcome in outcomes:
            report.record(outcome)

        report.duration_seconds = (datetime.now(UTC) - report.started_at).total_seconds()
        self._stats.total_passes += 1
        self._stats.messages_delivered += report.delivered
        self._stats.deliveries_failed += report.degraded
        self._stats.last_pass_time = now
        self._stats.last_pass_duration_seconds = report.duration_seconds

        logger.info(
            "Alert pass evaluated %d subscriptions: %d delivered, %d degraded",
            report.evaluated,
            report.delivered,
            report.degraded,
        )
        return report

    async def _guarded(
        self, sub: SubscriptionDTO, facts: DerivedFacts | None, now: datetime
    ) -> DeliveryOutcome:
        async with self._semaphore:
            try:
                return await self._process(sub, facts, now)
            except Exception as e:
                logger.error(f"Failed to process subscription {sub.id}: {e}")
                return DeliveryOutcome.FAILED

    async def _process(
        self, sub: SubscriptionDTO, facts: DerivedFacts | None, now: datetime
    ) -> DeliveryOutcome:
        """Evaluate one subscription and deliver it if it fires."""
        if facts is None:
            return DeliveryOutcome.SKIPPED_NO_DATA

        try:
            evaluation = evaluate(sub, facts)
        except InvalidConditionError as e:
            logger.warning(f"Subscription {sub.id} has an invalid condition: {e}")
            return DeliveryOutcome.FAILED
        if evaluation is None:
            return DeliveryOutcome.SKIPPED_NO_DATA

        async with self._db.get_async_session() as session:
            connection = await ConnectionRepository(session).get_active_for_user(sub.user_id)
        if connection is None:
            logger.debug("Subscription %s skipped: user %s not connected", sub.id, sub.user_id)
            return DeliveryOutcome.SKIPPED_NO_CONNECTION

        if not should_fire(sub, evaluation):
            return await self._record_state(sub, evaluation)

        claim: dict[str, Any] = {
            "last_state_key": evaluation.key,
            "status": SubscriptionStatus.FIRED.value,
            "last_fired_at": now,
        }
        if evaluation.reference_price is not None:
            claim["reference_price"] = evaluation.reference_price
        if not await self._compare_and_set(sub, sub.version, **claim):
            logger.info("Subscription %s was claimed by another pass", sub.id)
            return DeliveryOutcome.LOST_RACE

        try:
            return await self._deliver(sub, facts, evaluation, connection)
        except asyncio.CancelledError:
            # Hand the transition back so the next pass delivers it
            await asyncio.shield(self._release_claim(sub))
            raise
        except Exception as e:
            logger.exception(f"Unexpected error delivering subscription {sub.id}")
            await self._degrade(sub, connection, evaluation, 1, f"{type(e).__name__}: {e}")
            return DeliveryOutcome.DEGRADED

    async def _record_state(
        self, sub: SubscriptionDTO, evaluation: TriggerEvaluation
    ) -> DeliveryOutcome:
        """Persist a state change that does not notify."""
        values: dict[str, Any] = {}
        if evaluation.key != sub.last_state_key:
            values["last_state_key"] = evaluation.key
        if not evaluation.triggered and sub.status == SubscriptionStatus.FIRED.value:
            values["status"] = SubscriptionStatus.ACTIVE.value
        if evaluation.reference_price is not None and evaluation.reference_price != sub.reference_price:
            values["reference_price"] = evaluation.reference_price

        outcome = DeliveryOutcome.UNCHANGED if evaluation.triggered else DeliveryOutcome.NOT_TRIGGERED
        if not values:
            return outcome
        if not await self._compare_and_set(sub, sub.version, **values):
            return DeliveryOutcome.LOST_RACE
        return outcome

    async def _deliver(
        self,
        sub: SubscriptionDTO,
        facts: DerivedFacts,
        evaluation: TriggerEvaluation,
        connection: ConnectionDTO,
    ) -> DeliveryOutcome:
        """Send a claimed alert, degrading the subscription if delivery fails."""
        alert = self._formatter.format(facts.market, parse_alert_type(sub.alert_type), evaluation)
        policy = self._retry_policy
        attempts = 0
        last_error = "no delivery attempted"

        for attempt in range(policy.max_attempts):
            attempts += 1
            try:
                await self._channel.send_message(connection.chat_id, alert.telegram_markdown)
                logger.info(
                    "Delivered %s alert for market %s to chat %s",
                    sub.alert_type,
                    sub.market_id,
                    connection.chat_id,
                )
                return DeliveryOutcome.DELIVERED
            except DeliveryError as e:
                last_error = str(e)
                logger.warning(
                    f"Delivery to chat {connection.chat_id} failed "
                    f"(attempt {attempt + 1}/{policy.max_attempts}): {e}"
                )
                if e.permanent:
                    await self._deactivate(connection.chat_id)
                    break
                if policy.should_retry(attempt):
                    await asyncio.sleep(max(policy.delay_for(attempt), e.retry_after or 0.0))

        await self._degrade(sub, connection, evaluation, attempts, last_error)
        return DeliveryOutcome.DEGRADED

    async def _release_claim(self, sub: SubscriptionDTO) -> None:
        """Restore the state a subscription had before it was claimed."""
        released = await self._compare_and_set(
            sub,
            sub.version + 1,
            status=sub.status,
            last_state_key=sub.last_state_key,
            reference_price=sub.reference_price,
            last_fired_at=sub.last_fired_at,
        )
        if released:
            logger.warning("Delivery of subscription %s interrupted; claim released", sub.id)
        else:
            logger.warning("Subscription %s changed during delivery; claim kept", sub.id)

    async def _degrade(
        self,
        sub: SubscriptionDTO,
        connection: ConnectionDTO,
        evaluation: TriggerEvaluation,
        attempts: int,
        error: str,
    ) -> None:
        """Revert the claim, mark the subscription degraded and record the failure."""
        async with self._db.get_async_session() as session:
            reverted = await SubscriptionRepository(session).compare_and_set(
                sub.id,
                sub.version + 1,
                status=SubscriptionStatus.DEGRADED.value,
                last_state_key=sub.last_state_key,
                reference_price=sub.reference_price,
                last_fired_at=sub.last_fired_at,
                failure_count=sub.failure_count + 1,
                last_error=error[:500],
            )
            await DeliveryFailureRepository(session).record(
                DeliveryFailureDTO(
                    subscription_id=sub.id,
                    user_id=sub.user_id,
                    chat_id=connection.chat_id,
                    trigger_key=evaluation.key,
                    attempts=attempts,
                    error=error,
                )
            )
            await session.commit()

        if not reverted:
            logger.warning("Subscription %s changed during delivery; state left as is", sub.id)
        logger.error(
            f"Subscription {sub.id} degraded after {attempts} failed attempts: {error}"
        )

    async def _deactivate(self, chat_id: str) -> None:
        async with self._db.get_async_session() as session:
            await ConnectionRepository(session).set_active(chat_id, False)
            await session.commit()
        logger.warning("Deactivated Telegram connection for chat %s", chat_id)

    async def _compare_and_set(self, sub: SubscriptionDTO, expected_version: int, **values: Any) -> bool:
        async with self._db.get_async_session() as session:
            updated = await SubscriptionRepository(session).compare_and_set(
                sub.id, expected_version, **values
            )
            await session.commit()
        return updated
