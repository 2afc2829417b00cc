"""Automation engine: evaluates enabled rules and fires their actions.

A rule fires at most once per cooldown window. Cooldown starts only when
every action of a firing succeeded; a partial failure is logged and the rule
is retried on the next tick.

A rule is claimed under a per-rule lock and its cooldown re-read from the
stored row before any action runs, so a manual run overlapping a scheduled
pass fires it once.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import redis.asyncio as aioredis
import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dlwatch.automation.actions import ActionExecutor
from dlwatch.automation.conditions import (
    EvaluationContext,
    invalid_leaves,
    matching_items,
    parse_conditions,
    speed_window_hours,
    uses_telemetry,
)
from dlwatch.automation.speed import load_speed_history
from dlwatch.config import Settings
from dlwatch.db.models import Account, AutomationRule, RuleExecutionLog
from dlwatch.remote.client import DownloadApiClient
from dlwatch.security.crypto import CredentialCipher
from dlwatch.snapshots import shadow_store
from dlwatch.snapshots.status import item_key

logger = structlog.get_logger()

MIN_TRIGGER_INTERVAL_MINUTES = 1

ClientFactory = Callable[[str], DownloadApiClient]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RuleView:
    """Detached copy of the rule columns the engine reads."""

    id: int
    account_id: int
    name: str
    target_type: str
    trigger: dict[str, Any] | None
    conditions: Any
    action: dict[str, Any]
    cooldown_minutes: int | None
    last_executed_at: datetime | None
    last_evaluated_at: datetime | None

    @classmethod
    def from_row(cls, rule: AutomationRule) -> RuleView:
        return cls(
            id=rule.id,
            account_id=rule.account_id,
            name=rule.name,
            target_type=rule.target_type or "torrent",
            trigger=rule.trigger,
            conditions=rule.conditions,
            action=rule.action,
            cooldown_minutes=rule.cooldown_minutes,
            last_executed_at=rule.last_executed_at,
            last_evaluated_at=rule.last_evaluated_at,
        )


@dataclass
class RuleOutcome:
    rule_id: int
    matched: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: str | None = None
    # keys of items a delete action removed; later rules in the pass no longer see them
    removed: set[str] = field(default_factory=set, compare=False)

    @property
    def fired(self) -> bool:
        return self.matched > 0 and self.failed == 0


@dataclass
class PassSummary:
    evaluated: int = 0
    skipped: int = 0
    fired: int = 0
    failed: int = 0
    outcomes: list[RuleOutcome] = field(default_factory=list)


def in_cooldown(rule: RuleView, now: datetime) -> bool:
    """True while the rule's last successful firing is within its cooldown."""
    if not rule.cooldown_minutes or rule.last_executed_at is None:
        return False
    return now - rule.last_executed_at < timedelta(minutes=rule.cooldown_minutes)


def interval_pending(rule: RuleView, now: datetime) -> bool:
    """True when an interval trigger has not elapsed since the last evaluation."""
    trigger = rule.trigger or {}
    if trigger.get("type") != "interval" or not trigger.get("value") or rule.last_evaluated_at is None:
        return False
    try:
        minutes = max(float(trigger["value"]), MIN_TRIGGER_INTERVAL_MINUTES)
    except (TypeError, ValueError):
        return False
    return now - rule.last_evaluated_at < timedelta(minutes=minutes)


class AutomationEngine:
    """Evaluates rules against live account state."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cipher: CredentialCipher,
        client_factory: ClientFactory,
        *,
        redis: aioredis.Redis | None = None,
        fetch_timeout: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._cipher = cipher
        self._client_factory = client_factory
        self._redis = redis
        self.fetch_timeout = fetch_timeout
        self._clock = clock
        self.passes = 0
        self.fired_total = 0
        self.failed_total = 0
        self.last_pass_at: datetime | None = None
        self._rule_locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        cipher: CredentialCipher,
        redis: aioredis.Redis | None = None,
        client_factory: ClientFactory | None = None,
    ) -> AutomationEngine:
        def default_client(token: str) -> DownloadApiClient:
            return DownloadApiClient(
                token,
                base_url=settings.api_base_url,
                api_version=settings.api_version,
                timeout=settings.api_timeout_seconds,
            )

        return cls(
            session_factory,
            cipher,
            client_factory or default_client,
            redis=redis,
            fetch_timeout=settings.poll_fetch_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def evaluate_all_rules(self) -> PassSummary:
        """One scheduled pass over every enabled rule."""
        now = self._clock()
        self.passes += 1
        self.last_pass_at = now

        async with self._session_factory() as session:
            result = await session.execute(
                select(AutomationRule, Account.credential_encrypted)
                .join(Account, Account.id == AutomationRule.account_id)
                .where(AutomationRule.enabled.is_(True), Account.is_active.is_(True))
                .order_by(AutomationRule.id)
            )
            rows = [(RuleView.from_row(rule), credential) for rule, credential in result]

        summary = PassSummary()
        by_scope: dict[tuple[int, str, str], list[RuleView]] = defaultdict(list)
        for rule, credential in rows:
            if in_cooldown(rule, now):
                summary.skipped += 1
                summary.outcomes.append(RuleOutcome(rule.id, skipped="cooldown"))
                continue
            if interval_pending(rule, now):
                summary.skipped += 1
                summary.outcomes.append(RuleOutcome(rule.id, skipped="interval"))
                continue
            by_scope[(rule.account_id, rule.target_type, credential)].append(rule)

        for (account_id, kind, credential), rules in by_scope.items():
            outcomes = await self._run_scope(account_id, kind, credential, rules, now, "scheduled")
            for outcome in outcomes:
                summary.outcomes.append(outcome)
                if outcome.skipped:
                    summary.skipped += 1
                    continue
                summary.evaluated += 1
                if outcome.fired:
                    summary.fired += 1
                elif outcome.matched:
                    summary.failed += 1

        self.fired_total += summary.fired
        self.failed_total += summary.failed
        logger.info(
            "automation_pass_completed",
            rules=len(rows),
            evaluated=summary.evaluated,
            skipped=summary.skipped,
            fired=summary.fired,
            failed=summary.failed,
        )
        return summary

    async def execute_rule(self, rule_id: int) -> RuleOutcome:
        """Run one rule now (manual trigger). Interval triggers are bypassed; cooldown is not."""
        now = self._clock()
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(AutomationRule, Account.credential_encrypted)
                    .join(Account, Account.id == AutomationRule.account_id)
                    .where(AutomationRule.id == rule_id)
                )
            ).first()
        if row is None:
            raise LookupError(f"automation rule {rule_id} not found")
        rule, credential = RuleView.from_row(row[0]), row[1]
        if in_cooldown(rule, now):
            return RuleOutcome(rule.id, skipped="cooldown")
        outcomes = await self._run_scope(rule.account_id, rule.target_type, credential, [rule], now, "manual")
        return outcomes[0]

    # ------------------------------------------------------------------
    # Per-scope and per-rule work
    # ------------------------------------------------------------------

    async def _run_scope(
        self,
        account_id: int,
        kind: str,
        credential: str,
        rules: list[RuleView],
        now: datetime,
        execution_type: str,
    ) -> list[RuleOutcome]:
        """Fetch one account's items of one kind and run every rule scoped to them."""
        try:
            token = self._cipher.decrypt(credential)
            client = self._client_factory(token)
        except Exception as exc:
            logger.warning("automation_client_unavailable", account_id=account_id, error=str(exc))
            await self._mark_evaluated(rules, now)
            return [RuleOutcome(rule.id, skipped="fetch_failed") for rule in rules]

        async with client:
            try:
                items = await asyncio.wait_for(
                    client.list_items(kind, include_queued=kind == "torrent"),
                    timeout=self.fetch_timeout,
                )
            except Exception as exc:
                logger.warning(
                    "automation_fetch_failed",
                    account_id=account_id,
                    kind=kind,
                    error=str(exc) or type(exc).__name__,
                )
                await self._mark_evaluated(rules, now)
                return [RuleOutcome(rule.id, skipped="fetch_failed") for rule in rules]

            executor = ActionExecutor(client, account_id=account_id, kind=kind, redis=self._redis)
            outcomes = []
            for rule in rules:
                try:
                    outcome = await self._claim_and_run(rule, items, executor, now, execution_type)
                except Exception:
                    logger.exception("rule_evaluation_failed", rule_id=rule.id, rule_name=rule.name)
                    await self._mark_evaluated([rule], now)
                    outcome = RuleOutcome(rule.id, skipped="error")
                if outcome.removed:
                    items = [item for item in items if item_key(item) not in outcome.removed]
                outcomes.append(outcome)
            return outcomes

    async def _claim_and_run(
        self,
        rule: RuleView,
        items: list[dict[str, Any]],
        executor: ActionExecutor,
        now: datetime,
        execution_type: str,
    ) -> RuleOutcome:
        """Run a rule while holding its lock, re-checking the cooldown against the stored row."""
        async with self._rule_locks[rule.id]:
            async with self._session_factory() as session:
                current = await session.get(AutomationRule, rule.id, populate_existing=True)
                if current is None:
                    return RuleOutcome(rule.id, skipped="deleted")
                rule = RuleView.from_row(current)
            if in_cooldown(rule, now):
                return RuleOutcome(rule.id, skipped="cooldown")
            return await self._run_rule(rule, items, executor, now, execution_type)

    async def _run_rule(
        self,
        rule: RuleView,
        items: list[dict[str, Any]],
        executor: ActionExecutor,
        now: datetime,
        execution_type: str,
    ) -> RuleOutcome:
        tree = parse_conditions(rule.conditions)
        for leaf in invalid_leaves(tree):
            logger.warning("rule_condition_invalid", rule_id=rule.id, rule_name=rule.name, reason=leaf.reason)

        ctx = EvaluationContext(now=now)
        hours = speed_window_hours(tree)
        if hours and items:
            async with self._session_factory() as session:
                ctx.speed_history = await load_speed_history(
                    session, (item_key(item) for item in items), now - timedelta(hours=hours)
                )
        if uses_telemetry(tree) and items:
            async with self._session_factory() as session:
                ctx.telemetry = await shadow_store.get_states(
                    session, rule.account_id, [item_key(item) for item in items]
                )

        matched = matching_items(tree, items, ctx)
        outcome = RuleOutcome(rule.id, matched=len(matched))

        for item in matched:
            try:
                await executor.execute(rule.action, item, rule_name=rule.name)
                outcome.succeeded += 1
                if (rule.action or {}).get("type") == "delete":
                    outcome.removed.add(item_key(item))
            except Exception as exc:
                outcome.failed += 1
                logger.warning(
                    "rule_action_failed",
                    rule_id=rule.id,
                    item_id=item.get("id"),
                    error=str(exc) or type(exc).__name__,
                )

        await self._record(rule, outcome, now, execution_type)
        if matched:
            logger.info(
                "rule_executed",
                rule_id=rule.id,
                rule_name=rule.name,
                execution_type=execution_type,
                matched=outcome.matched,
                failed=outcome.failed,
            )
        return outcome

    async def _record(self, rule: RuleView, outcome: RuleOutcome, now: datetime, execution_type: str) -> None:
        """Write the audit row and rule bookkeeping for one evaluation."""
        values: dict[str, Any] = {"last_evaluated_at": now}
        if outcome.fired:
            values["last_executed_at"] = now
            values["execution_count"] = AutomationRule.execution_count + 1

        async with self._session_factory() as session:
            try:
                await session.execute(update(AutomationRule).where(AutomationRule.id == rule.id).values(**values))
                if outcome.matched:
                    session.add(
                        RuleExecutionLog(
                            rule_id=rule.id,
                            rule_name=rule.name,
                            execution_type=execution_type,
                            items_processed=outcome.matched,
                            success=outcome.failed == 0,
                            error_message=(
                                None if outcome.failed == 0 else f"{outcome.failed} of {outcome.matched} actions failed"
                            ),
                            executed_at=now,
                        )
                    )
                await session.commit()
            except SQLAlchemyError:
                await session.rollback()
                raise

    async def _mark_evaluated(self, rules: list[RuleView], now: datetime) -> None:
        """Stamp ``last_evaluated_at`` for rules that were attempted but could not run."""
        try:
            async with self._session_factory() as session:
                await session.execute(
                    update(AutomationRule)
                    .where(AutomationRule.id.in_([rule.id for rule in rules]))
                    .values(last_evaluated_at=now)
                )
                await session.commit()
        except SQLAlchemyError:
            logger.exception("rule_evaluated_at_update_failed", rule_ids=[rule.id for rule in rules])

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def status(self) -> dict[str, Any]:
        since = self._clock() - timedelta(hours=24)
        async with self._session_factory() as session:
            enabled = (
                await session.execute(
                    select(func.count()).select_from(AutomationRule).where(AutomationRule.enabled.is_(True))
                )
            ).scalar_one()
            executions = (
                await session.execute(
                    select(func.count()).select_from(RuleExecutionLog).where(RuleExecutionLog.executed_at >= since)
                )
            ).scalar_one()
            failed = (
                await session.execute(
                    select(func.count())
                    .select_from(RuleExecutionLog)
                    .where(RuleExecutionLog.executed_at >= since, RuleExecutionLog.success.is_(False))
                )
            ).scalar_one()
        return {
            "rules_enabled": int(enabled),
            "executions_24h": int(executions),
            "failed_executions_24h": int(failed),
            "passes": self.passes,
            "fired_total": self.fired_total,
            "failed_total": self.failed_total,
            "last_pass_at": self.last_pass_at.isoformat() if self.last_pass_at else None,
        }
