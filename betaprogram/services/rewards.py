"""
Beta program: reward ledger collaborator.

The engine never credits currency itself. A committed TaskCompletion is
handed to the configured ``RewardLedger`` as a ``RewardEvent`` after the
engine's own transaction is durable. Delivery is at-least-once: a failed
hand-off is logged, the completion keeps ``reward_dispatched_at = NULL``
and ``redeliver_pending_rewards`` replays it later. The ledger is expected
to dedupe on ``completion_id`` (sent as the Idempotency-Key header by the
HTTP adapter).

Adapters:
    - LoggingRewardLedger: default; writes the event to the log only
    - HttpRewardLedger: POSTs JSON to REWARD_LEDGER_URL via requests
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime, timezone

import requests
from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from betaprogram.models import db
from betaprogram.models.beta import TaskCompletion

logger = logging.getLogger(__name__)

EXTENSION_KEY = "beta_reward_ledger"


# ── Value objects ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RewardEvent:
    """Reward emitted exactly once per (task, tester) completion."""

    tester_id: str
    xp: int
    points: int
    reason: str
    completion_id: int
    task_id: int
    title_id: int

    @classmethod
    def from_completion(cls, completion: TaskCompletion) -> RewardEvent:
        return cls(
            tester_id=completion.tester_id,
            xp=completion.xp_awarded,
            points=completion.points_awarded,
            reason=f"beta_task_completion:{completion.task_id}",
            completion_id=completion.id,
            task_id=completion.task_id,
            title_id=completion.title_id,
        )

    def to_dict(self) -> dict:
        return asdict(self)


class RewardDeliveryError(Exception):
    """Raised by an adapter when the ledger rejected or did not receive an event."""


# ── Ledger adapters ──────────────────────────────────────────────────────────


class RewardLedger(ABC):
    """Interface of the external reward-currency ledger."""

    @abstractmethod
    def emit(self, event: RewardEvent) -> None:
        """Deliver one reward event. Raise on failure."""


class LoggingRewardLedger(RewardLedger):
    """Default ledger for development: records the event in the log."""

    def emit(self, event: RewardEvent) -> None:
        logger.info(
            "Reward event tester=%s xp=%d points=%d reason=%s",
            event.tester_id, event.xp, event.points, event.reason,
            extra={"tester_id": event.tester_id, "title_id": event.title_id,
                   "event_type": "reward"},
        )


class HttpRewardLedger(RewardLedger):
    """POST reward events as JSON to an HTTP ledger endpoint."""

    def __init__(self, url: str, timeout: float = 5.0, session: requests.Session | None = None) -> None:
        self._url = url
        self._timeout = timeout
        self._session = session or requests.Session()

    def emit(self, event: RewardEvent) -> None:
        try:
            resp = self._session.post(
                self._url,
                json=event.to_dict(),
                headers={"Idempotency-Key": f"beta-completion-{event.completion_id}"},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise RewardDeliveryError(f"Reward ledger unreachable: {exc}") from exc
        if resp.status_code >= 400:
            raise RewardDeliveryError(
                f"Reward ledger rejected completion {event.completion_id}: HTTP {resp.status_code}"
            )


# ── Wiring ───────────────────────────────────────────────────────────────────


def init_reward_ledger(app) -> None:
    """Select the reward ledger adapter from config."""
    url = app.config.get("REWARD_LEDGER_URL")
    if url:
        ledger = HttpRewardLedger(url, timeout=app.config.get("REWARD_LEDGER_TIMEOUT", 5.0))
    else:
        ledger = LoggingRewardLedger()
    app.extensions[EXTENSION_KEY] = ledger
    app.logger.info("Reward ledger configured: %s", type(ledger).__name__)


def get_reward_ledger() -> RewardLedger:
    return current_app.extensions[EXTENSION_KEY]


# ── Dispatch ─────────────────────────────────────────────────────────────────


def dispatch_reward(completion: TaskCompletion) -> RewardEvent:
    """
    Hand a committed completion's reward to the ledger.

    Must only be called after the completion row is committed. Ledger
    failures are logged and left for ``redeliver_pending_rewards``; they
    never propagate to the engine call that created the completion.

    Returns:
        The RewardEvent built from the completion.
    """
    event = RewardEvent.from_completion(completion)
    try:
        get_reward_ledger().emit(event)
    except Exception:
        logger.exception(
            "Reward hand-off failed completion_id=%s tester=%s; queued for redelivery",
            completion.id, completion.tester_id,
            extra={"tester_id": completion.tester_id, "title_id": completion.title_id,
                   "event_type": "reward_failed"},
        )
        return event

    completion.reward_dispatched_at = datetime.now(timezone.utc)
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Could not mark reward dispatched completion_id=%s", completion.id)
    return event


def redeliver_pending_rewards(limit: int = 100) -> dict:
    """
    Replay rewards whose hand-off did not succeed.

    Returns:
        {"attempted": int, "delivered": int}
    """
    pending = db.session.execute(
        select(TaskCompletion)
        .where(TaskCompletion.reward_dispatched_at.is_(None))
        .order_by(TaskCompletion.id)
        .limit(limit)
    ).scalars().all()

    delivered = 0
    for completion in pending:
        dispatch_reward(completion)
        if completion.reward_dispatched_at is not None:
            delivered += 1

    logger.info("Reward redelivery attempted=%d delivered=%d", len(pending), delivered)
    return {"attempted": len(pending), "delivered": delivered}
