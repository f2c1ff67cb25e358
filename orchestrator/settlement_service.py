"""
Cost settlement: splitting a charge between subscription credits and
points, and the post-generation bookkeeping.

quote() is the pre-check and runs before any backend is called. settle()
runs after a successful generation. Each of its steps commits on its own,
and a failed step is logged and reported in SettlementResult without
blocking the steps after it. The bookkeeping is deliberately not atomic
across steps.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from dotenv import load_dotenv
from sqlalchemy import select, update

from orchestrator.database import SessionLocal
from orchestrator.errors import InsufficientBalanceError, SettlementStepError, ValidationError
from orchestrator.models import CreatorEarning, GenerationRecord, LedgerEntry, SubscriptionCreditPool, Template, User

logger = logging.getLogger(__name__)

load_dotenv()
CREATOR_PAYOUT_PER_POINT = float(os.getenv("CREATOR_PAYOUT_PER_POINT", "0.10"))

MAX_STORED_REFERENCES = 5
DATA_URI_PREVIEW_CHARS = 500
MAX_REFERENCE_CHARS = 5_000_000


def split_charge(cost: int, credits_allocated: int, credits_used: int) -> tuple:
    """
    Splits a cost into (from_subscription, from_points).

    Subscription credits are spent first; the remainder comes from points.
    """
    remaining = max(0, (credits_allocated or 0) - (credits_used or 0))
    if remaining >= cost:
        return cost, 0
    return remaining, cost - remaining


@dataclass
class ChargeQuote:
    user_id: int
    cost: int
    from_subscription: int
    from_points: int
    subscription_id: Optional[int] = None


@dataclass
class SettledGeneration:
    """What was produced, as recorded by settlement."""
    user_id: int
    visible_prompt: str
    image_url: str
    quality: str
    aspect_ratio: str
    backend_key: Optional[str] = None
    negative_prompt: str = ""
    reference_images: list = field(default_factory=list)
    template_id: Optional[int] = None


class StepStatus(Enum):
    OK = "ok"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class StepOutcome:
    status: StepStatus
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is not StepStatus.FAILED


@dataclass
class SettlementResult:
    charged_from_subscription: int
    charged_from_points: int
    record_step: StepOutcome
    subscription_step: StepOutcome
    points_step: StepOutcome
    ledger_step: StepOutcome
    earning_step: StepOutcome
    record_id: Optional[int] = None
    created_at: Optional[datetime] = None

    def degraded_steps(self) -> list:
        steps = {
            "record": self.record_step,
            "subscription": self.subscription_step,
            "points": self.points_step,
            "ledger": self.ledger_step,
            "earning": self.earning_step,
        }
        return [name for name, outcome in steps.items() if not outcome.ok]


def _aware(moment: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; they are stored as UTC
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def stored_reference_images(reference_images: list) -> list:
    """Reference list as kept on the record: URLs in full, data URIs as a short preview."""
    stored = []
    for image in reference_images[:MAX_STORED_REFERENCES]:
        if not isinstance(image, str) or len(image) > MAX_REFERENCE_CHARS:
            continue
        stored.append(image[:DATA_URI_PREVIEW_CHARS] if image.startswith("data:") else image)
    return stored


class SettlementService:
    def __init__(self, session_factory=SessionLocal, creator_payout_per_point: float = CREATOR_PAYOUT_PER_POINT):
        self.session_factory = session_factory
        self.creator_payout_per_point = creator_payout_per_point

    def quote(self, user_id: int, cost: int) -> ChargeQuote:
        """
        Pre-check: works out the split and verifies the point balance covers
        the part subscription credits don't.

        Raises:
            ValidationError: Unknown user
            InsufficientBalanceError: Points can't cover cost - subscription credits
        """
        with self.session_factory() as session:
            user = session.get(User, user_id)
            if user is None:
                raise ValidationError(f"User {user_id} not found")

            pool = self._usable_pool(session, user_id)
            if pool is not None:
                from_subscription, from_points = split_charge(cost, pool.credits_allocated, pool.credits_used)
            else:
                from_subscription, from_points = 0, cost

            if (user.points or 0) < from_points:
                if from_subscription:
                    details = f"Subscription credits partially cover this. You need {from_points} more points."
                else:
                    details = "Please add more points or subscribe to a plan."
                raise InsufficientBalanceError(
                    f"Insufficient points. {details}",
                    required_points=from_points,
                    available_points=user.points or 0,
                )

            return ChargeQuote(
                user_id=user_id,
                cost=cost,
                from_subscription=from_subscription,
                from_points=from_points,
                subscription_id=pool.id if pool is not None and from_subscription else None,
            )

    def _usable_pool(self, session, user_id: int) -> Optional[SubscriptionCreditPool]:
        pool = session.scalar(
            select(SubscriptionCreditPool).where(
                SubscriptionCreditPool.user_id == user_id,
                SubscriptionCreditPool.status == "active",
            )
        )
        if pool is None:
            return None
        if pool.end_date is not None and _aware(pool.end_date) < datetime.now(timezone.utc):
            try:
                pool.status = "expired"
                session.commit()
                logger.info("Subscription %s for user %s expired", pool.id, user_id)
            except Exception as e:
                session.rollback()
                logger.error("Failed to mark subscription %s expired: %s", pool.id, e)
            return None
        return pool

    def settle(self, quote: ChargeQuote, generation: SettledGeneration) -> SettlementResult:
        """
        Runs the post-generation steps: record, subscription debit, point
        debit, ledger entry, creator earning. Never raises.
        """
        record_holder = {}

        def write_record(session):
            record_holder["record"] = self._write_record(session, quote, generation)

        record_step = self._run_step("record", write_record)

        if quote.from_subscription and quote.subscription_id is not None:
            subscription_step = self._run_step("subscription", lambda session: self._debit_subscription(session, quote))
        else:
            subscription_step = StepOutcome(StepStatus.SKIPPED)

        points_step = self._run_step("points", lambda session: self._debit_points(session, quote))
        ledger_step = self._run_step("ledger", lambda session: self._write_ledger(session, quote, generation))

        if generation.template_id is not None:
            earning_step = self._run_step("earning", lambda session: self._accrue_earning(session, quote, generation))
        else:
            earning_step = StepOutcome(StepStatus.SKIPPED)

        record = record_holder.get("record")
        return SettlementResult(
            charged_from_subscription=quote.from_subscription,
            charged_from_points=quote.from_points,
            record_step=record_step,
            subscription_step=subscription_step,
            points_step=points_step,
            ledger_step=ledger_step,
            earning_step=earning_step,
            record_id=record.id if record is not None else None,
            created_at=_aware(record.created_at) if record is not None else None,
        )

    def _run_step(self, name: str, step: Callable) -> StepOutcome:
        try:
            with self.session_factory() as session:
                step(session)
            return StepOutcome(StepStatus.OK)
        except Exception as e:
            error = e if isinstance(e, SettlementStepError) else SettlementStepError(name, str(e))
            logger.error("Settlement step failed - %s", error)
            return StepOutcome(StepStatus.FAILED, error=str(error))

    def _write_record(self, session, quote: ChargeQuote, generation: SettledGeneration) -> GenerationRecord:
        record = GenerationRecord(
            user_id=generation.user_id,
            template_id=generation.template_id,
            prompt=generation.visible_prompt,
            negative_prompt=generation.negative_prompt or "",
            reference_images=stored_reference_images(generation.reference_images),
            image_url=generation.image_url,
            quality=generation.quality,
            aspect_ratio=generation.aspect_ratio,
            points_spent=quote.cost,
            status="completed",
            backend_key=generation.backend_key,
        )
        session.add(record)
        session.commit()
        session.refresh(record)
        logger.info("Generation record created: %s", record.id)
        return record

    def _debit_subscription(self, session, quote: ChargeQuote) -> None:
        result = session.execute(
            update(SubscriptionCreditPool)
            .where(
                SubscriptionCreditPool.id == quote.subscription_id,
                SubscriptionCreditPool.credits_allocated - SubscriptionCreditPool.credits_used >= quote.from_subscription,
            )
            .values(credits_used=SubscriptionCreditPool.credits_used + quote.from_subscription)
        )
        if result.rowcount != 1:
            session.rollback()
            raise SettlementStepError("subscription", f"credits no longer cover {quote.from_subscription}")
        session.commit()
        logger.info("Used %d subscription credits for user %s", quote.from_subscription, quote.user_id)

    def _debit_points(self, session, quote: ChargeQuote) -> None:
        # Conditional decrement: two requests racing on one stale balance can't both spend it
        result = session.execute(
            update(User)
            .where(User.id == quote.user_id, User.points >= quote.from_points)
            .values(points=User.points - quote.from_points, uses_count=User.uses_count + 1)
        )
        if result.rowcount != 1:
            session.rollback()
            raise SettlementStepError("points", f"balance no longer covers {quote.from_points} points")
        session.commit()
        logger.info("Deducted %d points from user %s", quote.from_points, quote.user_id)

    def _write_ledger(self, session, quote: ChargeQuote, generation: SettledGeneration) -> None:
        if quote.from_subscription:
            description = (f"Image generation ({generation.quality}) - {quote.from_subscription} from "
                           f"subscription, {quote.from_points} from points")
        else:
            description = f"Image generation ({generation.quality})"

        session.add(LedgerEntry(
            user_id=quote.user_id,
            amount=quote.from_points,  # points only; subscription credits are tracked on the pool
            direction="debit",
            description=description,
            gateway="Subscription" if quote.from_subscription else "System",
            status="success",
        ))
        session.commit()

    def _accrue_earning(self, session, quote: ChargeQuote, generation: SettledGeneration) -> None:
        template = session.get(Template, generation.template_id)
        if template is None:
            return
        template.use_count = (template.use_count or 0) + 1

        amount = quote.cost * self.creator_payout_per_point
        if template.creator_id and amount > 0:
            session.add(CreatorEarning(creator_id=template.creator_id, template_id=template.id, amount=amount))
            logger.info("Creator %s earned %.2f from template %s", template.creator_id, amount, template.id)
        session.commit()
