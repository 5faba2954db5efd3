"""
Card redemption engine

Validates a presented PIN, consumes one use of the card through the store's
conditional update and reports a structured outcome. Business rejections are
returned as RedemptionFailure, never raised; StoreUnavailable propagates.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable, Literal, Optional, Union
import enum
import logging

from scoredesk.models import CardStatus
from scoredesk.services.card_store import (
    CardSnapshot,
    CardStore,
    Redemption,
    mask_pin,
    normalize_pin,
    utcnow,
)

logger = logging.getLogger(__name__)


class FailureReason(str, enum.Enum):
    NOT_FOUND = "NotFound"
    ALREADY_USED = "AlreadyUsed"
    EXPIRED = "Expired"
    DISABLED = "Disabled"
    TERM_MISMATCH = "TermMismatch"
    STUDENT_MISMATCH = "StudentMismatch"
    USAGE_LIMIT_EXCEEDED = "UsageLimitExceeded"


FAILURE_MESSAGES = {
    FailureReason.NOT_FOUND: "Invalid PIN.",
    FailureReason.ALREADY_USED: "This card has already been used.",
    FailureReason.EXPIRED: "This card has expired.",
    FailureReason.DISABLED: "This card is no longer valid.",
    FailureReason.TERM_MISMATCH: "This card is not valid for the selected term.",
    FailureReason.STUDENT_MISMATCH: "This card has already been used for another student.",
    FailureReason.USAGE_LIMIT_EXCEEDED: "This card has already been used.",
}

SUCCESS_MESSAGE = "Card redeemed successfully."

_STATUS_REJECTIONS = {
    CardStatus.USED: FailureReason.ALREADY_USED,
    CardStatus.EXPIRED: FailureReason.EXPIRED,
    CardStatus.DISABLED: FailureReason.DISABLED,
}


@dataclass(frozen=True)
class RedemptionContext:
    requesting_user_id: Optional[str] = None
    student_id: Optional[str] = None
    term_id: Optional[str] = None


@dataclass(frozen=True)
class RedemptionSuccess:
    usage_count: int
    max_usage: int
    serial_number: str
    message: str = SUCCESS_MESSAGE
    success: Literal[True] = field(default=True, init=False)

    @property
    def remaining_uses(self) -> int:
        return self.max_usage - self.usage_count

    @property
    def is_expired(self) -> bool:
        return False

    def to_dict(self) -> dict:
        return {
            "success": True,
            "message": self.message,
            "usage_count": self.usage_count,
            "max_usage": self.max_usage,
            "remaining_uses": self.remaining_uses,
            "is_expired": False,
        }


@dataclass(frozen=True)
class RedemptionFailure:
    reason: FailureReason
    message: str
    success: Literal[False] = field(default=False, init=False)

    @classmethod
    def of(cls, reason: FailureReason) -> "RedemptionFailure":
        return cls(reason=reason, message=FAILURE_MESSAGES[reason])

    @property
    def is_expired(self) -> bool:
        return self.reason is FailureReason.EXPIRED

    def to_dict(self) -> dict:
        return {
            "success": False,
            "message": self.message,
            "reason": self.reason.value,
            "is_expired": self.is_expired,
        }


RedemptionResult = Union[RedemptionSuccess, RedemptionFailure]


@dataclass(frozen=True)
class CardSummary:
    """Read-only view of a card for diagnostics"""

    serial_number: str
    status: CardStatus
    usage_count: int
    max_usage: int
    remaining_uses: int
    is_expired: bool
    term_id: Optional[str] = None
    used_by: Optional[str] = None
    used_for_student_id: Optional[str] = None
    used_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data


class RedemptionEngine:
    """Redeems scratch card PINs against a CardStore."""

    def __init__(
        self,
        store: CardStore,
        require_term_for_bound_cards: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._require_term = require_term_for_bound_cards
        self._clock = clock

    async def redeem(
        self, pin: str, context: Optional[RedemptionContext] = None
    ) -> RedemptionResult:
        """Consume one use of the card behind pin.

        Raises ValueError for an empty PIN and StoreUnavailable when the
        store cannot be reached.
        """
        pin = normalize_pin(pin)
        if not pin:
            raise ValueError("pin must not be empty")
        context = context or RedemptionContext()
        now = self._clock()

        card = await self._store.find_by_pin(pin)
        if card is None:
            logger.info(f"Redemption rejected for PIN {mask_pin(pin)}: not found")
            return RedemptionFailure.of(FailureReason.NOT_FOUND)

        reason = self._rejection(card, context, now)
        if reason is not None:
            logger.info(f"Redemption of card {card.serial_number} rejected: {reason.value}")
            return RedemptionFailure.of(reason)

        updated = await self._store.conditional_update(
            card.id,
            Redemption(
                now=now,
                term_id=context.term_id,
                used_by=context.requesting_user_id,
                student_id=context.student_id,
                require_term=self._require_term,
            ),
        )

        if updated is None:
            # Lost a race: report whatever precondition fails now
            latest = await self._store.find_by_pin(pin)
            if latest is None:
                reason = FailureReason.NOT_FOUND
            else:
                reason = self._rejection(latest, context, now) or FailureReason.USAGE_LIMIT_EXCEEDED
            logger.info(f"Redemption of card {card.serial_number} lost a concurrent update: {reason.value}")
            return RedemptionFailure.of(reason)

        logger.info(
            f"Card {updated.serial_number} redeemed "
            f"({updated.usage_count}/{updated.max_usage}, status {updated.status.value})"
        )
        return RedemptionSuccess(
            usage_count=updated.usage_count,
            max_usage=updated.max_usage,
            serial_number=updated.serial_number,
        )

    async def peek(self, pin: str) -> CardSummary | None:
        """Current state of a card without touching it. Not a redemption precheck."""
        pin = normalize_pin(pin)
        if not pin:
            raise ValueError("pin must not be empty")

        card = await self._store.find_by_pin(pin)
        if card is None:
            return None

        return CardSummary(
            serial_number=card.serial_number,
            status=card.status,
            usage_count=card.usage_count,
            max_usage=card.max_usage,
            remaining_uses=card.remaining_uses,
            is_expired=card.status is CardStatus.EXPIRED or (
                card.status is CardStatus.ACTIVE and card.is_past_expiry(self._clock())
            ),
            term_id=card.term_id,
            used_by=card.used_by,
            used_for_student_id=card.used_for_student_id,
            used_at=card.used_at,
            expires_at=card.expires_at,
        )

    def _rejection(
        self, card: CardSnapshot, context: RedemptionContext, now: datetime
    ) -> FailureReason | None:
        """First failing precondition, in order: status, expiry, term, student, usage count"""
        if card.status in _STATUS_REJECTIONS:
            return _STATUS_REJECTIONS[card.status]
        if card.is_past_expiry(now):
            return FailureReason.EXPIRED
        if not card.accepts_term(context.term_id, self._require_term):
            return FailureReason.TERM_MISMATCH
        if not card.accepts_student(context.student_id):
            return FailureReason.STUDENT_MISMATCH
        if card.usage_count >= card.max_usage:
            return FailureReason.USAGE_LIMIT_EXCEEDED
        return None
