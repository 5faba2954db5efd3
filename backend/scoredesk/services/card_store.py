"""
Card store
Persistence boundary of the redemption engine: a PIN lookup and a single
conditional update that consumes one use of a card.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol
import logging

from sqlalchemy import case, or_, select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from scoredesk.core.exceptions import StoreUnavailable
from scoredesk.models import CardRedemption, CardStatus, ScratchCard

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in DateTime columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_pin(pin: Optional[str]) -> str:
    return (pin or "").strip().upper()


def mask_pin(pin: str) -> str:
    """Keep only the last 4 characters for logs"""
    return "****" + pin[-4:] if len(pin) > 4 else "****"


@dataclass(frozen=True)
class CardSnapshot:
    """Immutable copy of a card row as read from the store"""

    id: str
    pin: str
    serial_number: str
    amount: float
    status: CardStatus
    max_usage: int
    usage_count: int
    term_id: Optional[str] = None
    used_by: Optional[str] = None
    used_for_student_id: Optional[str] = None
    used_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @property
    def remaining_uses(self) -> int:
        return max(self.max_usage - self.usage_count, 0)

    def is_past_expiry(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def accepts_term(self, term_id: Optional[str], require_term: bool = True) -> bool:
        """Whether a redemption for term_id may use this card"""
        if self.term_id is None:
            return True
        if term_id is None:
            return not require_term
        return self.term_id == term_id

    def accepts_student(self, student_id: Optional[str]) -> bool:
        """A card first used for one student stays bound to that student"""
        if self.used_for_student_id is None or student_id is None:
            return True
        return self.used_for_student_id == student_id

    @classmethod
    def from_model(cls, card: ScratchCard) -> "CardSnapshot":
        return cls(
            id=card.id,
            pin=card.pin,
            serial_number=card.serial_number,
            amount=card.amount,
            status=CardStatus(card.status),
            max_usage=card.max_usage,
            usage_count=card.usage_count,
            term_id=card.term_id,
            used_by=card.used_by,
            used_for_student_id=card.used_for_student_id,
            used_at=card.used_at,
            expires_at=card.expires_at,
        )


@dataclass(frozen=True)
class Redemption:
    """Everything the store needs to consume one use of a card"""

    now: datetime
    term_id: Optional[str] = None
    used_by: Optional[str] = None
    student_id: Optional[str] = None
    require_term: bool = True


class CardStore(Protocol):
    """Contract the redemption engine depends on.

    conditional_update must apply its preconditions and its effect as one
    atomic step and return None when the preconditions no longer hold.
    """

    async def find_by_pin(
        self, pin: str
    ) -> CardSnapshot | None:  # pragma: no cover - Protocol
        ...

    async def conditional_update(
        self, card_id: str, redemption: Redemption
    ) -> CardSnapshot | None:  # pragma: no cover - Protocol
        ...


class SqlAlchemyCardStore:
    """CardStore backed by the scratch_cards table.

    Every call uses its own short transaction; nothing is cached between calls.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def find_by_pin(self, pin: str) -> CardSnapshot | None:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(ScratchCard).where(ScratchCard.pin == pin)
                )
                card = result.scalar_one_or_none()
                return CardSnapshot.from_model(card) if card else None
        except DBAPIError as exc:
            logger.exception("Card lookup failed")
            raise StoreUnavailable("card lookup failed") from exc

    async def conditional_update(
        self, card_id: str, redemption: Redemption
    ) -> CardSnapshot | None:
        next_count = ScratchCard.usage_count + 1

        conditions = [
            ScratchCard.id == card_id,
            ScratchCard.status == CardStatus.ACTIVE.value,
            ScratchCard.usage_count < ScratchCard.max_usage,
            or_(ScratchCard.expires_at.is_(None), ScratchCard.expires_at > redemption.now),
        ]
        if redemption.term_id is not None:
            conditions.append(
                or_(ScratchCard.term_id.is_(None), ScratchCard.term_id == redemption.term_id)
            )
        elif redemption.require_term:
            conditions.append(ScratchCard.term_id.is_(None))
        if redemption.student_id is not None:
            conditions.append(
                or_(
                    ScratchCard.used_for_student_id.is_(None),
                    ScratchCard.used_for_student_id == redemption.student_id,
                )
            )

        # SET expressions read the pre-update row, so the status flip and the
        # increment land in the same statement
        values = {
            "usage_count": next_count,
            "status": case(
                (next_count >= ScratchCard.max_usage, CardStatus.USED.value),
                else_=CardStatus.ACTIVE.value,
            ),
            "used_at": redemption.now,
            "updated_at": redemption.now,
        }
        if redemption.used_by is not None:
            values["used_by"] = redemption.used_by
        if redemption.student_id is not None:
            values["used_for_student_id"] = redemption.student_id

        stmt = (
            update(ScratchCard)
            .where(*conditions)
            .values(**values)
            .returning(ScratchCard)
            .execution_options(synchronize_session=False)
        )

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    card = result.scalar_one_or_none()
                    if card is None:
                        return None

                    snapshot = CardSnapshot.from_model(card)
                    session.add(
                        CardRedemption(
                            card_id=snapshot.id,
                            usage_number=snapshot.usage_count,
                            used_by=redemption.used_by,
                            student_id=redemption.student_id,
                            term_id=redemption.term_id,
                            redeemed_at=redemption.now,
                        )
                    )
                return snapshot
        except DBAPIError as exc:
            logger.exception("Conditional card update failed")
            raise StoreUnavailable("card update failed") from exc
