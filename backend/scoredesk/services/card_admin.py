"""
Card administration
Issuance, administrative disable, the expiry sweep and reporting
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional
import logging
import secrets
import string

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from scoredesk.core.config import get_settings
from scoredesk.core.exceptions import CardConflict
from scoredesk.models import CardStatus, ScratchCard
from scoredesk.services.card_store import normalize_pin, utcnow

logger = logging.getLogger(__name__)

PIN_ALPHABET = string.ascii_uppercase + string.digits
# width of the pin column
MAX_PIN_LENGTH = 32


def generate_pin(length: int) -> str:
    return "".join(secrets.choice(PIN_ALPHABET) for _ in range(length))


def generate_serial_number(prefix: str) -> str:
    return f"{prefix}-{generate_pin(8)}"


@dataclass
class IssuedBatch:
    """Result of an issuance run"""
    created: List[ScratchCard] = field(default_factory=list)
    skipped: int = 0


async def _unused_values(session: AsyncSession, column, make: Callable[[], str], count: int) -> List[str]:
    """Draw count distinct values that are not yet stored in column"""
    values = set()
    while len(values) < count:
        batch = {make() for _ in range(count - len(values))} - values
        result = await session.execute(select(column).where(column.in_(batch)))
        batch -= set(result.scalars().all())
        values |= batch
    return list(values)


async def issue_cards(
    session: AsyncSession,
    quantity: int = 0,
    amount: Optional[float] = None,
    max_usage: Optional[int] = None,
    term_id: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    school_id: Optional[str] = None,
    pins: Optional[Iterable[str]] = None,
) -> IssuedBatch:
    """
    Create Active cards with usage_count 0

    With pins, imports those PINs (skipping existing ones) instead of generating quantity new ones
    """
    settings = get_settings()
    amount = settings.default_card_amount if amount is None else amount
    max_usage = settings.default_max_usage if max_usage is None else max_usage
    school_id = school_id or settings.default_school_id

    if max_usage < 1:
        raise ValueError("max_usage must be at least 1")
    if amount < 0:
        raise ValueError("amount must not be negative")

    # Stored as naive UTC, the form redemption compares against
    if expires_at is not None and expires_at.tzinfo is not None:
        expires_at = expires_at.astimezone(timezone.utc).replace(tzinfo=None)

    batch = IssuedBatch()

    if pins is not None:
        requested = []
        for pin in pins:
            pin = normalize_pin(pin)
            if len(pin) > MAX_PIN_LENGTH:
                raise ValueError(f"pin must be at most {MAX_PIN_LENGTH} characters")
            if pin and pin not in requested:
                requested.append(pin)
        result = await session.execute(select(ScratchCard.pin).where(ScratchCard.pin.in_(requested)))
        existing = set(result.scalars().all())
        new_pins = [pin for pin in requested if pin not in existing]
        batch.skipped = len(requested) - len(new_pins)
    else:
        if quantity < 1:
            raise ValueError("quantity must be at least 1")
        new_pins = await _unused_values(
            session, ScratchCard.pin, lambda: generate_pin(settings.pin_length), quantity
        )

    serials = await _unused_values(
        session,
        ScratchCard.serial_number,
        lambda: generate_serial_number(settings.serial_prefix),
        len(new_pins),
    )

    for pin, serial_number in zip(new_pins, serials):
        card = ScratchCard(
            pin=pin,
            serial_number=serial_number,
            amount=amount,
            status=CardStatus.ACTIVE.value,
            max_usage=max_usage,
            usage_count=0,
            term_id=term_id,
            school_id=school_id,
            expires_at=expires_at,
        )
        session.add(card)
        batch.created.append(card)

    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        logger.warning("Scratch card issuance collided with an existing PIN or serial number")
        raise CardConflict() from exc
    logger.info(f"Issued scratch cards: created {len(batch.created)}, skipped {batch.skipped}")
    return batch


async def disable_card(session: AsyncSession, serial_number: str):
    """
    Active -> Disabled

    Returns (card, changed); card is None when the serial is unknown.
    Terminal cards are left as they are.
    """
    result = await session.execute(
        update(ScratchCard)
        .where(
            ScratchCard.serial_number == serial_number,
            ScratchCard.status == CardStatus.ACTIVE.value,
        )
        .values(status=CardStatus.DISABLED.value, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    changed = result.rowcount == 1

    card = (
        await session.execute(
            select(ScratchCard)
            .where(ScratchCard.serial_number == serial_number)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()

    if changed:
        logger.info(f"Card {serial_number} disabled")
    return card, changed


async def expire_cards(session: AsyncSession, now: Optional[datetime] = None) -> int:
    """Expiry sweep: Active cards past expires_at become Expired"""
    now = now or utcnow()
    result = await session.execute(
        update(ScratchCard)
        .where(
            ScratchCard.status == CardStatus.ACTIVE.value,
            ScratchCard.expires_at.isnot(None),
            ScratchCard.expires_at <= now,
        )
        .values(status=CardStatus.EXPIRED.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount or 0


async def list_cards(
    session: AsyncSession,
    status: Optional[CardStatus] = None,
    term_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[ScratchCard]:
    stmt = select(ScratchCard)
    if status is not None:
        stmt = stmt.where(ScratchCard.status == status.value)
    if term_id is not None:
        stmt = stmt.where(ScratchCard.term_id == term_id)
    stmt = stmt.order_by(ScratchCard.created_at.desc(), ScratchCard.serial_number).limit(limit).offset(offset)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def card_stats(session: AsyncSession) -> dict:
    """Card counts per status and revenue from cards redeemed at least once"""
    result = await session.execute(
        select(ScratchCard.status, func.count(ScratchCard.id)).group_by(ScratchCard.status)
    )
    counts = {status.value: 0 for status in CardStatus}
    for status, count in result.all():
        counts[status] = count

    revenue = await session.scalar(
        select(func.coalesce(func.sum(ScratchCard.amount), 0.0)).where(ScratchCard.usage_count > 0)
    )

    return {
        "total": sum(counts.values()),
        "by_status": counts,
        "revenue": float(revenue or 0.0),
    }
