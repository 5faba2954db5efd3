"""
Scratch card data models
Tables: scratch_cards, card_redemptions
"""
from sqlalchemy import Column, Integer, String, DateTime, Float, ForeignKey
from sqlalchemy.sql import func
from scoredesk.core.database import Base
import enum
import uuid


class CardStatus(str, enum.Enum):
    """Card status"""
    ACTIVE = "Active"        # redeemable
    USED = "Used"            # all uses consumed
    EXPIRED = "Expired"      # swept after expires_at
    DISABLED = "Disabled"    # disabled by an administrator

    @property
    def is_terminal(self) -> bool:
        return self is not CardStatus.ACTIVE


def _new_id() -> str:
    return str(uuid.uuid4())


class ScratchCard(Base):
    """Scratch card table"""
    __tablename__ = "scratch_cards"

    id = Column(String(36), primary_key=True, default=_new_id)

    # Secret presented by the end user, unique and never changed after issuance
    pin = Column(String(32), unique=True, index=True, nullable=False)

    # Printed batch-tracking number, not a security boundary
    serial_number = Column(String(32), unique=True, index=True, nullable=False)

    # Face value, informational only
    amount = Column(Float, nullable=False, default=0.0)

    status = Column(String(16), nullable=False, default=CardStatus.ACTIVE.value, index=True)

    max_usage = Column(Integer, nullable=False, default=1)
    usage_count = Column(Integer, nullable=False, default=0)

    # Optional term binding
    term_id = Column(String(64), nullable=True, index=True)
    school_id = Column(String(64), nullable=True, index=True)

    # Last redeemer; every redemption is kept in card_redemptions
    used_by = Column(String(64), nullable=True)
    used_for_student_id = Column(String(64), nullable=True)
    used_at = Column(DateTime, nullable=True)

    expires_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<ScratchCard(serial_number={self.serial_number}, status={self.status}, usage={self.usage_count}/{self.max_usage})>"


class CardRedemption(Base):
    """Append-only log, one row per successful redemption"""
    __tablename__ = "card_redemptions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    card_id = Column(String(36), ForeignKey("scratch_cards.id"), nullable=False, index=True)

    # usage_count of the card right after this redemption
    usage_number = Column(Integer, nullable=False)

    used_by = Column(String(64), nullable=True)
    student_id = Column(String(64), nullable=True, index=True)
    term_id = Column(String(64), nullable=True)
    redeemed_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<CardRedemption(card_id={self.card_id}, usage_number={self.usage_number})>"
