"""
Scratch card API
Public redemption plus admin issuance and management
"""
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field
from datetime import datetime
from typing import Annotated, List, Optional
from scoredesk.core.database import get_db, async_session
from scoredesk.core.config import get_settings
from scoredesk.core.exceptions import CardConflict, StoreUnavailable
from scoredesk.core.security import verify_rate_limiter, get_current_admin
from scoredesk.models import CardStatus
from scoredesk.services.card_store import CardStore, SqlAlchemyCardStore
from scoredesk.services.redemption import RedemptionContext, RedemptionEngine
from scoredesk.services import card_admin
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/cards", tags=["Scratch cards"])

STORE_UNAVAILABLE_DETAIL = "Card service is temporarily unavailable, please try again"


# -------- Dependencies --------

def get_card_store() -> CardStore:
    return SqlAlchemyCardStore(async_session)


def get_redemption_engine(store: CardStore = Depends(get_card_store)) -> RedemptionEngine:
    settings = get_settings()
    return RedemptionEngine(
        store,
        require_term_for_bound_cards=settings.require_term_for_bound_cards,
    )


# -------- Schemas --------

class RedeemRequest(BaseModel):
    """Redeem request body"""
    pin: str = Field(..., min_length=1, max_length=64)
    student_id: Optional[str] = None
    term_id: Optional[str] = None
    user_id: Optional[str] = None


class RedeemResponse(BaseModel):
    """Redeem response body"""
    success: bool
    message: str
    reason: Optional[str] = None
    usage_count: Optional[int] = None
    max_usage: Optional[int] = None
    remaining_uses: Optional[int] = None
    is_expired: bool = False


class PeekRequest(BaseModel):
    pin: str = Field(..., min_length=1, max_length=64)


class CardSummaryResponse(BaseModel):
    serial_number: str
    status: str
    usage_count: int
    max_usage: int
    remaining_uses: int
    is_expired: bool
    term_id: Optional[str] = None
    used_by: Optional[str] = None
    used_for_student_id: Optional[str] = None
    used_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class CreateCardsRequest(BaseModel):
    """Issuance request (admin)"""
    quantity: int = Field(0, ge=0, le=10000)
    pins: Optional[List[Annotated[str, Field(max_length=32)]]] = None  # import pre-printed PINs instead of generating
    amount: Optional[float] = Field(None, ge=0)
    max_usage: Optional[int] = Field(None, ge=1)
    term_id: Optional[str] = None
    school_id: Optional[str] = None
    expires_at: Optional[datetime] = None


class IssuedCard(BaseModel):
    serial_number: str
    pin: str


class CreateCardsResponse(BaseModel):
    """Issuance response"""
    created: int
    skipped: int
    cards: List[IssuedCard]


class CardResponse(BaseModel):
    id: str
    serial_number: str
    pin: str
    amount: float
    status: str
    max_usage: int
    usage_count: int
    term_id: Optional[str] = None
    school_id: Optional[str] = None
    used_by: Optional[str] = None
    used_for_student_id: Optional[str] = None
    used_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class DisableResponse(BaseModel):
    serial_number: str
    status: str
    changed: bool


class CardStatsResponse(BaseModel):
    total: int
    by_status: dict
    revenue: float


# -------- Routes --------

@router.post("/redeem", response_model=RedeemResponse, response_model_exclude_none=True)
async def redeem_card(
    request: RedeemRequest,
    engine: RedemptionEngine = Depends(get_redemption_engine),
    _: bool = Depends(verify_rate_limiter)
):
    """
    Redeem a scratch card PIN

    Business rejections come back with success=false and a reason;
    only a store outage is an HTTP error (503)
    """
    if not request.pin.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="PIN must not be empty"
        )

    context = RedemptionContext(
        requesting_user_id=request.user_id,
        student_id=request.student_id,
        term_id=request.term_id,
    )

    try:
        result = await engine.redeem(request.pin, context)
    except StoreUnavailable:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=STORE_UNAVAILABLE_DETAIL,
            headers={"Retry-After": "5"},
        )

    return RedeemResponse(**result.to_dict())


@router.post("/peek", response_model=CardSummaryResponse)
async def peek_card(
    request: PeekRequest,
    engine: RedemptionEngine = Depends(get_redemption_engine),
    _: str = Depends(get_current_admin)
):
    """Current card state, read only (admin diagnostics)"""
    if not request.pin.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="PIN must not be empty")

    try:
        summary = await engine.peek(request.pin)
    except StoreUnavailable:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=STORE_UNAVAILABLE_DETAIL,
            headers={"Retry-After": "5"},
        )

    if summary is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invalid PIN")
    return CardSummaryResponse(**summary.to_dict())


@router.post("/batch-create", response_model=CreateCardsResponse, status_code=status.HTTP_201_CREATED)
async def batch_create_cards(
    request: CreateCardsRequest,
    _: str = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db)
):
    """
    Issue scratch cards (admin)
    Either generates quantity cards or imports the given pins
    """
    try:
        batch = await card_admin.issue_cards(
            db,
            quantity=request.quantity,
            amount=request.amount,
            max_usage=request.max_usage,
            term_id=request.term_id,
            expires_at=request.expires_at,
            school_id=request.school_id,
            pins=request.pins,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except CardConflict as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)

    return CreateCardsResponse(
        created=len(batch.created),
        skipped=batch.skipped,
        cards=[IssuedCard(serial_number=c.serial_number, pin=c.pin) for c in batch.created],
    )


@router.get("/stats", response_model=CardStatsResponse)
async def get_card_stats(
    _: str = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db)
):
    """Card counts and revenue (admin)"""
    return CardStatsResponse(**await card_admin.card_stats(db))


@router.get("", response_model=List[CardResponse])
async def list_cards(
    card_status: Optional[CardStatus] = Query(None, alias="status"),
    term_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    _: str = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db)
):
    """List cards (admin)"""
    cards = await card_admin.list_cards(db, status=card_status, term_id=term_id, limit=limit, offset=offset)
    return [CardResponse.model_validate(card) for card in cards]


@router.post("/{serial_number}/disable", response_model=DisableResponse)
async def disable_card(
    serial_number: str,
    _: str = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db)
):
    """Disable an Active card (admin); terminal cards are left unchanged"""
    card, changed = await card_admin.disable_card(db, serial_number)
    if card is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Card not found")

    return DisableResponse(serial_number=card.serial_number, status=card.status, changed=changed)
