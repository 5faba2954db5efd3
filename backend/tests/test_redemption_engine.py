from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

import pytest

from scoredesk.core.exceptions import StoreUnavailable
from scoredesk.models import CardStatus
from scoredesk.services.card_store import CardSnapshot, Redemption
from scoredesk.services.redemption import (
    FailureReason,
    RedemptionContext,
    RedemptionEngine,
    RedemptionFailure,
    RedemptionSuccess,
)

NOW = datetime(2026, 3, 1, 9, 0, 0)


def _build_card(
    *,
    pin: str = "ABCD-1234",
    card_id: str | None = None,
    status: CardStatus = CardStatus.ACTIVE,
    max_usage: int = 1,
    usage_count: int = 0,
    term_id: str | None = None,
    expires_at: datetime | None = None,
) -> CardSnapshot:
    return CardSnapshot(
        id=card_id or f"card-{pin}",
        pin=pin,
        serial_number=f"SN-{pin.replace('-', '')}",
        amount=100.0,
        status=status,
        max_usage=max_usage,
        usage_count=usage_count,
        term_id=term_id,
        expires_at=expires_at,
    )


class FakeCardStore:
    """In-memory store; the check-and-set in conditional_update runs without awaiting."""

    def __init__(self, *cards: CardSnapshot) -> None:
        self.cards = {card.pin: card for card in cards}
        self.find_calls: list[str] = []
        self.update_calls: list[tuple[str, Redemption]] = []
        self.fail_with: Exception | None = None

    async def find_by_pin(self, pin: str) -> CardSnapshot | None:
        self.find_calls.append(pin)
        if self.fail_with is not None:
            raise self.fail_with
        # let concurrent callers interleave between read and update
        await asyncio.sleep(0)
        return self.cards.get(pin)

    async def conditional_update(
        self, card_id: str, redemption: Redemption
    ) -> CardSnapshot | None:
        self.update_calls.append((card_id, redemption))
        await asyncio.sleep(0)

        card = next((c for c in self.cards.values() if c.id == card_id), None)
        if (
            card is None
            or card.status is not CardStatus.ACTIVE
            or card.usage_count >= card.max_usage
            or card.is_past_expiry(redemption.now)
            or not card.accepts_term(redemption.term_id, redemption.require_term)
            or not card.accepts_student(redemption.student_id)
        ):
            return None

        usage_count = card.usage_count + 1
        updated = replace(
            card,
            usage_count=usage_count,
            status=CardStatus.USED if usage_count >= card.max_usage else CardStatus.ACTIVE,
            used_at=redemption.now,
            used_by=redemption.used_by or card.used_by,
            used_for_student_id=redemption.student_id or card.used_for_student_id,
        )
        self.cards[card.pin] = updated
        return updated


class RacingCardStore(FakeCardStore):
    """Conditional update always loses, while reads keep showing a redeemable card."""

    async def conditional_update(
        self, card_id: str, redemption: Redemption
    ) -> CardSnapshot | None:
        self.update_calls.append((card_id, redemption))
        return None


@dataclass
class EngineFixture:
    engine: RedemptionEngine
    store: FakeCardStore


def _build_fixture(*cards: CardSnapshot, require_term: bool = True) -> EngineFixture:
    store = FakeCardStore(*cards)
    engine = RedemptionEngine(store, require_term_for_bound_cards=require_term, clock=lambda: NOW)
    return EngineFixture(engine=engine, store=store)


async def test_single_use_card_end_to_end() -> None:
    fixture = _build_fixture(_build_card())

    first = await fixture.engine.redeem("ABCD-1234", RedemptionContext(student_id="STU001"))

    assert isinstance(first, RedemptionSuccess)
    assert first.to_dict() == {
        "success": True,
        "message": "Card redeemed successfully.",
        "usage_count": 1,
        "max_usage": 1,
        "remaining_uses": 0,
        "is_expired": False,
    }
    card = fixture.store.cards["ABCD-1234"]
    assert card.status is CardStatus.USED
    assert card.used_for_student_id == "STU001"

    second = await fixture.engine.redeem("ABCD-1234", RedemptionContext(student_id="STU001"))

    assert isinstance(second, RedemptionFailure)
    assert second.success is False
    assert second.reason is FailureReason.ALREADY_USED
    assert second.message == "This card has already been used."


async def test_multi_use_card_counts_down_and_terminates_on_last_use() -> None:
    fixture = _build_fixture(_build_card(max_usage=3))

    remaining = []
    statuses = []
    for _ in range(3):
        result = await fixture.engine.redeem("ABCD-1234")
        assert result.success is True
        remaining.append(result.remaining_uses)
        statuses.append(fixture.store.cards["ABCD-1234"].status)

    assert remaining == [2, 1, 0]
    assert statuses == [CardStatus.ACTIVE, CardStatus.ACTIVE, CardStatus.USED]

    fourth = await fixture.engine.redeem("ABCD-1234")
    assert fourth.reason is FailureReason.ALREADY_USED


async def test_used_card_rejection_is_repeatable_and_writes_nothing() -> None:
    used_at = NOW - timedelta(days=2)
    card = replace(
        _build_card(status=CardStatus.USED, usage_count=1),
        used_at=used_at,
    )
    fixture = _build_fixture(card)

    reasons = [
        (await fixture.engine.redeem("ABCD-1234")).reason for _ in range(3)
    ]

    assert reasons == [FailureReason.ALREADY_USED] * 3
    assert fixture.store.update_calls == []
    assert fixture.store.cards["ABCD-1234"].usage_count == 1
    assert fixture.store.cards["ABCD-1234"].used_at == used_at


async def test_term_mismatch_leaves_card_untouched() -> None:
    fixture = _build_fixture(_build_card(term_id="T1"))

    result = await fixture.engine.redeem("ABCD-1234", RedemptionContext(term_id="T2"))

    assert result.reason is FailureReason.TERM_MISMATCH
    assert result.message == "This card is not valid for the selected term."
    assert fixture.store.update_calls == []
    assert fixture.store.cards["ABCD-1234"].usage_count == 0

    matched = await fixture.engine.redeem("ABCD-1234", RedemptionContext(term_id="T1"))
    assert matched.success is True


async def test_term_bound_card_without_term_is_rejected_by_default() -> None:
    fixture = _build_fixture(_build_card(term_id="T1"))

    result = await fixture.engine.redeem("ABCD-1234")

    assert result.reason is FailureReason.TERM_MISMATCH
    assert fixture.store.update_calls == []


async def test_term_bound_card_without_term_is_accepted_when_policy_allows() -> None:
    fixture = _build_fixture(_build_card(term_id="T1"), require_term=False)

    result = await fixture.engine.redeem("ABCD-1234")

    assert result.success is True
    assert fixture.store.update_calls[0][1].require_term is False


async def test_unbound_card_accepts_any_term() -> None:
    fixture = _build_fixture(_build_card())

    result = await fixture.engine.redeem("ABCD-1234", RedemptionContext(term_id="T9"))

    assert result.success is True


async def test_unknown_pin_is_not_found_without_writes() -> None:
    fixture = _build_fixture(_build_card())

    result = await fixture.engine.redeem("ZZZZ-0000")

    assert result.reason is FailureReason.NOT_FOUND
    assert result.message == "Invalid PIN."
    assert result.to_dict() == {
        "success": False,
        "message": "Invalid PIN.",
        "reason": "NotFound",
        "is_expired": False,
    }
    assert fixture.store.update_calls == []


@pytest.mark.parametrize(
    ("status", "reason"),
    [
        (CardStatus.USED, FailureReason.ALREADY_USED),
        (CardStatus.EXPIRED, FailureReason.EXPIRED),
        (CardStatus.DISABLED, FailureReason.DISABLED),
    ],
)
async def test_terminal_status_maps_to_reason(status: CardStatus, reason: FailureReason) -> None:
    fixture = _build_fixture(_build_card(status=status))

    result = await fixture.engine.redeem("ABCD-1234")

    assert result.reason is reason
    assert result.is_expired is (reason is FailureReason.EXPIRED)
    assert fixture.store.update_calls == []


async def test_status_is_checked_before_term() -> None:
    fixture = _build_fixture(_build_card(status=CardStatus.DISABLED, term_id="T1"))

    result = await fixture.engine.redeem("ABCD-1234", RedemptionContext(term_id="T2"))

    assert result.reason is FailureReason.DISABLED


async def test_active_card_past_expiry_is_expired_without_mutation() -> None:
    fixture = _build_fixture(_build_card(expires_at=NOW - timedelta(minutes=1)))

    result = await fixture.engine.redeem("ABCD-1234")

    assert result.reason is FailureReason.EXPIRED
    assert result.to_dict()["is_expired"] is True
    assert fixture.store.update_calls == []
    assert fixture.store.cards["ABCD-1234"].status is CardStatus.ACTIVE


async def test_count_at_limit_while_active_is_usage_limit_exceeded() -> None:
    fixture = _build_fixture(_build_card(max_usage=2, usage_count=2))

    result = await fixture.engine.redeem("ABCD-1234")

    assert result.reason is FailureReason.USAGE_LIMIT_EXCEEDED
    assert result.message == "This card has already been used."
    assert fixture.store.update_calls == []


async def test_concurrent_redemptions_of_single_use_card_succeed_once() -> None:
    fixture = _build_fixture(_build_card())

    results = await asyncio.gather(
        fixture.engine.redeem("ABCD-1234", RedemptionContext(student_id="STU001")),
        fixture.engine.redeem("ABCD-1234", RedemptionContext(student_id="STU002")),
    )

    successes = [r for r in results if r.success]
    failures = [r for r in results if not r.success]
    assert len(successes) == 1
    assert len(failures) == 1
    assert failures[0].reason in (
        FailureReason.ALREADY_USED,
        FailureReason.USAGE_LIMIT_EXCEEDED,
    )
    # both passed the read check before either update landed
    assert len(fixture.store.update_calls) == 2
    assert fixture.store.cards["ABCD-1234"].usage_count == 1


async def test_concurrent_redemptions_never_exceed_max_usage() -> None:
    fixture = _build_fixture(_build_card(max_usage=3))

    results = await asyncio.gather(
        *(fixture.engine.redeem("ABCD-1234") for _ in range(6))
    )

    assert sum(1 for r in results if r.success) == 3
    assert sorted(r.remaining_uses for r in results if r.success) == [0, 1, 2]
    card = fixture.store.cards["ABCD-1234"]
    assert card.usage_count == 3
    assert card.status is CardStatus.USED


async def test_lost_update_with_unchanged_card_reports_usage_limit() -> None:
    store = RacingCardStore(_build_card())
    engine = RedemptionEngine(store, clock=lambda: NOW)

    result = await engine.redeem("ABCD-1234")

    assert result.reason is FailureReason.USAGE_LIMIT_EXCEEDED
    assert store.find_calls == ["ABCD-1234", "ABCD-1234"]


async def test_store_failure_propagates() -> None:
    fixture = _build_fixture(_build_card())
    fixture.store.fail_with = StoreUnavailable()

    with pytest.raises(StoreUnavailable):
        await fixture.engine.redeem("ABCD-1234")


async def test_empty_pin_is_a_caller_error() -> None:
    fixture = _build_fixture(_build_card())

    with pytest.raises(ValueError):
        await fixture.engine.redeem("   ")

    assert fixture.store.find_calls == []


async def test_pin_is_normalised_before_lookup() -> None:
    fixture = _build_fixture(_build_card())

    result = await fixture.engine.redeem("  abcd-1234 ")

    assert result.success is True
    assert fixture.store.find_calls == ["ABCD-1234"]


async def test_redemption_passes_context_to_store() -> None:
    fixture = _build_fixture(_build_card(max_usage=2))

    await fixture.engine.redeem(
        "ABCD-1234",
        RedemptionContext(requesting_user_id="staff-7", student_id="STU003", term_id="T1"),
    )

    _, redemption = fixture.store.update_calls[0]
    assert redemption == Redemption(
        now=NOW,
        term_id="T1",
        used_by="staff-7",
        student_id="STU003",
        require_term=True,
    )


async def test_multi_use_card_keeps_student_when_later_use_omits_it() -> None:
    fixture = _build_fixture(_build_card(max_usage=3))

    await fixture.engine.redeem("ABCD-1234", RedemptionContext(student_id="STU001"))
    anonymous = await fixture.engine.redeem("ABCD-1234")
    same = await fixture.engine.redeem("ABCD-1234", RedemptionContext(student_id="STU001"))

    assert anonymous.success is True
    assert same.success is True
    assert fixture.store.cards["ABCD-1234"].used_for_student_id == "STU001"


async def test_card_used_for_one_student_rejects_another() -> None:
    card = replace(_build_card(max_usage=3, usage_count=1), used_for_student_id="STU001")
    fixture = _build_fixture(card)

    result = await fixture.engine.redeem("ABCD-1234", RedemptionContext(student_id="STU002"))

    assert result.reason is FailureReason.STUDENT_MISMATCH
    assert result.to_dict() == {
        "success": False,
        "message": "This card has already been used for another student.",
        "reason": "StudentMismatch",
        "is_expired": False,
    }
    assert fixture.store.update_calls == []
    assert fixture.store.cards["ABCD-1234"].usage_count == 1


async def test_student_switch_lost_to_concurrent_bind_reports_student_mismatch() -> None:
    fixture = _build_fixture(_build_card(max_usage=3))

    results = await asyncio.gather(
        fixture.engine.redeem("ABCD-1234", RedemptionContext(student_id="STU001")),
        fixture.engine.redeem("ABCD-1234", RedemptionContext(student_id="STU002")),
    )

    reasons = sorted(r.reason.value for r in results if not r.success)
    assert sum(1 for r in results if r.success) == 1
    assert reasons == ["StudentMismatch"]
    assert fixture.store.cards["ABCD-1234"].usage_count == 1


async def test_peek_reports_state_without_writes() -> None:
    fixture = _build_fixture(_build_card(max_usage=3, usage_count=1, term_id="T1"))

    summary = await fixture.engine.peek("abcd-1234")

    assert summary is not None
    assert summary.status is CardStatus.ACTIVE
    assert summary.usage_count == 1
    assert summary.remaining_uses == 2
    assert summary.is_expired is False
    assert summary.term_id == "T1"
    assert summary.to_dict()["status"] == "Active"
    assert fixture.store.update_calls == []


async def test_peek_flags_expiry_and_unknown_pin() -> None:
    fixture = _build_fixture(_build_card(expires_at=NOW - timedelta(seconds=1)))

    summary = await fixture.engine.peek("ABCD-1234")
    missing = await fixture.engine.peek("NOPE")

    assert summary.is_expired is True
    assert missing is None
