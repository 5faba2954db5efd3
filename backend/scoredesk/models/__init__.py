from scoredesk.models.scratch_card import ScratchCard, CardRedemption, CardStatus

__all__ = ["ScratchCard", "CardRedemption", "CardStatus"]
