"""
Infrastructure exceptions

Business outcomes of a redemption are returned as results, never raised.
Only failures that prevent determining the outcome at all live here.
"""


class StoreUnavailable(Exception):
    """The card store could not be reached or the statement failed at the driver level.

    Callers may retry; this must never be reported to a user as an invalid PIN.
    """

    def __init__(self, message: str = "card store unavailable"):
        super().__init__(message)
        self.message = message


class CardConflict(Exception):
    """Issuance collided with an existing PIN or serial number"""

    def __init__(self, message: str = "card PIN or serial number already exists"):
        super().__init__(message)
        self.message = message
