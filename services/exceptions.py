"""Typed errors surfaced by the ledger services"""

from typing import Optional


class TipBotError(Exception):
    """Base exception for ledger service errors"""

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        self.user_message = user_message or message


class ValidationError(TipBotError):
    """User-facing validation failure; never retried automatically"""
    pass


class InvalidAmountError(ValidationError):
    def __init__(self, message: str = "Amount must be a positive number of lites"):
        super().__init__(message, "Please enter a positive amount.")


class InvalidReasonError(ValidationError):
    def __init__(self, reason: str):
        super().__init__(f"Unknown ledger reason: {reason!r}", "Unsupported operation.")
        self.reason = reason


class SelfTransferError(ValidationError):
    def __init__(self, user_id: int):
        super().__init__(f"User {user_id} cannot tip themselves", "You can't tip yourself.")
        self.user_id = user_id


class InsufficientBalanceError(ValidationError):
    def __init__(self, user_id: int, requested_lites: int, available_lites: int):
        super().__init__(
            f"User {user_id} requested {requested_lites} lites but has {available_lites}",
            "Insufficient balance.",
        )
        self.user_id = user_id
        self.requested_lites = requested_lites
        self.available_lites = available_lites


class InvalidDestinationAddressError(ValidationError):
    def __init__(self, address: str):
        super().__init__(f"Invalid destination address: {address!r}", "That address is not valid.")
        self.address = address


class UserNotFoundError(ValidationError):
    def __init__(self, identifier):
        super().__init__(f"User not found: {identifier!r}", "User not found.")
        self.identifier = identifier
