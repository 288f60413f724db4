"""
Error taxonomy for wager settlement.

Validation errors are surfaced to the caller verbatim and never retried.
ConcurrencyConflict is safe to retry. PersistenceFailure is fatal for the
wager and always comes with a rolled back transaction.
"""


class WagerError(Exception):
    """Base class for every error the settlement engine raises."""

    code = "wager_error"
    retryable = False

    def __init__(self, message: str = None, **context):
        self.message = message or self.__class__.__doc__ or self.code
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message, **self.context}


# ==================== Validation ====================

class UnknownGame(WagerError):
    """Game not found."""
    code = "unknown_game"


class GameInactive(WagerError):
    """Game is currently disabled."""
    code = "game_inactive"


class InvalidStake(WagerError):
    """Stake is outside the allowed bounds."""
    code = "invalid_stake"


class InsufficientFunds(WagerError):
    """Insufficient balance."""
    code = "insufficient_funds"


class UnknownAccount(WagerError):
    """Account not found."""
    code = "unknown_account"


class HandNotFound(WagerError):
    """Hand not found or expired."""
    code = "hand_not_found"


class HandAlreadySettled(WagerError):
    """Hand already completed."""
    code = "hand_settled"


class InvalidHandAction(WagerError):
    """Action not allowed for this hand."""
    code = "invalid_action"


# ==================== Retryable / fatal ====================

class ConcurrencyConflict(WagerError):
    """Account was modified concurrently, retry the wager."""
    code = "concurrency_conflict"
    retryable = True


class PersistenceFailure(WagerError):
    """Storage unavailable or write rejected."""
    code = "persistence_failure"


class SettlementTimeout(PersistenceFailure):
    """Settlement exceeded its deadline and was rolled back."""
    code = "settlement_timeout"


# ==================== Catalog ====================

class GameConfigurationError(WagerError):
    """Game rules are invalid."""
    code = "game_configuration"
