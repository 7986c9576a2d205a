class LedgerError(Exception):
    code = "ledger_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class UserNotFoundError(LedgerError):
    code = "user_not_found"


class InsufficientBalanceError(LedgerError):
    code = "insufficient_balance"

    def __init__(self, balance: int, requested: int):
        super().__init__(f"Not enough points to redeem: balance {balance}, requested {requested}")
        self.balance = balance
        self.requested = requested


class PersistenceError(LedgerError):
    """The local store could not complete the transaction; nothing was committed."""

    code = "persistence_unavailable"
