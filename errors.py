"""
error taxonomy for wallet operations.

business-rule violations subclass ValueError so callers that only care about
"bad request vs server fault" can keep catching ValueError.
"""


class WalletError(Exception):
    """base class for every error raised by the wallet core."""

    retryable = False


class InvalidAmount(WalletError, ValueError):
    """amount missing, zero, negative or not representable in cents."""


class AccountNotFound(WalletError, ValueError):
    def __init__(self, account_id):
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")


class InsufficientFunds(WalletError, ValueError):
    def __init__(self, account_id, balance, requested):
        self.account_id = account_id
        self.balance = balance
        self.requested = requested
        super().__init__(
            f"Insufficient balance for account {account_id}: "
            f"has {balance}, needs {requested}"
        )


class ReferralCodeNotFound(WalletError, ValueError):
    def __init__(self, referral_code):
        self.referral_code = referral_code
        super().__init__(f"No user found with referral_code={referral_code}")


class DuplicateAccount(WalletError, ValueError):
    """username (or, very rarely, referral code) already taken."""


class ReferralCycleDetected(WalletError):
    """the referral graph loops back on itself; the purchase is aborted."""

    def __init__(self, account_id, level):
        self.account_id = account_id
        self.level = level
        super().__init__(
            f"Referral chain revisits account {account_id} at level {level}"
        )


class StorageConflict(WalletError):
    """the atomic unit could not commit because of contention."""

    retryable = True


class CommitFailure(WalletError):
    """the atomic unit could not commit because storage is unavailable."""

    retryable = True
