"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class TransientFetchError(DomainException):
    """Usage source is unreachable, slow, or returned a malformed response"""

    pass


class ConflictError(DomainException):
    """Ledger version check failed because the account changed underneath us"""

    pass


class ActionError(DomainException):
    """Workload controller failed to suspend or resume a team"""

    pass


class ConfigError(DomainException):
    """Pricing or per-account policy is malformed"""

    pass


class StoreUnavailableError(DomainException):
    """Ledger store cannot be reached; fatal for the current cycle"""

    pass


class AccountNotFoundError(DomainException):
    """No account exists for the entity"""

    pass


class AccountExistsError(DomainException):
    """An account was already provisioned for the entity"""

    pass


class InvalidAmountError(DomainException):
    """Recharge or policy amount is not a positive number"""

    pass


class NotificationError(DomainException):
    """A notification channel rejected or failed to deliver an alert"""

    pass


class ResumeRefusedError(DomainException):
    """A team cannot be resumed while its balance is negative"""

    pass
