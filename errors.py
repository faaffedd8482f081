"""Service-level error types.

All of them subclass ValueError so routes can keep catching ValueError
and map it to a 400, narrowing to a 404 for NotFoundError.
"""


class DomainError(ValueError):
    pass


class ValidationError(DomainError):
    pass


class NotFoundError(DomainError):
    pass


class ConflictError(DomainError):
    pass


class DependencyError(DomainError):
    """Operation blocked because other records still reference the entity."""


class InsufficientFundsError(DomainError):
    pass


NO_ACCOUNTS_MESSAGE = "You need to create at least one account"
NO_CATEGORIES_MESSAGE = "You need to create at least one category first"
ROLE_NOT_FOUND_MESSAGE = "Role not found"
