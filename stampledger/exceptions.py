"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID


class LedgerError(Exception):
    """Base exception for all stampledger errors."""

    pass


class ValidationError(LedgerError):
    """Raised when input fails validation (bad amount, malformed hash or payload)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Validation error: {message}")


class AuthenticationError(LedgerError):
    """Raised when the caller or actor is not authenticated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")


class AuthorizationError(LedgerError):
    """Raised when the actor lacks the role an operation requires."""

    def __init__(self, actor_id: str, required_permission: str) -> None:
        self.actor_id = actor_id
        self.required_permission = required_permission
        super().__init__(
            f"Authorization failed: {actor_id} missing permission {required_permission}"
        )


class NotFoundError(LedgerError):
    """Raised when a referenced record doesn't exist or isn't visible to the caller."""

    def __init__(self, resource: str, identifier: str) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} not found: {identifier}")


class RegistrationNotFoundError(NotFoundError):
    """Raised when a registration doesn't exist or belongs to someone else."""

    def __init__(self, registration_id: UUID) -> None:
        self.registration_id = registration_id
        super().__init__("Registration", str(registration_id))


class RegistrationStateError(LedgerError):
    """Raised when a registration's status forbids the requested transition."""

    def __init__(self, registration_id: UUID, status: str) -> None:
        self.registration_id = registration_id
        self.status = status
        super().__init__(f"Registration {registration_id} cannot be submitted in status {status}")


class InsufficientBalanceError(LedgerError):
    """Raised when a submission is attempted without a spendable credit."""

    def __init__(self, user_id: str, balance: int, required: int = 1) -> None:
        self.user_id = user_id
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient credits. Balance: {balance}, Required: {required}")


class ExternalServiceError(LedgerError):
    """Raised when an outbound dependency fails. Never surfaced to clients as-is."""

    def __init__(self, service: str, message: str) -> None:
        self.service = service
        self.message = message
        super().__init__(f"{service} error: {message}")


class AuthorityError(ExternalServiceError):
    """Raised when a timestamping authority times out or returns an unusable answer."""

    def __init__(self, authority: str, message: str) -> None:
        self.authority = authority
        super().__init__(authority, message)


class PaymentGatewayError(ExternalServiceError):
    """Raised when the payment gateway API call fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__("Payment gateway", message)


class WebhookVerificationError(AuthenticationError):
    """Raised when an inbound webhook carries a missing or wrong token."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Webhook verification error: {message}")


class PersistenceError(LedgerError):
    """Raised when a database operation fails unexpectedly."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Database error: {message}")


class WriteVerificationError(PersistenceError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(PersistenceError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Data integrity error: {message}")
