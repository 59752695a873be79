"""
Tests for the exception hierarchy.
"""

from uuid import uuid4

import pytest

from stampledger.exceptions import (
    AuthenticationError,
    AuthorityError,
    AuthorizationError,
    DataIntegrityError,
    ExternalServiceError,
    InsufficientBalanceError,
    LedgerError,
    NotFoundError,
    PaymentGatewayError,
    PersistenceError,
    RegistrationNotFoundError,
    RegistrationStateError,
    ValidationError,
    WebhookVerificationError,
    WriteVerificationError,
)


class TestHierarchy:
    """Every error is a LedgerError so callers can catch the family."""

    @pytest.mark.parametrize(
        "error",
        [
            ValidationError("bad"),
            AuthenticationError("who"),
            AuthorizationError("actor", "ledger:refund"),
            NotFoundError("Thing", "1"),
            RegistrationNotFoundError(uuid4()),
            RegistrationStateError(uuid4(), "CONFIRMED"),
            InsufficientBalanceError("u", 0),
            AuthorityError("https://a", "HTTP 500"),
            PaymentGatewayError("down"),
            WebhookVerificationError("token"),
            WriteVerificationError("missing"),
            DataIntegrityError("mismatch"),
        ],
    )
    def test_all_are_ledger_errors(self, error):
        assert isinstance(error, LedgerError)

    def test_specialisations(self):
        assert issubclass(RegistrationNotFoundError, NotFoundError)
        assert issubclass(AuthorityError, ExternalServiceError)
        assert issubclass(PaymentGatewayError, ExternalServiceError)
        assert issubclass(WebhookVerificationError, AuthenticationError)
        assert issubclass(WriteVerificationError, PersistenceError)
        assert issubclass(DataIntegrityError, PersistenceError)


class TestAttributes:
    """Typed attributes and messages."""

    def test_insufficient_balance_message(self):
        error = InsufficientBalanceError("user-1", 0)

        assert error.required == 1
        assert str(error) == "Insufficient credits. Balance: 0, Required: 1"

    def test_authorization_error(self):
        error = AuthorizationError("agent", "ledger:adjust")

        assert error.actor_id == "agent"
        assert error.required_permission == "ledger:adjust"

    def test_registration_not_found(self):
        registration_id = uuid4()
        error = RegistrationNotFoundError(registration_id)

        assert error.registration_id == registration_id
        assert error.resource == "Registration"
        assert str(registration_id) in str(error)

    def test_authority_error(self):
        error = AuthorityError("https://a", "timed out after 10.0s")

        assert error.authority == "https://a"
        assert error.service == "https://a"
        assert "timed out" in str(error)

    def test_gateway_status_code(self):
        assert PaymentGatewayError("x", status_code=404).status_code == 404
        assert PaymentGatewayError("x").status_code is None

    def test_validation_message(self):
        error = ValidationError("amount must be positive")

        assert error.message == "amount must be positive"
        assert str(error) == "Validation error: amount must be positive"
