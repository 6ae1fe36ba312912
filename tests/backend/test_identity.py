from __future__ import annotations

import jwt
import pytest

from crm_backend.app.identity import (
    IdentityError,
    IdentityErrorCode,
    IdentityGateway,
    LocalIdentityProvider,
)

SECRET = "federated-test-secret"


@pytest.fixture()
def gateway() -> IdentityGateway:
    return IdentityGateway(LocalIdentityProvider(federated_token_secret=SECRET))


def _federated_token(email: str, subject: str = "g-123", secret: str = SECRET) -> str:
    return jwt.encode({"sub": subject, "email": email, "name": "Asha"}, secret, algorithm="HS256")


def test_listener_receives_current_identity_immediately(gateway: IdentityGateway) -> None:
    seen: list = []
    gateway.on_identity_change(seen.append)
    assert seen == [None]


def test_sign_up_then_sign_in(gateway: IdentityGateway) -> None:
    seen: list = []
    unsubscribe = gateway.on_identity_change(seen.append)
    created = gateway.sign_up_with_credential("asha@institute.test", "secret-1")
    assert gateway.current == created

    gateway.sign_out()
    assert gateway.current is None

    signed_in = gateway.sign_in_with_credential("ASHA@institute.test", "secret-1")
    assert signed_in.uid == created.uid
    assert seen == [None, created, None, created]

    unsubscribe()
    gateway.sign_out()
    assert len(seen) == 4


def test_wrong_password_is_invalid_credential(gateway: IdentityGateway) -> None:
    gateway.sign_up_with_credential("asha@institute.test", "secret-1")
    gateway.sign_out()
    with pytest.raises(IdentityError) as exc:
        gateway.sign_in_with_credential("asha@institute.test", "wrong-pass")
    assert exc.value.code == IdentityErrorCode.invalid_credential
    assert gateway.current is None


@pytest.mark.parametrize(
    ("email", "password", "code"),
    [
        ("not-an-email", "secret-1", IdentityErrorCode.invalid_email),
        ("asha@institute.test", "12345", IdentityErrorCode.weak_password),
    ],
)
def test_sign_up_validation(
    gateway: IdentityGateway, email: str, password: str, code: IdentityErrorCode
) -> None:
    with pytest.raises(IdentityError) as exc:
        gateway.sign_up_with_credential(email, password)
    assert exc.value.code == code


def test_sign_up_rejects_existing_email(gateway: IdentityGateway) -> None:
    gateway.sign_up_with_credential("asha@institute.test", "secret-1")
    with pytest.raises(IdentityError) as exc:
        gateway.sign_up_with_credential("asha@institute.test", "secret-2")
    assert exc.value.code == IdentityErrorCode.email_in_use


def test_federated_sign_in(gateway: IdentityGateway) -> None:
    identity = gateway.sign_in_with_federated(_federated_token("asha@institute.test"))
    assert identity.email == "asha@institute.test"
    assert identity.display_name == "Asha"
    assert identity.provider == "google.com"
    again = gateway.sign_in_with_federated(_federated_token("asha@institute.test"))
    assert again == identity


def test_federated_without_token_is_popup_closed(gateway: IdentityGateway) -> None:
    with pytest.raises(IdentityError) as exc:
        gateway.sign_in_with_federated(None)
    assert exc.value.code == IdentityErrorCode.popup_closed


def test_federated_conflicts_with_password_account(gateway: IdentityGateway) -> None:
    gateway.sign_up_with_credential("asha@institute.test", "secret-1")
    gateway.sign_out()
    with pytest.raises(IdentityError) as exc:
        gateway.sign_in_with_federated(_federated_token("asha@institute.test"))
    assert exc.value.code == IdentityErrorCode.account_exists_different_credential


def test_federated_token_with_wrong_signature(gateway: IdentityGateway) -> None:
    with pytest.raises(IdentityError) as exc:
        gateway.sign_in_with_federated(_federated_token("asha@institute.test", secret="other"))
    assert exc.value.code == IdentityErrorCode.other
