import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from authcore import app as app_module
from authcore.api import schemas
from authcore.storage.models import User


def test_security_headers_and_cors():
    client = TestClient(app_module.app)
    response = client.get("/healthz", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 200
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
    assert response.headers["access-control-allow-credentials"] == "true"


def test_unknown_origin_not_allowed():
    client = TestClient(app_module.app)
    response = client.get("/healthz", headers={"Origin": "https://evil.example"})

    assert "access-control-allow-origin" not in response.headers


def test_allowed_origins_never_wildcard():
    origins = app_module._allowed_origins()
    assert "*" not in origins


def test_email_is_normalized():
    body = schemas.LoginRequest(email="  Ann@Example.COM ", password="x")
    assert body.email == "ann@example.com"


def test_zero_width_characters_stripped_from_email():
    body = schemas.ResetOtpRequest(email="a\u200bnn@example.com")
    assert body.email == "ann@example.com"


@pytest.mark.parametrize(
    "email", ["no-at-sign", "a@nodot", "@example.com", "a b@example.com"]
)
def test_bad_emails_rejected(email):
    with pytest.raises(ValidationError):
        schemas.LoginRequest(email=email, password="x")


def test_otp_must_be_six_digits():
    with pytest.raises(ValidationError):
        schemas.SignupRequest(
            email="a@x.com", password="secret1", otp="12345"
        )
    ok = schemas.SignupRequest(email="a@x.com", password="secret1", otp="012345")
    assert ok.otp == "012345"


def test_password_length_bounds():
    with pytest.raises(ValidationError):
        schemas.SignupRequest(email="a@x.com", password="12345", otp="123456")
    with pytest.raises(ValidationError):
        schemas.SignupRequest(email="a@x.com", password="x" * 129, otp="123456")


def test_blank_signup_name_becomes_none():
    body = schemas.SignupOtpRequest(email="a@x.com", name="   ")
    assert body.name is None


@pytest.mark.parametrize("field", ["credential", "credentials", "idToken"])
def test_google_credential_aliases(field):
    body = schemas.GoogleLoginRequest.model_validate({field: "token"})
    assert body.credential == "token"


def test_reset_password_uses_camel_case():
    body = schemas.ResetPasswordRequest.model_validate(
        {"email": "a@x.com", "otp": "123456", "newPassword": "secret1"}
    )
    assert body.new_password == "secret1"


def test_profile_picture_must_be_http_url():
    with pytest.raises(ValidationError):
        schemas.UpdateProfileRequest.model_validate(
            {"profilePicture": "javascript:alert(1)"}
        )
    with pytest.raises(ValidationError):
        schemas.UpdateProfileRequest(name="   ")


def test_user_response_wire_shape():
    user = User(
        id="user-1",
        email="a@x.com",
        display_name="Ann",
        password_hash="$argon2id$secret",
        token_version=7,
    )

    wire = schemas.UserResponse.from_user(user).model_dump(by_alias=True)

    assert wire == {
        "id": "user-1",
        "name": "Ann",
        "email": "a@x.com",
        "profilePicture": user.profile_picture,
    }
