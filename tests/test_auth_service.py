import pytest
from jose import jwt

from tripchat.core.errors import AuthenticationRequired
from tripchat.services.auth_service import issue_token, verify_token


def test_issued_token_round_trips_to_identity(settings):
    token = issue_token("user_1", name="Priya", email="priya@example.com", settings=settings)

    identity = verify_token(token, settings)

    assert identity.user_id == "user_1"
    assert identity.display_name == "Priya"


def test_display_name_falls_back_to_email_then_subject(settings):
    by_email = verify_token(issue_token("user_2", email="sam@example.com", settings=settings), settings)
    bare = verify_token(issue_token("user_3", settings=settings), settings)

    assert by_email.display_name == "sam@example.com"
    assert bare.display_name == "user_3"


@pytest.mark.parametrize("token", [None, "", "not-a-jwt"])
def test_missing_or_garbage_token_is_rejected(settings, token):
    with pytest.raises(AuthenticationRequired):
        verify_token(token, settings)


def test_expired_token_is_rejected(settings):
    token = issue_token("user_1", settings=settings, expires_in=-10)

    with pytest.raises(AuthenticationRequired):
        verify_token(token, settings)


def test_token_signed_with_another_key_is_rejected(settings):
    token = jwt.encode({"sub": "user_1"}, "someone-elses-key", algorithm="HS256")

    with pytest.raises(AuthenticationRequired):
        verify_token(token, settings)


def test_token_without_subject_is_rejected(settings):
    token = jwt.encode({"name": "Nobody"}, settings.AUTH_SECRET_KEY, algorithm=settings.AUTH_ALGORITHM)

    with pytest.raises(AuthenticationRequired):
        verify_token(token, settings)
