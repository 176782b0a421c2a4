from types import SimpleNamespace

import jwt
import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from petconsult.auth import jwt_handler
from petconsult.auth.dependencies import ensure_can_manage_professional, get_current_user
from petconsult.routes import auth_routes


def _credentials(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme='Bearer', credentials=token)


def test_access_token_round_trip_keeps_subject_and_role() -> None:
    token = jwt_handler.create_access_token(subject='owner@example.com', role='client')

    payload = jwt_handler.decode_access_token(token)

    assert payload['sub'] == 'owner@example.com'
    assert payload['role'] == 'client'


def test_expired_token_is_rejected() -> None:
    token = jwt_handler.create_access_token(subject='owner@example.com', expires_minutes=-1)

    with pytest.raises(jwt.ExpiredSignatureError):
        jwt_handler.decode_access_token(token)


def test_get_current_user_resolves_subject_case_insensitively(db, client_user) -> None:
    token = jwt_handler.create_access_token(subject='OWNER@example.com')

    user = get_current_user(credentials=_credentials(token), db=db)

    assert user.id == client_user.id


@pytest.mark.parametrize(
    ('token', 'detail'),
    [
        ('not-a-jwt', 'Invalid token'),
        (jwt_handler.create_access_token(subject='ghost@example.com'), 'User not found'),
    ],
)
def test_get_current_user_rejects_bad_tokens(db, token: str, detail: str) -> None:
    with pytest.raises(HTTPException) as exception_info:
        get_current_user(credentials=_credentials(token), db=db)

    assert exception_info.value.status_code == 401
    assert exception_info.value.detail == detail


def test_me_returns_profile(client_user) -> None:
    assert auth_routes.me(current_user=client_user) == {
        'id': client_user.id,
        'email': 'owner@example.com',
        'name': 'Pet Owner',
        'role': 'client',
    }


def test_only_owner_or_admin_manage_professional() -> None:
    professional = SimpleNamespace(user_id=5)

    ensure_can_manage_professional(SimpleNamespace(id=1, role='admin'), professional)
    ensure_can_manage_professional(SimpleNamespace(id=5, role='professional'), professional)

    with pytest.raises(HTTPException) as exception_info:
        ensure_can_manage_professional(SimpleNamespace(id=6, role='professional'), professional)
    assert exception_info.value.status_code == 403
