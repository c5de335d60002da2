"""Tests for the credential vault and OAuth token persistence.

WHAT:
    - Valid tokens are returned as-is, expiring ones are refreshed
    - Refresh failures mark the connection EXPIRED
    - A lost refresh race returns the winner's token instead of failing

WHY:
    Several workers ask for the same connection's token at once; exactly one
    refresh may win and nobody may overwrite a newer token with an older one.

REFERENCES:
    adsync/services/token_service.py
    adsync/services/google_oauth.py
"""

from datetime import timedelta

import httpx
import pytest

from adsync.exceptions import AuthError
from adsync.models import AdAccount, Connection, ConnectionStatusEnum
from adsync.schemas import OAuthTokens, RefreshedToken
from adsync.security import decrypt_secret, encrypt_secret
from adsync.services.google_oauth import GOOGLE_TOKEN_URL, GoogleOAuthClient
from adsync.services.token_service import CredentialVault, disconnect_connection, store_connection_tokens
from adsync.utils.dates import utcnow


class _FakeOAuth:
    def __init__(self, token="access-token-2", error=None, on_refresh=None):
        self.token = token
        self.error = error
        self.on_refresh = on_refresh
        self.calls = []

    def refresh_access_token(self, refresh_token):
        self.calls.append(refresh_token)
        if self.on_refresh:
            self.on_refresh()
        if self.error:
            raise self.error
        return RefreshedToken(access_token=self.token, expires_at=utcnow() + timedelta(hours=1))


def _expire_soon(session, connection_id):
    connection = session.query(Connection).filter(Connection.id == connection_id).one()
    connection.access_token_expiry = utcnow() + timedelta(seconds=30)
    session.commit()


def test_valid_token_is_returned_without_refresh(session_factory, test_connection):
    oauth = _FakeOAuth()
    vault = CredentialVault(session_factory, oauth, refresh_buffer_seconds=300)

    assert vault.get_valid_access_token(test_connection.id) == "access-token-1"
    assert oauth.calls == []


def test_token_inside_buffer_is_refreshed_and_persisted(session_factory, test_db_session, test_connection):
    _expire_soon(test_db_session, test_connection.id)
    oauth = _FakeOAuth(token="access-token-2")
    vault = CredentialVault(session_factory, oauth, refresh_buffer_seconds=300)

    assert vault.get_valid_access_token(test_connection.id) == "access-token-2"
    assert oauth.calls == ["refresh-token-1"]

    test_db_session.expire_all()
    stored = test_db_session.query(Connection).filter(Connection.id == test_connection.id).one()
    assert stored.token_version == 2
    assert decrypt_secret(stored.access_token_enc, context="t") == "access-token-2"
    assert stored.access_token_expiry > utcnow() + timedelta(minutes=50)


def test_token_without_known_expiry_is_refreshed(session_factory, test_db_session, test_connection):
    connection = test_db_session.query(Connection).filter(Connection.id == test_connection.id).one()
    connection.access_token_expiry = None
    test_db_session.commit()
    oauth = _FakeOAuth(token="access-token-2")
    vault = CredentialVault(session_factory, oauth, refresh_buffer_seconds=300)

    assert vault.get_valid_access_token(test_connection.id) == "access-token-2"
    assert oauth.calls == ["refresh-token-1"]


def test_refresh_failure_marks_connection_expired(session_factory, test_db_session, test_connection):
    _expire_soon(test_db_session, test_connection.id)
    vault = CredentialVault(
        session_factory, _FakeOAuth(error=AuthError("invalid_grant")), refresh_buffer_seconds=300,
    )

    with pytest.raises(AuthError):
        vault.get_valid_access_token(test_connection.id)

    test_db_session.expire_all()
    stored = test_db_session.query(Connection).filter(Connection.id == test_connection.id).one()
    assert stored.status == ConnectionStatusEnum.expired
    assert "invalid_grant" in stored.error_message


def test_lost_refresh_race_returns_winners_token(session_factory, test_db_session, test_connection):
    """The other worker commits a refresh between our read and our write."""
    _expire_soon(test_db_session, test_connection.id)

    def concurrent_refresh():
        other = session_factory()
        try:
            connection = other.query(Connection).filter(Connection.id == test_connection.id).one()
            connection.access_token_enc = encrypt_secret("winner-token", context="t")
            connection.access_token_expiry = utcnow() + timedelta(hours=1)
            connection.token_version = connection.token_version + 1
            other.commit()
        finally:
            other.close()

    vault = CredentialVault(
        session_factory, _FakeOAuth(token="loser-token", on_refresh=concurrent_refresh), refresh_buffer_seconds=300,
    )

    assert vault.get_valid_access_token(test_connection.id) == "winner-token"
    test_db_session.expire_all()
    stored = test_db_session.query(Connection).filter(Connection.id == test_connection.id).one()
    assert decrypt_secret(stored.access_token_enc, context="t") == "winner-token"
    assert stored.token_version == 2


def test_disconnected_connection_is_rejected(session_factory, test_db_session, test_connection):
    test_connection.status = ConnectionStatusEnum.disconnected
    test_db_session.commit()

    with pytest.raises(AuthError):
        CredentialVault(session_factory, _FakeOAuth()).get_valid_access_token(test_connection.id)


def test_store_tokens_keeps_existing_refresh_token(test_db_session, test_org, test_connection):
    connection = store_connection_tokens(
        test_db_session,
        test_org.id,
        OAuthTokens(access_token="fresh-access", expires_at=utcnow() + timedelta(hours=1)),
    )

    assert connection.id == test_connection.id
    assert decrypt_secret(connection.access_token_enc, context="t") == "fresh-access"
    assert decrypt_secret(connection.refresh_token_enc, context="t") == "refresh-token-1"
    assert connection.status == ConnectionStatusEnum.active


def test_disconnect_soft_disables_accounts(test_db_session, test_connection, test_account):
    assert disconnect_connection(test_db_session, test_connection.id) == 1

    test_db_session.expire_all()
    account = test_db_session.query(AdAccount).filter(AdAccount.id == test_account.id).one()
    assert account.is_enabled is False
    connection = test_db_session.query(Connection).filter(Connection.id == test_connection.id).one()
    assert connection.status == ConnectionStatusEnum.disconnected


def test_google_refresh_invalid_grant_raises_auth_error():
    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == GOOGLE_TOKEN_URL
        return httpx.Response(400, json={"error": "invalid_grant"})

    client = GoogleOAuthClient(http_client=httpx.Client(transport=httpx.MockTransport(handler)))
    with pytest.raises(AuthError):
        client.refresh_access_token("revoked")


def test_google_refresh_defaults_expiry_to_one_hour():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"access_token": "new"})

    client = GoogleOAuthClient(http_client=httpx.Client(transport=httpx.MockTransport(handler)))
    refreshed = client.refresh_access_token("rt")
    assert refreshed.access_token == "new"
    assert timedelta(minutes=59) < refreshed.expires_at - utcnow() <= timedelta(hours=1)
