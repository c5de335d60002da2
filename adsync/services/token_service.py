"""Credential vault: encrypted token persistence and access-token refresh.

WHAT:
    - store_connection_tokens: persist the result of an OAuth exchange
    - CredentialVault.get_valid_access_token: hand out a usable access token,
      refreshing it when it expires within the buffer window
    - disconnect_connection: revoke locally and disable dependent accounts

WHY:
    - Keeps encryption and refresh logic out of the API client and workers
    - Refresh races between worker processes are settled with a
      compare-and-swap on Connection.token_version, so two workers refreshing
      at once never overwrite each other with a stale token

REFERENCES:
    - adsync/security.py (encrypt_secret / decrypt_secret)
    - adsync/services/google_oauth.py (refresh_access_token)
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol
from uuid import UUID

from sqlalchemy.orm import Session

from adsync.config import get_settings
from adsync.exceptions import AuthError
from adsync.models import AdAccount, Connection, ConnectionStatusEnum, ProviderEnum
from adsync.schemas import OAuthTokens, RefreshedToken
from adsync.security import decrypt_secret, encrypt_secret
from adsync.utils.dates import utcnow

logger = logging.getLogger(__name__)


class TokenRefresher(Protocol):
    def refresh_access_token(self, refresh_token: str) -> RefreshedToken: ...


def _label(connection: Connection) -> str:
    return f"{connection.provider.value}:{connection.id}"


# =============================================================================
# OAUTH CALLBACK PERSISTENCE
# =============================================================================

def store_connection_tokens(
    db: Session,
    organization_id: UUID,
    tokens: OAuthTokens,
    *,
    provider: ProviderEnum = ProviderEnum.google_ads,
) -> Connection:
    """Encrypt and persist tokens from a successful OAuth exchange.

    WHAT:
        Creates the (organization, provider) Connection or re-activates the
        existing one. Google only returns a refresh token on first consent,
        so an existing refresh token is kept when the exchange has none.

    Returns:
        The committed Connection.
    """
    connection = (
        db.query(Connection)
        .filter(Connection.organization_id == organization_id, Connection.provider == provider)
        .first()
    )
    if connection is None:
        connection = Connection(organization_id=organization_id, provider=provider, token_version=0)
        db.add(connection)
        db.flush()

    label = _label(connection)
    connection.access_token_enc = encrypt_secret(tokens.access_token, context=f"{label}:access")
    if tokens.refresh_token:
        connection.refresh_token_enc = encrypt_secret(tokens.refresh_token, context=f"{label}:refresh")
    connection.access_token_expiry = tokens.expires_at
    connection.provider_email = tokens.email or connection.provider_email
    connection.scopes = tokens.scopes or connection.scopes
    connection.status = ConnectionStatusEnum.active
    connection.error_message = None
    connection.last_refreshed_at = utcnow()
    connection.token_version = (connection.token_version or 0) + 1
    db.commit()

    logger.info(
        "[TOKEN_VAULT] Stored tokens for connection %s (org=%s, refresh=%s)",
        connection.id, organization_id, bool(tokens.refresh_token),
    )
    return connection


def disconnect_connection(db: Session, connection_id: UUID) -> int:
    """Mark a connection DISCONNECTED and soft-disable all its accounts.

    Returns:
        Number of accounts disabled.
    """
    connection = db.query(Connection).filter(Connection.id == connection_id).first()
    if connection is None:
        raise AuthError("Connection not found", connection_id=str(connection_id))

    connection.status = ConnectionStatusEnum.disconnected
    connection.error_message = None
    disabled = (
        db.query(AdAccount)
        .filter(AdAccount.connection_id == connection_id, AdAccount.is_enabled.is_(True))
        .update({AdAccount.is_enabled: False}, synchronize_session=False)
    )
    db.commit()

    logger.info("[TOKEN_VAULT] Disconnected %s, disabled %d accounts", connection_id, disabled)
    return disabled


# =============================================================================
# CREDENTIAL VAULT
# =============================================================================

class CredentialVault:
    """Supplies valid access tokens to the API client.

    Each call opens its own short-lived session so token writes commit
    independently of the job that asked for the token.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        oauth_client: TokenRefresher,
        *,
        refresh_buffer_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._oauth = oauth_client
        buffer_seconds = (
            refresh_buffer_seconds
            if refresh_buffer_seconds is not None
            else get_settings().TOKEN_REFRESH_BUFFER_SECONDS
        )
        self._buffer = timedelta(seconds=buffer_seconds)
        self._clock = clock

    def get_valid_access_token(self, connection_id: UUID) -> str:
        """Return a decrypted access token valid for at least the buffer window.

        Raises:
            AuthError: Connection missing or disconnected, or refresh failed
                (the connection is left EXPIRED with the error).
        """
        db = self._session_factory()
        try:
            connection = db.query(Connection).filter(Connection.id == connection_id).first()
            if connection is None:
                raise AuthError("Connection not found", connection_id=str(connection_id))
            if connection.status == ConnectionStatusEnum.disconnected:
                raise AuthError("Connection is disconnected", connection_id=str(connection_id))

            if connection.access_token_enc and not self._needs_refresh(connection):
                return decrypt_secret(connection.access_token_enc, context=f"{_label(connection)}:access")

            return self._refresh(db, connection)
        finally:
            db.close()

    def _needs_refresh(self, connection: Connection) -> bool:
        expiry = connection.access_token_expiry
        if expiry is None:
            return True
        return expiry <= self._clock() + self._buffer

    def _refresh(self, db: Session, connection: Connection) -> str:
        connection_id = connection.id
        version = connection.token_version
        label = _label(connection)

        if not connection.refresh_token_enc:
            return self._fail_refresh(db, connection_id, version, "No refresh token stored", None)

        logger.info("[TOKEN_VAULT] Refreshing access token for %s", label)
        try:
            refresh_token = decrypt_secret(connection.refresh_token_enc, context=f"{label}:refresh")
            refreshed = self._oauth.refresh_access_token(refresh_token)
        except (AuthError, ValueError) as e:
            return self._fail_refresh(db, connection_id, version, str(e), e)

        now = self._clock()
        updated = (
            db.query(Connection)
            .filter(Connection.id == connection_id, Connection.token_version == version)
            .update(
                {
                    Connection.access_token_enc: encrypt_secret(refreshed.access_token, context=f"{label}:access"),
                    Connection.access_token_expiry: refreshed.expires_at,
                    Connection.status: ConnectionStatusEnum.active,
                    Connection.error_message: None,
                    Connection.last_refreshed_at: now,
                    Connection.updated_at: now,
                    Connection.token_version: Connection.token_version + 1,
                },
                synchronize_session=False,
            )
        )
        db.commit()

        if updated == 0:
            logger.info("[TOKEN_VAULT] Lost refresh race for %s, using winner's token", label)
            return self._read_current_token(db, connection_id)

        logger.info("[TOKEN_VAULT] Refreshed token for %s (expires %s)", label, refreshed.expires_at)
        return refreshed.access_token

    def _fail_refresh(
        self,
        db: Session,
        connection_id: UUID,
        version: int,
        error: str,
        cause: Optional[BaseException],
    ) -> str:
        marked = (
            db.query(Connection)
            .filter(Connection.id == connection_id, Connection.token_version == version)
            .update(
                {
                    Connection.status: ConnectionStatusEnum.expired,
                    Connection.error_message: error[:1000],
                    Connection.updated_at: self._clock(),
                },
                synchronize_session=False,
            )
        )
        db.commit()

        if marked == 0:
            # Another worker refreshed while we were failing
            return self._read_current_token(db, connection_id)

        logger.error("[TOKEN_VAULT] Token refresh failed for %s: %s", connection_id, error)
        raise AuthError(f"Token refresh failed: {error}", connection_id=str(connection_id)) from cause

    def _read_current_token(self, db: Session, connection_id: UUID) -> str:
        db.expire_all()
        connection = db.query(Connection).filter(Connection.id == connection_id).first()
        if (
            connection is None
            or connection.status != ConnectionStatusEnum.active
            or not connection.access_token_enc
        ):
            raise AuthError("Connection has no usable access token", connection_id=str(connection_id))
        return decrypt_secret(connection.access_token_enc, context=f"{_label(connection)}:access")
