"""Token service for encrypting, persisting and refreshing provider credentials.

WHAT:
    Wraps the Fernet helpers in `adsync.security` and owns the per-connection
    token state machine:

        valid -> nearing_expiry -> refreshing -> valid
        valid -> expired (auth rejected) -> disconnected (user action)

WHY:
    - Every provider client consumes one `Credentials` value; nothing else
      decrypts the stored columns.
    - Concurrent syncs for the same connection must not run two refresh
      exchanges. The `refreshing` transition is a compare-and-set on the
      connection row, so exactly one worker refreshes and the others re-read.

REFERENCES:
    - adsync/security.py (encrypt_secret / decrypt_secret)
    - adsync/services/provider_client.py (refresh_provider_credentials)
    - adsync/services/sync_orchestrator.py (consumer)
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from adsync.deps import get_settings
from adsync.models import Connection, ConnectionStatusEnum, ProviderEnum, TokenStateEnum
from adsync.schemas import Credentials
from adsync.security import decrypt_secret, encrypt_secret
from adsync.services.provider_client import refresh_provider_credentials
from adsync.services.provider_errors import AuthError
from adsync.telemetry import capture_exception, capture_message
from adsync.utils.clock import to_naive_utc, utcnow

logger = logging.getLogger(__name__)

# A refresh that has been "in progress" this long is assumed abandoned
STALE_REFRESH_AFTER = timedelta(minutes=5)


def _label(connection: Connection) -> str:
    return f"{connection.provider.value}:{connection.account_id}"


def store_connection_credentials(db: Session, connection: Connection, credentials: Credentials) -> Connection:
    """Encrypt and attach credentials to a connection.

    WHAT:
        Overwrites the encrypted token columns and expiry. Does not commit.
    WHY:
        Last writer wins on the stored token; callers commit together with
        whatever state transition accompanies the write.
    """
    label = _label(connection)
    connection.access_token_enc = encrypt_secret(credentials.access_token, context=f"{label}:access")
    connection.refresh_token_enc = (
        encrypt_secret(credentials.refresh_token, context=f"{label}:refresh")
        if credentials.refresh_token else None
    )
    connection.token_expires_at = to_naive_utc(credentials.expires_at)
    db.add(connection)
    logger.info("[TOKEN_SERVICE] Stored encrypted credentials for %s", label)
    return connection


def load_credentials(connection: Connection) -> Credentials:
    """Decrypt a connection's stored credentials.

    Raises:
        AuthError: No access token stored, or it can no longer be decrypted
            (rotated key). Either way the user must re-link.
    """
    label = _label(connection)
    if not connection.access_token_enc:
        raise AuthError(f"No access token stored for {label}", provider=connection.provider.value)
    try:
        access_token = decrypt_secret(connection.access_token_enc, context=f"{label}:access")
        refresh_token = (
            decrypt_secret(connection.refresh_token_enc, context=f"{label}:refresh")
            if connection.refresh_token_enc else None
        )
    except ValueError as e:
        raise AuthError(f"Stored credentials for {label} are unreadable", provider=connection.provider.value) from e
    return Credentials(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=connection.token_expires_at,
    )


def evaluate_token_state(expires_at: Optional[datetime], now: datetime, threshold: timedelta) -> TokenStateEnum:
    """Classify a token by its expiry.

    Tokens without an expiry are always valid. A token already past its
    expiry is still `nearing_expiry`: only a rejected refresh marks it expired.
    """
    if expires_at is None or expires_at > now + threshold:
        return TokenStateEnum.valid
    return TokenStateEnum.nearing_expiry


def mark_connection_expired(db: Session, connection: Connection, reason: str) -> None:
    """Move a connection to `expired`; it stays there until re-linked."""
    connection.status = ConnectionStatusEnum.expired
    connection.token_state = TokenStateEnum.expired
    connection.token_refresh_started_at = None
    connection.last_sync_error = reason[:1000]
    db.add(connection)
    db.commit()
    logger.warning("[TOKEN_SERVICE] Connection %s marked expired: %s", _label(connection), reason)
    capture_message(
        "Connection token expired",
        level="warning",
        extra={"connection_id": str(connection.id), "provider": connection.provider.value, "reason": reason[:200]},
    )


class TokenLifecycleManager:
    """Resolves usable credentials for a connection, refreshing when due.

    Usage:
        ```python
        manager = TokenLifecycleManager()
        credentials = manager.ensure_valid_token(db, connection.id)
        client = build_provider_client(connection.provider, credentials)
        ```
    """

    def __init__(
        self,
        refresher: Callable[[ProviderEnum, Credentials], Credentials] = refresh_provider_credentials,
        threshold: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._refresher = refresher
        self._threshold = threshold if threshold is not None else timedelta(
            days=get_settings().TOKEN_REFRESH_THRESHOLD_DAYS
        )
        self._clock = clock

    def ensure_valid_token(self, db: Session, connection_id: UUID, *, force: bool = False) -> Credentials:
        """Return credentials for the connection, refreshing first if due.

        WHAT:
            - Expiry within the threshold (or `force`): try the provider's
              refresh exchange; on success persist and return the re-read value.
            - Refresh rejected as AuthError: connection -> expired, raise.
            - Any other refresh failure: log and return the still-current token.
            - Another worker already refreshing: return the re-read value.

        Raises:
            AuthError: Connection missing, expired, disconnected, or the
                refresh was rejected.
        """
        connection = db.get(Connection, connection_id)
        if connection is None:
            raise AuthError(f"Connection {connection_id} not found")
        if connection.status != ConnectionStatusEnum.active or connection.token_state == TokenStateEnum.expired:
            raise AuthError(
                f"Connection {_label(connection)} is {connection.status.value}; re-link required",
                provider=connection.provider.value,
            )

        credentials = load_credentials(connection)
        now = self._clock()
        if not force and not credentials.expires_within(self._threshold, now):
            return credentials

        if not self._begin_refresh(db, connection.id, now):
            logger.info("[TOKEN_SERVICE] Refresh for %s already in progress; using stored token", _label(connection))
            db.refresh(connection)
            return load_credentials(connection)

        db.refresh(connection)
        logger.info(
            "[TOKEN_SERVICE] Refreshing token for %s (expires_at=%s, force=%s)",
            _label(connection), credentials.expires_at, force,
        )
        try:
            refreshed = self._refresher(connection.provider, credentials)
        except AuthError as e:
            mark_connection_expired(db, connection, reason=f"Token refresh rejected: {e}")
            raise
        except Exception as e:  # noqa: BLE001 - a failed refresh must not block the sync
            connection.token_state = evaluate_token_state(credentials.expires_at, now, self._threshold)
            connection.token_refresh_started_at = None
            db.commit()
            logger.warning("[TOKEN_SERVICE] Token refresh failed for %s: %s", _label(connection), e)
            capture_exception(e, extra={"connection_id": str(connection.id), "operation": "token_refresh"})
            return credentials

        store_connection_credentials(db, connection, refreshed)
        connection.token_state = TokenStateEnum.valid
        connection.token_refreshed_at = now
        connection.token_refresh_started_at = None
        db.commit()
        db.refresh(connection)
        return load_credentials(connection)

    def _begin_refresh(self, db: Session, connection_id: UUID, now: datetime) -> bool:
        """Compare-and-set token_state -> refreshing. True if this caller won."""
        stmt = (
            update(Connection)
            .where(Connection.id == connection_id)
            .where(Connection.token_state != TokenStateEnum.expired)
            .where(
                or_(
                    Connection.token_state != TokenStateEnum.refreshing,
                    Connection.token_refresh_started_at.is_(None),
                    Connection.token_refresh_started_at < now - STALE_REFRESH_AFTER,
                )
            )
            .values(token_state=TokenStateEnum.refreshing, token_refresh_started_at=now)
            .execution_options(synchronize_session=False)
        )
        result = db.execute(stmt)
        db.commit()
        return result.rowcount == 1
