"""Connection lifecycle service.

WHAT:
    Link (or re-link) a tenant to an ad platform, choose which ad accounts
    are synced, and disconnect.

WHY:
    - Re-linking is the only way out of `expired`; it resets the token state
      and clears the previous failure.
    - A hard disconnect removes everything synced through the connection so
      no orphaned rows remain; a soft disconnect keeps the data but drops
      the credentials.

REFERENCES:
    - adsync/services/token_service.py (credential storage)
    - adsync/models.py (Connection and synced entities)
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from adsync.models import (
    Ad,
    AdAccount,
    AdGroup,
    Campaign,
    ChangeHistory,
    Connection,
    ConnectionStatusEnum,
    Insight,
    ProviderEnum,
    SyncHistory,
    TokenStateEnum,
    SYNC_ERROR,
    SYNC_IDLE,
)
from adsync.schemas import Credentials
from adsync.services.provider_client import normalize_account_id
from adsync.services.token_service import store_connection_credentials

logger = logging.getLogger(__name__)


def _normalize_selection(provider: ProviderEnum, external_ids: Sequence[str]) -> List[str]:
    """Selected ad account ids in the provider's canonical form, deduplicated."""
    return sorted({normalize_account_id(provider, e) for e in external_ids})


def link_connection(
    db: Session,
    account_id: UUID,
    provider: ProviderEnum,
    credentials: Credentials,
    *,
    name: Optional[str] = None,
    selected_account_ids: Optional[Sequence[str]] = None,
) -> Connection:
    """Create the tenant's connection for a provider, or re-link the existing one.

    Re-linking resets `expired`/`disconnected` to `active` and the token
    state to `valid`. Commits.
    """
    connection = (
        db.query(Connection)
        .filter(Connection.account_id == account_id, Connection.provider == provider)
        .one_or_none()
    )
    if connection is None:
        connection = Connection(account_id=account_id, provider=provider, selected_account_ids=[])
        db.add(connection)
        logger.info("[CONNECTIONS] Linking new %s connection for account %s", provider.value, account_id)
    else:
        logger.info(
            "[CONNECTIONS] Re-linking %s connection %s (was %s)",
            provider.value, connection.id, connection.status.value,
        )

    if name is not None:
        connection.name = name
    if selected_account_ids is not None:
        connection.selected_account_ids = _normalize_selection(provider, selected_account_ids)

    store_connection_credentials(db, connection, credentials)
    connection.status = ConnectionStatusEnum.active
    connection.token_state = TokenStateEnum.valid
    connection.token_refresh_started_at = None
    connection.last_sync_error = None
    if connection.sync_status == SYNC_ERROR:
        connection.sync_status = SYNC_IDLE
    db.commit()
    db.refresh(connection)
    return connection


def update_selected_accounts(
    db: Session,
    connection_id: UUID,
    account_id: UUID,
    external_ids: Sequence[str],
) -> Connection:
    """Replace the set of ad accounts synced for a connection (empty = all).

    Raises:
        ValueError: Connection does not exist for this tenant.
    """
    connection = db.get(Connection, connection_id)
    if connection is None or connection.account_id != account_id:
        raise ValueError("Connection not found")

    connection.selected_account_ids = _normalize_selection(connection.provider, external_ids)
    db.commit()
    logger.info(
        "[CONNECTIONS] Connection %s now syncs %s",
        connection_id, connection.selected_account_ids or "all accessible accounts",
    )
    return connection


def disconnect_connection(
    db: Session,
    connection_id: UUID,
    account_id: UUID,
    *,
    hard_delete: bool = True,
) -> bool:
    """Disconnect a provider.

    WHAT:
        hard_delete=True: delete the connection with its ad accounts,
            campaigns, ad groups, ads, insights and change history. Run
            history is kept (connection reference cleared).
        hard_delete=False: mark `disconnected` and drop stored credentials.

    Returns:
        False when the connection does not exist for this tenant.
    """
    connection = db.get(Connection, connection_id)
    if connection is None or connection.account_id != account_id:
        return False

    provider = connection.provider
    if not hard_delete:
        connection.status = ConnectionStatusEnum.disconnected
        connection.access_token_enc = None
        connection.refresh_token_enc = None
        connection.token_expires_at = None
        connection.token_refresh_started_at = None
        db.commit()
        logger.info("[CONNECTIONS] Connection %s soft-disconnected", connection_id)
        return True

    scope = {"account_id": account_id, "provider": provider}
    deleted = {}
    # Children first so the delete works without database-level cascades
    for label, model in (
        ("insights", Insight),
        ("changes", ChangeHistory),
        ("ads", Ad),
        ("ad_groups", AdGroup),
        ("campaigns", Campaign),
        ("ad_accounts", AdAccount),
    ):
        deleted[label] = (
            db.query(model)
            .filter_by(**scope)
            .delete(synchronize_session=False)
        )
    db.query(SyncHistory).filter(SyncHistory.connection_id == connection_id).update(
        {SyncHistory.connection_id: None}, synchronize_session=False
    )
    db.expire(connection)
    db.delete(connection)
    db.commit()
    logger.info("[CONNECTIONS] Connection %s deleted with synced data: %s", connection_id, deleted)
    return True
