"""Entity reconciler.

WHAT:
    Upserts the remote entity hierarchy (ad accounts, campaigns, ad groups,
    ads) into local rows keyed by the natural key
    (account_id, provider, external_id), and emits change events for
    tracked fields through the change detector.

WHY:
    - Keyed by natural key, never by list position, so a reordered or
      partially failed provider response can't attach data to the wrong row.
    - Absence in a fetch is not deletion: entities missing from the latest
      response are left untouched. Only an explicit archived/deleted status
      marks an entity gone.
    - Linkage problems (wrong tenant, wrong provider, wrong parent) reject the
      record, never the batch.

REFERENCES:
    - adsync/services/change_detector.py (detect_changes / record_changes)
    - adsync/services/sync_orchestrator.py (caller)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Type
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from adsync.models import (
    Ad,
    AdAccount,
    AdGroup,
    Campaign,
    Connection,
    EntityTypeEnum,
    ProviderEnum,
)
from adsync.schemas import RemoteAdAccount, RemoteEntity
from adsync.services.change_detector import detect_changes, record_changes
from adsync.services.provider_client import normalize_account_id
from adsync.services.provider_errors import ReconciliationConflict
from adsync.utils.clock import utcnow

logger = logging.getLogger(__name__)


class ReconcileResult:
    """Outcome of one reconcile batch.

    `local_ids` maps each accepted external id to its local row id so the
    orchestrator can walk into children.
    """

    def __init__(self):
        self.created = 0
        self.updated = 0
        self.unchanged = 0
        self.rejected = 0
        self.changes = 0
        self.errors: List[Dict[str, Any]] = []
        self.local_ids: Dict[str, UUID] = {}
        self.missing_selected: List[str] = []

    @property
    def total(self) -> int:
        return self.created + self.updated + self.unchanged

    def __repr__(self):
        return (
            f"ReconcileResult(created={self.created}, updated={self.updated}, "
            f"unchanged={self.unchanged}, rejected={self.rejected}, changes={self.changes})"
        )


# Child model, parent model and FK column per reconcilable level
_LEVELS: Dict[EntityTypeEnum, tuple] = {
    EntityTypeEnum.campaign: (Campaign, AdAccount, "ad_account_id"),
    EntityTypeEnum.ad_group: (AdGroup, Campaign, "campaign_id"),
    EntityTypeEnum.ad: (Ad, AdGroup, "ad_group_id"),
}


def snapshot_of(row: Any) -> Dict[str, Any]:
    """Comparable view of a local row (same shape as `remote_snapshot`)."""
    snap: Dict[str, Any] = {
        "name": row.name,
        "status": row.status.value if row.status is not None else None,
        "metadata": row.metadata_ or {},
    }
    for attr in ("objective", "daily_budget", "lifetime_budget", "creative", "currency", "timezone"):
        if hasattr(row, attr):
            snap[attr] = getattr(row, attr)
    return snap


def remote_snapshot(remote: Any) -> Dict[str, Any]:
    data = remote.model_dump(mode="json", exclude={"external_id", "parent_external_id"})
    return data


def _apply(row: Any, remote: Any) -> None:
    row.name = remote.name
    row.status = remote.status
    row.metadata_ = remote.metadata
    for attr in ("objective", "daily_budget", "lifetime_budget", "creative", "currency", "timezone"):
        if hasattr(row, attr) and hasattr(remote, attr):
            setattr(row, attr, getattr(remote, attr))


class EntityReconciler:
    """Reconciles one tenant's entities for one provider.

    Usage:
        ```python
        reconciler = EntityReconciler(db, account_id, ProviderEnum.meta, sync_run_id=run.id)
        result = reconciler.reconcile(EntityTypeEnum.campaign, ad_account.id, remote_campaigns)
        ```
    """

    def __init__(self, db: Session, account_id: UUID, provider: ProviderEnum, *, sync_run_id: Optional[UUID] = None):
        self.db = db
        self.account_id = account_id
        self.provider = provider
        self.sync_run_id = sync_run_id

    # --- Ad accounts ----------------------------------------------------
    def reconcile_ad_accounts(self, connection: Connection, remote_accounts: Sequence[RemoteAdAccount]) -> ReconcileResult:
        """Upsert the connection's ad accounts.

        Only accounts in `connection.selected_account_ids` are kept when the
        selection is non-empty.
        """
        result = ReconcileResult()
        if connection.account_id != self.account_id or connection.provider != self.provider:
            for remote in remote_accounts:
                self._reject(result, remote.external_id, "connection belongs to another tenant or provider")
            return result

        selected = {normalize_account_id(self.provider, s) for s in (connection.selected_account_ids or [])}
        for remote in remote_accounts:
            if selected and remote.external_id not in selected:
                continue
            try:
                self._upsert(
                    result,
                    AdAccount,
                    EntityTypeEnum.ad_account,
                    remote,
                    extra={"connection_id": connection.id},
                )
            except ReconciliationConflict as e:
                self._reject(result, remote.external_id, str(e))

        result.missing_selected = sorted(selected - {remote.external_id for remote in remote_accounts})
        if result.missing_selected:
            logger.warning(
                "[RECONCILER] Selected ad accounts not accessible for %s: %s",
                connection, ", ".join(result.missing_selected),
            )

        self.db.flush()
        logger.info("[RECONCILER] ad_account batch for %s: %r", connection, result)
        return result

    # --- Campaigns / ad groups / ads -----------------------------------
    def reconcile(self, entity_type: EntityTypeEnum, parent_local_id: UUID, remote_entities: Sequence[RemoteEntity]) -> ReconcileResult:
        """Upsert one level of the hierarchy under a local parent.

        WHAT:
            Absent -> created (no change rows). Present -> tracked fields
            compared; differences update the row and emit change rows.
            Linkage mismatches -> rejected and logged.
        """
        if entity_type not in _LEVELS:
            raise ValueError(f"Cannot reconcile {entity_type} under a parent")
        model, parent_model, fk = _LEVELS[entity_type]
        result = ReconcileResult()

        parent = self.db.get(parent_model, parent_local_id)
        parent_problem = self._parent_problem(parent)

        for remote in remote_entities:
            try:
                if parent_problem:
                    raise ReconciliationConflict(parent_problem, external_id=remote.external_id)
                if remote.parent_external_id and remote.parent_external_id != parent.external_id:
                    raise ReconciliationConflict(
                        f"{entity_type.value} {remote.external_id} reports parent {remote.parent_external_id}, "
                        f"expected {parent.external_id}",
                        external_id=remote.external_id,
                    )
                self._upsert(result, model, entity_type, remote, extra={fk: parent.id})
            except ReconciliationConflict as e:
                self._reject(result, remote.external_id, str(e))

        self.db.flush()
        logger.info("[RECONCILER] %s batch: %r", entity_type.value, result)
        return result

    # --- Internals ------------------------------------------------------
    def _parent_problem(self, parent: Any) -> Optional[str]:
        if parent is None:
            return "parent entity not found"
        if parent.account_id != self.account_id:
            return "parent belongs to another tenant"
        if parent.provider != self.provider:
            return "parent belongs to another provider"
        return None

    def _find(self, model: Type[Any], external_id: str) -> Optional[Any]:
        return (
            self.db.query(model)
            .filter(
                model.account_id == self.account_id,
                model.provider == self.provider,
                model.external_id == external_id,
            )
            .one_or_none()
        )

    def _upsert(self, result: ReconcileResult, model: Type[Any], entity_type: EntityTypeEnum, remote: Any, extra: Dict[str, Any]) -> None:
        now = utcnow()
        existing = self._find(model, remote.external_id)

        if existing is None:
            row = model(
                account_id=self.account_id,
                provider=self.provider,
                external_id=remote.external_id,
                last_synced_at=now,
                **extra,
            )
            _apply(row, remote)
            try:
                with self.db.begin_nested():
                    self.db.add(row)
                    self.db.flush()
            except IntegrityError:
                # Lost an insert race on the natural key; the winner's row is now visible
                logger.info("[RECONCILER] %s %s inserted concurrently; updating instead",
                            entity_type.value, remote.external_id)
                existing = self._find(model, remote.external_id)
                if existing is None:
                    raise
            else:
                result.created += 1
                result.local_ids[remote.external_id] = row.id
                return

        for column, value in extra.items():
            if column == "connection_id":
                # Re-linked connections adopt their previous ad accounts
                existing.connection_id = value
            elif getattr(existing, column) != value:
                raise ReconciliationConflict(
                    f"{entity_type.value} {remote.external_id} is attached to a different parent",
                    external_id=remote.external_id,
                )

        events = detect_changes(
            entity_type=entity_type,
            entity_id=existing.id,
            account_id=self.account_id,
            provider=self.provider,
            external_id=remote.external_id,
            old_snapshot=snapshot_of(existing),
            new_snapshot=remote_snapshot(remote),
        )
        _apply(existing, remote)
        existing.last_synced_at = now
        if events:
            record_changes(self.db, events, sync_run_id=self.sync_run_id, detected_at=now)
            result.updated += 1
            result.changes += len(events)
        else:
            result.unchanged += 1
        result.local_ids[remote.external_id] = existing.id

    def _reject(self, result: ReconcileResult, external_id: Optional[str], reason: str) -> None:
        result.rejected += 1
        result.errors.append({"external_id": external_id, "error": reason})
        logger.warning("[RECONCILER] Rejected %s for account %s (%s): %s",
                       external_id, self.account_id, self.provider.value, reason)
