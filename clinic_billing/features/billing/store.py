"""
Entitlement store.

One mutable row per tenant in the `entitlements` table plus the
`billing_events` ledger. Every mutation is a single transaction:
at most one ledger insert and one entitlement upsert, committed together.

upsert() is a partial merge. Fields absent from the update keep their
stored values, so a transition that does not carry e.g. the customer
reference never clears it.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import and_, insert, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from clinic_billing.core.database import get_db_session, entitlements, billing_events
from clinic_billing.features.billing.errors import DuplicateEvent, StoreUnavailable
from clinic_billing.models.entitlement import Entitlement

UPDATABLE_FIELDS = frozenset({
    "billing_customer_ref",
    "billing_subscription_ref",
    "status",
    "plan_tier",
    "period_end",
    "last_event_at",
})

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


@dataclass(frozen=True)
class EventRecord:
    """Ledger row written alongside the mutation an event caused."""
    event_id: str
    event_type: str
    outcome: str
    tenant_id: Optional[str] = None
    subscription_ref: Optional[str] = None
    payload_hash: Optional[str] = None
    occurred_at: Optional[datetime] = None


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC datetime; naive values (SQLite) are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _db_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return as_utc(value)
    return value


def _to_entitlement(row) -> Entitlement:
    return Entitlement(
        tenant_id=row.tenant_id,
        billing_customer_ref=row.billing_customer_ref,
        billing_subscription_ref=row.billing_subscription_ref,
        status=row.status,
        plan_tier=row.plan_tier,
        period_end=as_utc(row.period_end),
        last_event_at=as_utc(row.last_event_at),
        updated_at=as_utc(row.updated_at),
    )


class EntitlementStore:
    """SQLAlchemy-backed entitlement persistence."""

    def get(self, tenant_id: str) -> Optional[Entitlement]:
        return self._fetch_one(entitlements.c.tenant_id == tenant_id)

    def find_by_subscription_ref(self, subscription_ref: str) -> Optional[Entitlement]:
        """Lookup for events keyed by subscription rather than tenant."""
        return self._fetch_one(entitlements.c.billing_subscription_ref == subscription_ref)

    def has_processed(self, event_id: str) -> bool:
        try:
            with get_db_session() as session:
                row = session.execute(
                    select(billing_events.c.id).where(billing_events.c.event_id == event_id)
                ).fetchone()
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Entitlement store unavailable: {e}") from e
        return row is not None

    def list_subscribed(self, limit: int = 100) -> List[Entitlement]:
        """Entitlements carrying a subscription reference, oldest update first."""
        try:
            with get_db_session() as session:
                rows = session.execute(
                    select(entitlements)
                    .where(entitlements.c.billing_subscription_ref.is_not(None))
                    .order_by(entitlements.c.updated_at.asc(), entitlements.c.tenant_id.asc())
                    .limit(limit)
                ).fetchall()
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Entitlement store unavailable: {e}") from e
        return [_to_entitlement(row) for row in rows]

    def ensure_default(self, tenant_id: str) -> Entitlement:
        """Create the default (status=none) row if the tenant has none yet."""
        try:
            with get_db_session() as session:
                dialect_insert = self._insert_for(session)
                if dialect_insert is not None:
                    session.execute(
                        dialect_insert(entitlements)
                        .values(tenant_id=tenant_id)
                        .on_conflict_do_nothing(index_elements=[entitlements.c.tenant_id])
                    )
                else:
                    exists = session.execute(
                        select(entitlements.c.tenant_id).where(entitlements.c.tenant_id == tenant_id)
                    ).fetchone()
                    if not exists:
                        session.execute(insert(entitlements).values(tenant_id=tenant_id))
        except IntegrityError:
            # Concurrent registration inserted the row first
            pass
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Entitlement store unavailable: {e}") from e

        entitlement = self.get(tenant_id)
        if entitlement is None:
            raise StoreUnavailable(f"Entitlement for {tenant_id} missing after insert")
        return entitlement

    def upsert(
        self,
        tenant_id: str,
        fields: Mapping[str, Any],
        *,
        event: Optional[EventRecord] = None,
        not_after: Optional[datetime] = None,
        subscription_ref: Optional[str] = None,
    ) -> bool:
        """Partial-merge write of one tenant's entitlement.

        Args:
            tenant_id: row key; the row is created when absent
            fields: subset of UPDATABLE_FIELDS to set
            event: ledger row committed in the same transaction
            not_after: when set, an existing row whose last_event_at is newer
                than this is left untouched (strict ordering)
            subscription_ref: when set, only an existing row still bound to this
                subscription is written; no row is created

        Returns:
            False when a guard skipped the write, True otherwise.

        Raises:
            DuplicateEvent: the ledger already holds event.event_id
            StoreUnavailable: any database failure; nothing is committed
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown entitlement fields: {', '.join(sorted(unknown))}")
        if not fields:
            raise ValueError("upsert requires at least one field")

        values = {key: _db_value(value) for key, value in fields.items()}
        values["updated_at"] = datetime.now(timezone.utc)
        guard = None
        if not_after is not None:
            guard = or_(
                entitlements.c.last_event_at.is_(None),
                entitlements.c.last_event_at <= as_utc(not_after),
            )
        if subscription_ref is not None:
            ref_guard = entitlements.c.billing_subscription_ref == subscription_ref
            guard = ref_guard if guard is None else and_(guard, ref_guard)

        try:
            with get_db_session() as session:
                if event is not None:
                    self._insert_event(session, event)

                dialect_insert = self._insert_for(session)
                if subscription_ref is not None:
                    written = session.execute(
                        update(entitlements)
                        .where(and_(entitlements.c.tenant_id == tenant_id, guard))
                        .values(**values)
                    ).rowcount != 0
                elif dialect_insert is not None:
                    stmt = dialect_insert(entitlements).values(tenant_id=tenant_id, **values)
                    stmt = stmt.on_conflict_do_update(
                        index_elements=[entitlements.c.tenant_id],
                        set_=values,
                        where=guard,
                    )
                    written = session.execute(stmt).rowcount != 0
                else:
                    written = self._update_or_insert(session, tenant_id, values, guard)

                if not written and event is not None:
                    session.execute(
                        update(billing_events)
                        .where(billing_events.c.event_id == event.event_id)
                        .values(outcome="stale")
                    )
        except IntegrityError as e:
            if event is not None:
                raise DuplicateEvent(f"Event {event.event_id} already recorded") from e
            raise StoreUnavailable(f"Entitlement write rejected: {e}") from e
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Entitlement store unavailable: {e}") from e

        return written

    def record_event(self, event: EventRecord) -> None:
        """Ledger-only write for events that change no entitlement."""
        try:
            with get_db_session() as session:
                self._insert_event(session, event)
        except IntegrityError as e:
            raise DuplicateEvent(f"Event {event.event_id} already recorded") from e
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Entitlement store unavailable: {e}") from e

    def _fetch_one(self, condition) -> Optional[Entitlement]:
        try:
            with get_db_session() as session:
                row = session.execute(select(entitlements).where(condition)).fetchone()
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Entitlement store unavailable: {e}") from e
        return _to_entitlement(row) if row else None

    @staticmethod
    def _insert_for(session):
        return _DIALECT_INSERTS.get(session.get_bind().dialect.name)

    @staticmethod
    def _insert_event(session, event: EventRecord) -> None:
        session.execute(
            insert(billing_events).values(
                event_id=event.event_id,
                event_type=event.event_type,
                tenant_id=event.tenant_id,
                subscription_ref=event.subscription_ref,
                outcome=event.outcome,
                payload_hash=event.payload_hash,
                occurred_at=as_utc(event.occurred_at),
            )
        )

    @staticmethod
    def _update_or_insert(session, tenant_id: str, values: Dict[str, Any], guard) -> bool:
        """Portable upsert for dialects without ON CONFLICT, same transaction."""
        exists = session.execute(
            select(entitlements.c.tenant_id).where(entitlements.c.tenant_id == tenant_id)
        ).fetchone()
        if not exists:
            session.execute(insert(entitlements).values(tenant_id=tenant_id, **values))
            return True
        condition = entitlements.c.tenant_id == tenant_id
        if guard is not None:
            condition = condition & guard
        return session.execute(update(entitlements).where(condition).values(**values)).rowcount != 0
