"""
services/event_ledger.py
------------------------
Append-only ledger of domain events.

Every mutation in the workflows is preceded by a `record` call that writes
a pending event in its own transaction. Once the mutation commits, the
event is finalized with its outcome; if the mutation fails, the event is
marked failed. An event is never deleted, so a pending or failed row is the
trace of an intent that did not complete.
"""

from typing import Any, Callable, Optional, TypeVar

from models.event import EventHandle, EventStatus, LedgerEvent, SubjectRef, SubjectType
from models.event_payloads import EVENT_SUBJECTS, build_metadata
from repositories import UnitOfWork
from utils.errors import ConflictError, LedgerError, NotFoundError, ValidationError
from utils.logger import get_logger
from utils.validation import require_id

logger = get_logger(__name__)

T = TypeVar("T")


class EventLedgerService:
    """Creates, finalizes and reads ledger events."""

    def __init__(self, uow: UnitOfWork):
        self.uow = uow

    # ── WRITE ─────────────────────────────────────────────

    def record(self, event_type: str, subject: SubjectRef, actor_id: int,
               tenant_id: int, metadata: Optional[dict] = None) -> EventHandle:
        """
        Write a pending event in its own transaction.

        Args:
            event_type: One of models.event_payloads.EventType.
            subject: The customer, student or payment the event documents.
            actor_id: Who asked for the change.
            tenant_id: Owning school.
            metadata: Payload for `event_type`; validated against its schema.

        Returns:
            An EventHandle for finalize / mark_failed.

        Raises:
            ValidationError: Missing ids, unknown event type, event type not
                allowed for the subject, or metadata that fails its schema.
            PersistenceError: If the row cannot be committed.
        """
        require_id(tenant_id, "tenant_id")
        require_id(actor_id, "actor_id")
        if subject is None or subject.subject_type not in SubjectType.ALL:
            raise ValidationError("subject must be a CUSTOMER, STUDENT or PAYMENT reference")
        require_id(subject.subject_id, "subject_id")
        expected_subject = EVENT_SUBJECTS.get(event_type)
        if expected_subject is None:
            raise ValidationError(f"Unknown event type: {event_type}")
        if expected_subject != subject.subject_type:
            raise ValidationError(
                f"{event_type} events document a {expected_subject}, not a {subject.subject_type}"
            )

        payload = build_metadata(event_type, metadata)
        event = LedgerEvent(
            school_id=tenant_id,
            subject_type=subject.subject_type,
            subject_id=subject.subject_id,
            event_type=event_type,
            actor_id=actor_id,
            metadata=payload,
            status=EventStatus.PENDING,
            schema_version=payload["schema_version"],
        )
        saved = self.uow.run_in_transaction(lambda repos: repos.events.create(tenant_id, event))
        logger.info(f"Recorded {saved}")
        return saved.handle

    def finalize(self, handle: EventHandle, outcome_patch: Optional[dict] = None) -> LedgerEvent:
        """
        Merge the outcome into the event's metadata and mark it committed.

        Finalizing again with the same patch returns the event unchanged.

        Raises:
            NotFoundError: Unknown handle.
            ValidationError: The merged metadata fails its schema.
            ConflictError: The event failed, or was already finalized with
                different metadata.
        """
        patch = dict(outcome_patch or {})

        def _finalize(repos) -> LedgerEvent:
            event = self._load(repos, handle, for_update=True)
            if event.status == EventStatus.FAILED:
                raise ConflictError(f"Event #{event.id} failed and cannot be finalized")
            merged = build_metadata(event.event_type, {**event.metadata, **patch})
            if event.status == EventStatus.COMMITTED:
                if merged == event.metadata:
                    return event
                raise ConflictError(f"Event #{event.id} is already finalized")
            return repos.events.update(
                handle.tenant_id, handle.id,
                {"metadata": merged, "status": EventStatus.COMMITTED},
            )

        event = self.uow.run_in_transaction(_finalize)
        logger.info(f"Finalized {event}")
        return event

    def mark_failed(self, handle: EventHandle, reason: str) -> LedgerEvent:
        """
        Mark a pending event failed and store the reason in its metadata.

        Idempotent for an event that already failed.

        Raises:
            NotFoundError: Unknown handle.
            ConflictError: The event is already committed.
        """
        def _fail(repos) -> LedgerEvent:
            event = self._load(repos, handle, for_update=True)
            if event.status == EventStatus.FAILED:
                return event
            if event.status == EventStatus.COMMITTED:
                raise ConflictError(f"Event #{event.id} is committed and cannot fail")
            metadata = build_metadata(
                event.event_type, {**event.metadata, "failure_reason": reason or "unknown"}
            )
            return repos.events.update(
                handle.tenant_id, handle.id,
                {"metadata": metadata, "status": EventStatus.FAILED},
            )

        event = self.uow.run_in_transaction(_fail)
        logger.warning(f"Marked {event} failed: {reason}")
        return event

    def settle(self, handle: EventHandle, work: Callable[[], T],
               outcome: Optional[Callable[[T], dict]] = None) -> tuple[T, LedgerEvent]:
        """
        Run the mutation an event documents and close the event.

        On success the event is finalized with `outcome(result)`. If `work`
        raises, the event is marked failed and the exception is re-raised.

        Returns:
            (result of work, finalized event)
        """
        try:
            result = work()
        except Exception as e:
            self._fail_quietly(handle, e)
            raise
        event = self.finalize(handle, outcome(result) if outcome else None)
        return result, event

    def _fail_quietly(self, handle: EventHandle, error: Exception) -> None:
        reason = error.message if isinstance(error, LedgerError) else f"{type(error).__name__}: {error}"
        try:
            self.mark_failed(handle, reason)
        except Exception as e:
            logger.error(f"Could not mark event #{handle.id} failed ({reason}): {e}")

    # ── READ ──────────────────────────────────────────────

    def get(self, handle: EventHandle) -> LedgerEvent:
        """
        Raises:
            NotFoundError: Unknown handle.
        """
        return self.uow.run_in_transaction(lambda repos: self._load(repos, handle))

    def timeline(self, tenant_id: int, subject: SubjectRef) -> list[LedgerEvent]:
        """Every event of a subject, oldest first."""
        require_id(tenant_id, "tenant_id")
        return self.uow.run_in_transaction(
            lambda repos: repos.events.list_for_subject(
                tenant_id, subject.subject_type, subject.subject_id
            )
        )

    @staticmethod
    def _load(repos, handle: EventHandle, for_update: bool = False) -> LedgerEvent:
        event = repos.events.find_by_id(handle.tenant_id, handle.id, for_update=for_update)
        if event is None:
            raise NotFoundError(f"Event #{handle.id} not found")
        return event


def describe(events: list[LedgerEvent]) -> list[dict[str, Any]]:
    """Plain-dict view of events, e.g. for a timeline response."""
    return [
        {
            "id": e.id,
            "event_type": e.event_type,
            "status": e.status,
            "actor_id": e.actor_id,
            "metadata": e.metadata,
            "created_at": e.created_at.isoformat() if e.created_at else None,
        }
        for e in events
    ]
