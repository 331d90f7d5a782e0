"""
services/installment_service.py
-------------------------------
Installment lifecycle and the workflows that drive it.

States:
    PENDING -> PAID
    PENDING -> OVERDUE -> PAID
PAID is terminal: a paid installment cannot be updated, deleted or marked
again.

Every mutation follows the same steps:
    1. Read-only pre-checks (not found, conflict, consistency).
    2. A pending ledger event is recorded against the parent payment.
    3. One transaction locks the payment row, repeats the checks under the
       lock, writes the installment with a status guard and recomputes the
       payment status.
    4. The event is finalized (or marked failed if step 3 raised).
    5. Audit entry and staff notification, best-effort.
"""

from datetime import date
from decimal import ROUND_DOWN, Decimal
from typing import Callable, Optional

from dateutil.relativedelta import relativedelta

from config import LATE_FEE_RATE
from db.init_db import INSTALLMENT_NUMBER_UNIQUE
from models.event import SubjectRef
from models.event_payloads import EventType
from models.installment import Installment, InstallmentStatus
from models.payment import Payment
from models.requests import InstallmentPatch, NewInstallment, parse_request
from notifications.dispatcher import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    NotificationKind,
)
from repositories import Repositories, UnitOfWork
from services.audit_trail import AuditAction, AuditTrail
from services.event_ledger import EventLedgerService
from services.payment_status_service import PaymentStatusService
from utils.clock import Clock, utc_now
from utils.errors import (
    ConflictError,
    ConsistencyError,
    IntegrityViolation,
    LedgerError,
    NotFoundError,
    ValidationError,
)
from utils.logger import get_logger
from utils.money import CENT, ZERO, money_sum, positive_money, round_money, to_money
from utils.results import returns_result
from utils.validation import require_id, to_date

logger = get_logger(__name__)

# Step between consecutive due dates of an installment plan.
PLAN_FREQUENCIES: dict[str, Callable[[int], relativedelta]] = {
    "weekly": lambda k: relativedelta(weeks=k),
    "monthly": lambda k: relativedelta(months=k),
    "quarterly": lambda k: relativedelta(months=3 * k),
    "yearly": lambda k: relativedelta(years=k),
}


def compute_late_fee(installment: Installment, today: date, rate: Decimal) -> Decimal:
    """
    Late fee an installment should carry after being marked overdue.

    The fee is charged once: an installment that already has a fee keeps it,
    and nothing is charged before the due date has passed.
    """
    if installment.late_fee != ZERO or not installment.is_past_due(today):
        return installment.late_fee
    return round_money(installment.amount * rate)


def split_amount(total: Decimal, count: int) -> list[Decimal]:
    """Split `total` into `count` cent amounts; the remainder goes to the last."""
    base = (total / count).quantize(CENT, rounding=ROUND_DOWN)
    return [base] * (count - 1) + [total - base * (count - 1)]


class InstallmentService:
    """
    Handles installment creation, payment, overdue marking, edits and
    deletion, keeping the parent payment's status in step.

    Every public method returns `{"success": True, "data": ...}` or
    `{"success": False, "error": {...}}`; PersistenceError propagates.
    """

    def __init__(self, uow: UnitOfWork,
                 ledger: Optional[EventLedgerService] = None,
                 statuses: Optional[PaymentStatusService] = None,
                 audit: Optional[AuditTrail] = None,
                 notifier: Optional[NotificationDispatcher] = None,
                 clock: Clock = utc_now,
                 late_fee_rate: Decimal = LATE_FEE_RATE):
        self.uow = uow
        self.ledger = ledger or EventLedgerService(uow)
        self.statuses = statuses or PaymentStatusService(uow)
        self.audit = audit or AuditTrail(uow)
        self.notifier = notifier or LoggingNotificationDispatcher()
        self.clock = clock
        self.late_fee_rate = late_fee_rate

    def _today(self) -> date:
        return self.clock().date()

    # ── Shared checks ─────────────────────────────────────

    @staticmethod
    def _payment(repos: Repositories, tenant_id: int, payment_id: int,
                 lock: bool = False) -> Payment:
        payment = repos.payments.find_by_id(tenant_id, payment_id, for_update=lock)
        if payment is None:
            raise NotFoundError(f"Payment #{payment_id} not found")
        return payment

    @staticmethod
    def _check_number_free(live: list[Installment], number: int, payment_id: int) -> None:
        if any(i.installment_number == number for i in live):
            raise ConflictError(f"Installment #{number} already exists for payment #{payment_id}")

    @staticmethod
    def _check_total(payment: Payment, live: list[Installment], amount: Decimal,
                     exclude_id: Optional[int] = None) -> None:
        allocated = money_sum(i.amount for i in live if i.id != exclude_id)
        if allocated + amount > payment.total:
            raise ConsistencyError(
                f"Installments would total {allocated + amount:.2f}, "
                f"above payment #{payment.id} total {payment.total:.2f}"
            )

    def _check_create(self, repos: Repositories, tenant_id: int, payment_id: int,
                      number: int, amount: Decimal, lock: bool = False) -> Payment:
        payment = self._payment(repos, tenant_id, payment_id, lock=lock)
        live = repos.installments.list_for_payment(tenant_id, payment_id)
        self._check_number_free(live, number, payment_id)
        self._check_total(payment, live, amount)
        return payment

    def _open_installment(self, repos: Repositories, tenant_id: int, installment_id: int,
                          lock: bool = False) -> Installment:
        """
        Load an installment that may still change.

        With `lock`, the parent payment row is locked first and the
        installment is re-read under the lock.
        """
        installment = repos.installments.find_by_id(tenant_id, installment_id)
        if installment is not None and lock:
            self._payment(repos, tenant_id, installment.payment_id, lock=True)
            installment = repos.installments.find_by_id(tenant_id, installment_id)
        if installment is None:
            raise NotFoundError(f"Installment #{installment_id} not found")
        if installment.is_paid():
            raise ConflictError(f"Installment #{installment_id} is already paid")
        return installment

    @staticmethod
    def _stale(installment_id: int) -> ConflictError:
        return ConflictError(f"Installment #{installment_id} was changed by another request")

    def _after_commit(self, action: str, installment: Installment, actor_id: int,
                      tenant_id: int, details: dict,
                      notify: Optional[str] = None) -> None:
        self.audit.write(action, "installment", installment.id, actor_id, tenant_id, details)
        if notify:
            self.notifier.trigger(
                notify, SubjectRef.payment(installment.payment_id), actor_id,
                {"installment_id": installment.id, **details},
            )

    # ── CREATE ────────────────────────────────────────────

    @returns_result
    def create(self, tenant_id: int, actor_id: int, payment_id: int,
               installment_number: int, amount, due_date, remarks: Optional[str] = None) -> dict:
        """
        Add an installment to a payment.

        Args:
            installment_number: Positive, unique among the payment's live
                installments.
            amount: Positive, at most two decimals. Live installments may
                not total more than the payment.
            due_date: date or 'YYYY-MM-DD'.

        Returns (data):
            {"installment", "payment", "event"}
        """
        return self._create(tenant_id, actor_id, payment_id, installment_number,
                            amount, due_date, remarks)

    def _create(self, tenant_id, actor_id, payment_id, installment_number,
                amount, due_date, remarks=None) -> dict:
        require_id(tenant_id, "tenant_id")
        require_id(actor_id, "actor_id")
        require_id(payment_id, "payment_id")
        if isinstance(installment_number, bool) or not isinstance(installment_number, int) \
                or installment_number < 1:
            raise ValidationError("installment_number must be a positive integer")
        amount = positive_money(amount)
        due_date = to_date(due_date, "due_date")

        self.uow.run_in_transaction(
            lambda repos: self._check_create(repos, tenant_id, payment_id, installment_number, amount)
        )
        handle = self.ledger.record(
            EventType.INSTALLMENT_CREATED, SubjectRef.payment(payment_id), actor_id, tenant_id,
            {"installment_number": installment_number, "amount": amount, "due_date": due_date},
        )

        def _txn(repos):
            self._check_create(repos, tenant_id, payment_id, installment_number, amount, lock=True)
            installment = repos.installments.create(tenant_id, Installment(
                school_id=tenant_id,
                payment_id=payment_id,
                installment_number=installment_number,
                amount=amount,
                due_date=due_date,
                remarks=remarks,
            ))
            payment = self.statuses.recompute_in(repos, tenant_id, payment_id)
            return installment, payment

        try:
            (installment, payment), event = self.ledger.settle(
                handle,
                lambda: self.uow.run_in_transaction(_txn),
                lambda res: {"installment_id": res[0].id, "payment_status": res[1].status},
            )
        except IntegrityViolation as e:
            if e.constraint == INSTALLMENT_NUMBER_UNIQUE:
                raise ConflictError(
                    f"Installment #{installment_number} already exists for payment #{payment_id}"
                ) from e
            raise

        logger.info(f"Created {installment}")
        self._after_commit(AuditAction.CREATE, installment, actor_id, tenant_id, {
            "installment_number": installment_number, "amount": amount, "due_date": due_date,
        })
        return {"installment": installment, "payment": payment, "event": event}

    @returns_result
    def bulk_create(self, tenant_id: int, actor_id: int, payment_id: int, items: list) -> dict:
        """
        Create installments one by one. A failing item does not stop the
        others.

        Args:
            items: Dicts with installment_number, amount, due_date and
                optional remarks.

        Returns (data):
            {"created": [installment, ...],
             "errors": [{"installment_number", "error": {"code", "message"}}, ...]}
        """
        if not isinstance(items, (list, tuple)) or not items:
            raise ValidationError("items must be a non-empty list")
        return self._bulk(tenant_id, actor_id, payment_id, items)

    def _bulk(self, tenant_id, actor_id, payment_id, items) -> dict:
        created, errors = [], []
        for raw in items:
            number = raw.get("installment_number") if isinstance(raw, dict) \
                else getattr(raw, "installment_number", None)
            try:
                item = parse_request(NewInstallment, raw)
                result = self._create(tenant_id, actor_id, payment_id, item.installment_number,
                                      item.amount, item.due_date, item.remarks)
                created.append(result["installment"])
            except LedgerError as e:
                logger.warning(f"Bulk item #{number} for payment #{payment_id} rejected: {e.message}")
                errors.append({"installment_number": number, "error": e.to_dict()})
        logger.info(
            f"Bulk create for payment #{payment_id}: {len(created)} created, {len(errors)} failed"
        )
        return {"created": created, "errors": errors}

    @returns_result
    def create_plan(self, tenant_id: int, actor_id: int, payment_id: int, count: int,
                    first_due_date, frequency: str = "monthly") -> dict:
        """
        Schedule the payment's unallocated total as `count` installments.

        Amounts are equal to the cent, the remainder going to the last
        installment. Numbering continues after the highest live number and
        due dates step by `frequency` (weekly, monthly, quarterly, yearly)
        from `first_due_date`, clamped to month ends where needed.

        Returns (data):
            Same shape as bulk_create.
        """
        require_id(tenant_id, "tenant_id")
        require_id(payment_id, "payment_id")
        if isinstance(count, bool) or not isinstance(count, int) or count < 1:
            raise ValidationError("count must be a positive integer")
        step = PLAN_FREQUENCIES.get(frequency)
        if step is None:
            raise ValidationError(
                f"frequency must be one of: {', '.join(PLAN_FREQUENCIES)}"
            )
        first_due_date = to_date(first_due_date, "first_due_date")

        def _read(repos):
            payment = self._payment(repos, tenant_id, payment_id)
            return payment, repos.installments.list_for_payment(tenant_id, payment_id)

        payment, live = self.uow.run_in_transaction(_read)
        unallocated = payment.total - money_sum(i.amount for i in live)
        if unallocated <= ZERO:
            raise ConsistencyError(f"Payment #{payment_id} is already fully scheduled")
        amounts = split_amount(unallocated, count)
        if amounts[0] <= ZERO:
            raise ValidationError(f"{unallocated:.2f} cannot be split into {count} installments")

        start = max((i.installment_number for i in live), default=0) + 1
        items = [
            {
                "installment_number": start + k,
                "amount": amounts[k],
                "due_date": first_due_date + step(k),
            }
            for k in range(count)
        ]
        return self._bulk(tenant_id, actor_id, payment_id, items)

    # ── STATUS TRANSITIONS ────────────────────────────────

    @returns_result
    def mark_paid(self, tenant_id: int, actor_id: int, installment_id: int,
                  remarks: Optional[str] = None) -> dict:
        """
        PENDING/OVERDUE -> PAID, with today's paid_date.

        Returns (data):
            {"installment", "payment", "event"}
        """
        require_id(tenant_id, "tenant_id")
        require_id(actor_id, "actor_id")
        require_id(installment_id, "installment_id")

        current = self.uow.run_in_transaction(
            lambda repos: self._open_installment(repos, tenant_id, installment_id)
        )
        handle = self.ledger.record(
            EventType.INSTALLMENT_PAID, SubjectRef.payment(current.payment_id), actor_id, tenant_id,
            {
                "installment_id": current.id,
                "installment_number": current.installment_number,
                "amount": current.amount,
            },
        )

        def _txn(repos):
            self._open_installment(repos, tenant_id, installment_id, lock=True)
            installment = repos.installments.update(
                tenant_id, installment_id,
                {
                    "status": InstallmentStatus.PAID,
                    "paid_date": self._today(),
                    "remarks": remarks or "Marked as paid",
                },
                expected_status=InstallmentStatus.OPEN,
            )
            if installment is None:
                raise self._stale(installment_id)
            payment = self.statuses.recompute_in(repos, tenant_id, installment.payment_id)
            return installment, payment

        (installment, payment), event = self.ledger.settle(
            handle,
            lambda: self.uow.run_in_transaction(_txn),
            lambda res: {
                "remarks": res[0].remarks,
                "paid_date": res[0].paid_date,
                "payment_status": res[1].status,
            },
        )
        logger.info(f"Marked paid: {installment}")
        self._after_commit(AuditAction.PAY, installment, actor_id, tenant_id, {
            "amount": installment.amount,
            "paid_date": installment.paid_date,
            "payment_status": payment.status,
        }, notify=NotificationKind.INSTALLMENT_PAID)
        return {"installment": installment, "payment": payment, "event": event}

    @returns_result
    def mark_overdue(self, tenant_id: int, actor_id: int, installment_id: int) -> dict:
        """
        PENDING/OVERDUE -> OVERDUE.

        A late fee of amount x rate is charged once, and only when the due
        date has passed.

        Returns (data):
            {"installment", "payment", "event"}
        """
        return self._mark_overdue(tenant_id, actor_id, installment_id)

    def _mark_overdue(self, tenant_id, actor_id, installment_id) -> dict:
        require_id(tenant_id, "tenant_id")
        require_id(actor_id, "actor_id")
        require_id(installment_id, "installment_id")

        current = self.uow.run_in_transaction(
            lambda repos: self._open_installment(repos, tenant_id, installment_id)
        )
        handle = self.ledger.record(
            EventType.INSTALLMENT_OVERDUE, SubjectRef.payment(current.payment_id), actor_id,
            tenant_id,
            {
                "installment_id": current.id,
                "installment_number": current.installment_number,
                "amount": current.amount,
            },
        )

        def _txn(repos):
            locked = self._open_installment(repos, tenant_id, installment_id, lock=True)
            late_fee = compute_late_fee(locked, self._today(), self.late_fee_rate)
            installment = repos.installments.update(
                tenant_id, installment_id,
                {"status": InstallmentStatus.OVERDUE, "late_fee": late_fee},
                expected_status=InstallmentStatus.OPEN,
            )
            if installment is None:
                raise self._stale(installment_id)
            payment = self.statuses.recompute_in(repos, tenant_id, installment.payment_id)
            return installment, payment

        (installment, payment), event = self.ledger.settle(
            handle,
            lambda: self.uow.run_in_transaction(_txn),
            lambda res: {"late_fee": res[0].late_fee, "payment_status": res[1].status},
        )
        logger.info(f"Marked overdue: {installment}, late fee {installment.late_fee:.2f}")
        self._after_commit(AuditAction.OVERDUE, installment, actor_id, tenant_id, {
            "amount": installment.amount,
            "late_fee": installment.late_fee,
            "due_date": installment.due_date,
            "payment_status": payment.status,
        }, notify=NotificationKind.INSTALLMENT_OVERDUE)
        return {"installment": installment, "payment": payment, "event": event}

    @returns_result
    def sweep_overdue(self, tenant_id: int, actor_id: int, as_of=None) -> dict:
        """
        Mark every live PENDING installment due before `as_of` (default
        today) overdue, one at a time.

        Returns (data):
            {"as_of", "marked": [installment, ...],
             "errors": [{"installment_id", "error"}, ...]}
        """
        require_id(tenant_id, "tenant_id")
        require_id(actor_id, "actor_id")
        today = self._today()
        as_of = today if as_of is None else to_date(as_of, "as_of")
        if as_of > today:
            raise ValidationError("as_of cannot be in the future")

        due = self.uow.run_in_transaction(
            lambda repos: repos.installments.list_past_due(tenant_id, as_of)
        )
        marked, errors = [], []
        for installment in due:
            try:
                marked.append(self._mark_overdue(tenant_id, actor_id, installment.id)["installment"])
            except LedgerError as e:
                logger.warning(f"Overdue sweep skipped installment #{installment.id}: {e.message}")
                errors.append({"installment_id": installment.id, "error": e.to_dict()})
        logger.info(
            f"Overdue sweep for school {tenant_id} as of {as_of}: "
            f"{len(marked)} marked, {len(errors)} failed"
        )
        return {"as_of": as_of, "marked": marked, "errors": errors}

    # ── UPDATE / DELETE ───────────────────────────────────

    @returns_result
    def update(self, tenant_id: int, actor_id: int, installment_id: int, patch) -> dict:
        """
        Change amount, due_date, late_fee or remarks of an unpaid installment.

        Args:
            patch: InstallmentPatch or a dict with only those keys.

        Returns (data):
            {"installment", "payment", "event"}
        """
        require_id(tenant_id, "tenant_id")
        require_id(actor_id, "actor_id")
        require_id(installment_id, "installment_id")
        changes = parse_request(InstallmentPatch, patch).changes()
        if not changes:
            raise ValidationError("Nothing to update")
        for field in ("amount", "late_fee"):
            if field in changes:
                changes[field] = to_money(changes[field], field)

        def _check(repos, lock=False) -> Installment:
            installment = self._open_installment(repos, tenant_id, installment_id, lock=lock)
            if "amount" in changes:
                payment = self._payment(repos, tenant_id, installment.payment_id)
                live = repos.installments.list_for_payment(tenant_id, installment.payment_id)
                self._check_total(payment, live, changes["amount"], exclude_id=installment.id)
            return installment

        current = self.uow.run_in_transaction(_check)
        handle = self.ledger.record(
            EventType.INSTALLMENT_UPDATED, SubjectRef.payment(current.payment_id), actor_id,
            tenant_id,
            {
                "installment_id": current.id,
                "changes": changes,
                "previous": {field: getattr(current, field) for field in changes},
            },
        )

        def _txn(repos):
            _check(repos, lock=True)
            installment = repos.installments.update(
                tenant_id, installment_id, changes, expected_status=InstallmentStatus.OPEN,
            )
            if installment is None:
                raise self._stale(installment_id)
            payment = self.statuses.recompute_in(repos, tenant_id, installment.payment_id)
            return installment, payment

        (installment, payment), event = self.ledger.settle(
            handle, lambda: self.uow.run_in_transaction(_txn),
        )
        logger.info(f"Updated {installment}: {sorted(changes)}")
        self._after_commit(AuditAction.UPDATE, installment, actor_id, tenant_id, changes)
        return {"installment": installment, "payment": payment, "event": event}

    @returns_result
    def delete(self, tenant_id: int, actor_id: int, installment_id: int) -> dict:
        """
        Soft-delete an unpaid installment and recompute the payment.

        Returns (data):
            {"installment", "payment", "event"}
        """
        require_id(tenant_id, "tenant_id")
        require_id(actor_id, "actor_id")
        require_id(installment_id, "installment_id")

        current = self.uow.run_in_transaction(
            lambda repos: self._open_installment(repos, tenant_id, installment_id)
        )
        handle = self.ledger.record(
            EventType.INSTALLMENT_DELETED, SubjectRef.payment(current.payment_id), actor_id,
            tenant_id,
            {"installment_id": current.id, "installment_number": current.installment_number},
        )

        def _txn(repos):
            self._open_installment(repos, tenant_id, installment_id, lock=True)
            installment = repos.installments.soft_delete(
                tenant_id, installment_id, expected_status=InstallmentStatus.OPEN,
            )
            if installment is None:
                raise self._stale(installment_id)
            payment = self.statuses.recompute_in(repos, tenant_id, installment.payment_id)
            return installment, payment

        (installment, payment), event = self.ledger.settle(
            handle,
            lambda: self.uow.run_in_transaction(_txn),
            lambda res: {"payment_status": res[1].status},
        )
        logger.info(f"Deleted {installment}")
        self._after_commit(AuditAction.DELETE, installment, actor_id, tenant_id, {
            "installment_number": installment.installment_number,
            "payment_status": payment.status,
        })
        return {"installment": installment, "payment": payment, "event": event}

    # ── READ ──────────────────────────────────────────────

    @returns_result
    def list_for_payment(self, tenant_id: int, payment_id: int) -> list[Installment]:
        """Live installments of a payment in number order."""
        require_id(tenant_id, "tenant_id")
        require_id(payment_id, "payment_id")

        def _read(repos):
            self._payment(repos, tenant_id, payment_id)
            return repos.installments.list_for_payment(tenant_id, payment_id)

        return self.uow.run_in_transaction(_read)

    @returns_result
    def get(self, tenant_id: int, installment_id: int) -> Installment:
        """One live installment of the tenant."""
        require_id(tenant_id, "tenant_id")
        require_id(installment_id, "installment_id")

        installment = self.uow.run_in_transaction(
            lambda repos: repos.installments.find_by_id(tenant_id, installment_id)
        )
        if installment is None:
            raise NotFoundError(f"Installment #{installment_id} not found")
        return installment

    @returns_result
    def list_upcoming(self, tenant_id: int, days: int = 30) -> list[Installment]:
        """
        Unpaid installments falling due from today through `days` days
        ahead, earliest first.
        """
        require_id(tenant_id, "tenant_id")
        if isinstance(days, bool) or not isinstance(days, int) or days < 0:
            raise ValidationError("days must be a non-negative integer")

        today = self._today()
        end = today + relativedelta(days=days)
        return self.uow.run_in_transaction(
            lambda repos: repos.installments.list_upcoming(tenant_id, today, end)
        )
