"""
services/payment_status_service.py
----------------------------------
Derives a payment's aggregate status from its installments.

The derivation is a pure function of the payment's live installments:

    all PAID                 -> PAID
    any OVERDUE              -> OVERDUE
    some PAID, none OVERDUE  -> PARTIALLY_PAID
    otherwise                -> PENDING

A payment with no installments keeps whatever status it has.
"""

from typing import Iterable, Optional

from models.installment import Installment, InstallmentStatus
from models.payment import Payment, PaymentStatus
from repositories import Repositories, UnitOfWork
from utils.errors import ConflictError, NotFoundError, ValidationError
from utils.logger import get_logger
from utils.results import returns_result
from utils.validation import require_id

logger = get_logger(__name__)


def derive_payment_status(installments: Iterable[Installment]) -> Optional[str]:
    """
    Returns:
        The derived PaymentStatus, or None when there are no installments.
    """
    statuses = [i.status for i in installments]
    if not statuses:
        return None
    if all(s == InstallmentStatus.PAID for s in statuses):
        return PaymentStatus.PAID
    if InstallmentStatus.OVERDUE in statuses:
        return PaymentStatus.OVERDUE
    if InstallmentStatus.PAID in statuses:
        return PaymentStatus.PARTIALLY_PAID
    return PaymentStatus.PENDING


class PaymentStatusService:
    """Keeps Payment.status consistent with the installments."""

    def __init__(self, uow: UnitOfWork):
        self.uow = uow

    def recompute_in(self, repos: Repositories, tenant_id: int, payment_id: int) -> Payment:
        """
        Recompute inside the caller's transaction.

        Writes only when the derived status differs from the stored one.

        Raises:
            NotFoundError: If the payment is absent in the tenant.
        """
        payment = repos.payments.find_by_id(tenant_id, payment_id, for_update=True)
        if payment is None:
            raise NotFoundError(f"Payment #{payment_id} not found")
        derived = derive_payment_status(repos.installments.list_for_payment(tenant_id, payment_id))
        if derived is None or derived == payment.status:
            return payment
        updated = repos.payments.update_status(tenant_id, payment_id, derived)
        logger.info(f"Payment #{payment_id} status {payment.status} -> {derived}")
        return updated

    @returns_result
    def recompute(self, tenant_id: int, payment_id: int) -> Payment:
        """Recompute in a transaction of its own."""
        require_id(tenant_id, "tenant_id")
        require_id(payment_id, "payment_id")
        return self.uow.run_in_transaction(
            lambda repos: self.recompute_in(repos, tenant_id, payment_id)
        )

    @returns_result
    def set_status(self, tenant_id: int, payment_id: int, status: str) -> Payment:
        """
        Set the status of a payment that has no installments.

        Once installments exist the status is derived and cannot be set.
        """
        require_id(tenant_id, "tenant_id")
        require_id(payment_id, "payment_id")
        if status not in PaymentStatus.ALL:
            raise ValidationError(f"Unknown payment status: {status}")

        def _set(repos) -> Payment:
            payment = repos.payments.find_by_id(tenant_id, payment_id, for_update=True)
            if payment is None:
                raise NotFoundError(f"Payment #{payment_id} not found")
            if repos.installments.list_for_payment(tenant_id, payment_id):
                raise ConflictError(
                    f"Payment #{payment_id} has installments; its status is derived from them"
                )
            if payment.status == status:
                return payment
            return repos.payments.update_status(tenant_id, payment_id, status)

        payment = self.uow.run_in_transaction(_set)
        logger.info(f"Payment #{payment_id} status set to {payment.status}")
        return payment
