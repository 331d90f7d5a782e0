"""Pytest configuration and fixtures for the ledger test suite."""

from datetime import date, timedelta
from decimal import Decimal

import pytest

from models.customer import Customer
from models.payment import Payment
from repositories.memory import InMemoryStore, InMemoryUnitOfWork
from services.audit_trail import AuditTrail
from services.conversion_service import ConversionService
from services.event_ledger import EventLedgerService
from services.installment_service import InstallmentService
from services.payment_status_service import PaymentStatusService
from tests.fakes import START, RecordingDispatcher, TickingClock

SCHOOL = 1
OTHER_SCHOOL = 2
ACTOR = 7

TODAY = START.date()
YESTERDAY = TODAY - timedelta(days=1)
NEXT_MONTH = date(2025, 4, 10)


# =============================================================================
# Infrastructure fixtures
# =============================================================================

@pytest.fixture
def clock():
    """Clock starting at 2025-03-10 09:00 UTC, one second per reading."""
    return TickingClock(START)


@pytest.fixture
def store(clock):
    return InMemoryStore(clock=clock)


@pytest.fixture
def uow(store):
    return InMemoryUnitOfWork(store)


@pytest.fixture
def notifier():
    return RecordingDispatcher()


@pytest.fixture
def ledger(uow):
    return EventLedgerService(uow)


@pytest.fixture
def statuses(uow):
    return PaymentStatusService(uow)


@pytest.fixture
def installments(uow, ledger, statuses, notifier, clock):
    return InstallmentService(
        uow, ledger=ledger, statuses=statuses, audit=AuditTrail(uow),
        notifier=notifier, clock=clock, late_fee_rate=Decimal("0.05"),
    )


@pytest.fixture
def conversions(uow, ledger, notifier, clock):
    return ConversionService(uow, ledger=ledger, audit=AuditTrail(uow),
                             notifier=notifier, clock=clock)


# =============================================================================
# Seed data
# =============================================================================

def seed(uow, repo: str, entity):
    """Insert an entity in its own transaction and return the stored copy."""
    return uow.run_in_transaction(
        lambda repos: getattr(repos, repo).create(entity.school_id, entity)
    )


@pytest.fixture
def customer(uow):
    return seed(uow, "customers", Customer(
        school_id=SCHOOL, name="Amina Yusuf", email="amina.yusuf@example.com", phone="+254700000001",
    ))


@pytest.fixture
def payment(uow):
    """Payment with a total of 300.00."""
    return seed(uow, "payments", Payment(
        school_id=SCHOOL, amount=Decimal("320.00"), discount=Decimal("30.00"), fine=Decimal("10.00"),
    ))


@pytest.fixture
def three_installments(installments, payment):
    """Installments #1..#3 of 100.00 each, due next month."""
    created = []
    for number in (1, 2, 3):
        result = installments.create(SCHOOL, ACTOR, payment.id, number, "100.00", NEXT_MONTH)
        assert result["success"], result
        created.append(result["data"]["installment"])
    return created
