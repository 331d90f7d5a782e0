"""
db/init_db.py
-------------
Creates the database schema (tables) if they do not already exist.
Run through the CLI to initialize a fresh database:
    python main.py init-db
"""

from db.connection import ConnectionPool
from utils.logger import get_logger

logger = get_logger(__name__)

# Constraint names the services translate into ConflictError.
CONVERSION_SOURCE_UNIQUE = "uq_students_converted_from_customer"
INSTALLMENT_NUMBER_UNIQUE = "uq_installments_payment_number"
ACCOUNT_USERNAME_UNIQUE = "uq_student_accounts_username"

SCHEMA_SQL = f"""
-- Customers: prospects owned by a school, converted at most once
CREATE TABLE IF NOT EXISTS customers (
    id              BIGSERIAL PRIMARY KEY,
    school_id       BIGINT NOT NULL,
    name            VARCHAR(150) NOT NULL,
    email           VARCHAR(255),
    phone           VARCHAR(32),
    status          VARCHAR(16) NOT NULL DEFAULT 'PROSPECT'
                    CHECK (status IN ('PROSPECT', 'CONVERTED')),
    created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at      TIMESTAMPTZ,
    deleted_at      TIMESTAMPTZ
);

-- Login accounts created together with a student
CREATE TABLE IF NOT EXISTS student_accounts (
    id              BIGSERIAL PRIMARY KEY,
    school_id       BIGINT NOT NULL,
    username        VARCHAR(150) NOT NULL,
    email           VARCHAR(255),
    first_name      VARCHAR(100),
    last_name       VARCHAR(100),
    role            VARCHAR(16) NOT NULL DEFAULT 'STUDENT',
    created_by      BIGINT,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT {ACCOUNT_USERNAME_UNIQUE} UNIQUE (username)
);

-- Students: at most one student per conversion source
CREATE TABLE IF NOT EXISTS students (
    id                          BIGSERIAL PRIMARY KEY,
    school_id                   BIGINT NOT NULL,
    account_id                  BIGINT REFERENCES student_accounts(id),
    admission_no                VARCHAR(50),
    roll_no                     VARCHAR(50),
    class_id                    BIGINT,
    section_id                  BIGINT,
    parent_id                   BIGINT,
    admission_date              DATE,
    converted_from_customer_id  BIGINT REFERENCES customers(id),
    conversion_date             TIMESTAMPTZ,
    created_by                  BIGINT,
    created_at                  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at                  TIMESTAMPTZ,
    deleted_at                  TIMESTAMPTZ,
    CONSTRAINT {CONVERSION_SOURCE_UNIQUE} UNIQUE (converted_from_customer_id)
);

-- Payments: status is derived from installments once any exist
CREATE TABLE IF NOT EXISTS payments (
    id              BIGSERIAL PRIMARY KEY,
    school_id       BIGINT NOT NULL,
    student_id      BIGINT REFERENCES students(id),
    amount          NUMERIC(12,2) NOT NULL,
    discount        NUMERIC(12,2) NOT NULL DEFAULT 0,
    fine            NUMERIC(12,2) NOT NULL DEFAULT 0,
    total           NUMERIC(12,2) NOT NULL,
    status          VARCHAR(16) NOT NULL DEFAULT 'PENDING'
                    CHECK (status IN ('PENDING', 'PARTIALLY_PAID', 'OVERDUE', 'PAID')),
    created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at      TIMESTAMPTZ,
    deleted_at      TIMESTAMPTZ
);

-- Installments: scheduled portions of a payment
CREATE TABLE IF NOT EXISTS installments (
    id                  BIGSERIAL PRIMARY KEY,
    school_id           BIGINT NOT NULL,
    payment_id          BIGINT NOT NULL REFERENCES payments(id),
    installment_number  INT NOT NULL CHECK (installment_number > 0),
    amount              NUMERIC(12,2) NOT NULL CHECK (amount > 0),
    due_date            DATE NOT NULL,
    paid_date           DATE,
    status              VARCHAR(16) NOT NULL DEFAULT 'PENDING'
                        CHECK (status IN ('PENDING', 'PAID', 'OVERDUE')),
    late_fee            NUMERIC(12,2) NOT NULL DEFAULT 0 CHECK (late_fee >= 0),
    remarks             TEXT,
    created_at          TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at          TIMESTAMPTZ,
    deleted_at          TIMESTAMPTZ
);

-- Ledger events: append-only, one row per recorded intent
CREATE TABLE IF NOT EXISTS ledger_events (
    id              BIGSERIAL PRIMARY KEY,
    school_id       BIGINT NOT NULL,
    subject_type    VARCHAR(16) NOT NULL CHECK (subject_type IN ('CUSTOMER', 'STUDENT', 'PAYMENT')),
    subject_id      BIGINT NOT NULL,
    event_type      VARCHAR(64) NOT NULL,
    actor_id        BIGINT NOT NULL,
    metadata        JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    status          VARCHAR(16) NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'committed', 'failed')),
    schema_version  INT NOT NULL DEFAULT 1,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- Audit log: write-only compliance trail
CREATE TABLE IF NOT EXISTS audit_logs (
    id              BIGSERIAL PRIMARY KEY,
    school_id       BIGINT NOT NULL,
    actor_id        BIGINT NOT NULL,
    action          VARCHAR(32) NOT NULL,
    entity_type     VARCHAR(32) NOT NULL,
    entity_id       BIGINT,
    details         TEXT,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- Installment numbers are unique among a payment's live installments
CREATE UNIQUE INDEX IF NOT EXISTS {INSTALLMENT_NUMBER_UNIQUE}
    ON installments(payment_id, installment_number) WHERE deleted_at IS NULL;

-- Indexes for faster queries
CREATE INDEX IF NOT EXISTS idx_customers_school ON customers(school_id);
CREATE INDEX IF NOT EXISTS idx_students_school ON students(school_id);
CREATE INDEX IF NOT EXISTS idx_payments_school ON payments(school_id);
CREATE INDEX IF NOT EXISTS idx_installments_due
    ON installments(school_id, due_date) WHERE deleted_at IS NULL AND status = 'PENDING';
CREATE INDEX IF NOT EXISTS idx_ledger_events_subject
    ON ledger_events(school_id, subject_type, subject_id, created_at);
CREATE INDEX IF NOT EXISTS idx_audit_logs_school ON audit_logs(school_id, created_at);
"""


def create_tables(pool: ConnectionPool) -> None:
    """
    Execute the schema SQL to create all tables.
    Safe to call multiple times (uses IF NOT EXISTS).
    """
    conn = pool.get_connection()
    try:
        with conn.cursor() as cur:
            cur.execute(SCHEMA_SQL)
        conn.commit()
        logger.info("Database schema initialized successfully.")
    except Exception as e:
        conn.rollback()
        logger.error(f"Failed to initialize schema: {e}")
        raise
    finally:
        pool.release_connection(conn)
