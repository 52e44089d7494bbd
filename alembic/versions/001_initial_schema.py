"""001 – Initial schema: sites, users, expenses, approval workflow, notifications, audit.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-17 10:00:00.000000+05:30
"""

from alembic import op

# Revision identifiers
revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

# Status / role / type columns are VARCHAR; allowed values are enforced with
# CHECK constraints so new values only need a constraint swap.
CHECKS: list[tuple[str, str, str, list[str]]] = [
    ("users", "ck_users_role", "role",
     ["submitter", "l1_approver", "l2_approver", "l3_approver", "finance"]),
    ("expenses", "ck_expenses_status", "status",
     ["draft", "submitted", "under_review", "approved_l1", "approved_l2",
      "approved_l3", "approved", "rejected", "cancelled", "payment_processed",
      "reimbursed", "refunded", "reserved"]),
    ("pending_approvers", "ck_pending_approvers_status", "status",
     ["pending", "in_progress", "completed", "cancelled"]),
    ("approval_history", "ck_approval_history_action", "action",
     ["approved", "rejected", "payment_processed", "cancelled"]),
    ("notifications", "ck_notifications_type", "type",
     ["info", "action_required", "approval", "alert"]),
]


def _add_check(table: str, name: str, column: str, values: list[str]) -> None:
    vals = ", ".join(f"'{v}'" for v in values)
    op.execute(f"ALTER TABLE {table} ADD CONSTRAINT {name} CHECK ({column} IN ({vals}))")


# ---------------------------------------------------------------------------
# UPGRADE
# ---------------------------------------------------------------------------


def upgrade() -> None:
    # ── Extensions ────────────────────────────────────────────────────────
    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp"')

    # ── 1. sites ──────────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE sites (
            id                             UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            name                           VARCHAR(100) NOT NULL,
            code                           VARCHAR(10)  NOT NULL UNIQUE,
            description                    VARCHAR(500),
            city                           VARCHAR(100),
            state                          VARCHAR(100),
            latitude                       DOUBLE PRECISION,
            longitude                      DOUBLE PRECISION,
            monthly_budget                 NUMERIC(14,2) NOT NULL DEFAULT 0,
            yearly_budget                  NUMERIC(14,2) NOT NULL DEFAULT 0,
            category_budgets               JSONB DEFAULT '{}'::jsonb,
            alert_threshold                INTEGER DEFAULT 80,
            auto_approval_limit            NUMERIC(12,2) NOT NULL DEFAULT 500,
            l1_threshold                   NUMERIC(12,2) NOT NULL DEFAULT 1000,
            l2_threshold                   NUMERIC(12,2) NOT NULL DEFAULT 5000,
            l3_threshold                   NUMERIC(12,2) NOT NULL DEFAULT 10000,
            vehicle_km_limit               INTEGER DEFAULT 1000,
            max_expense_amount             NUMERIC(12,2) DEFAULT 50000,
            require_receipt_above          NUMERIC(12,2) DEFAULT 100,
            duplicate_window_days          INTEGER DEFAULT 30,
            per_category_limits            JSONB DEFAULT '{}'::jsonb,
            cash_max                       NUMERIC(12,2) DEFAULT 2000,
            director_escalation_thresholds JSONB DEFAULT '{}'::jsonb,
            weekend_disallowed_categories  JSONB DEFAULT '[]'::jsonb,
            monthly_spend                  NUMERIC(14,2) DEFAULT 0,
            yearly_spend                   NUMERIC(14,2) DEFAULT 0,
            total_expenses                 INTEGER DEFAULT 0,
            total_amount                   NUMERIC(16,2) DEFAULT 0,
            last_expense_date              DATE,
            alert_period                   VARCHAR(7),
            is_active                      BOOLEAN NOT NULL DEFAULT TRUE,
            created_by                     UUID,
            created_at                     TIMESTAMPTZ DEFAULT NOW(),
            updated_at                     TIMESTAMPTZ DEFAULT NOW(),
            CHECK (auto_approval_limit < l1_threshold
                   AND l1_threshold < l2_threshold
                   AND l2_threshold < l3_threshold)
        )
    """)

    # ── 2. users ──────────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE users (
            id          UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            name        VARCHAR(100) NOT NULL,
            email       VARCHAR(200) NOT NULL UNIQUE,
            employee_id VARCHAR(50) UNIQUE,
            phone       VARCHAR(20),
            role        VARCHAR(30) NOT NULL DEFAULT 'submitter',
            site_id     UUID REFERENCES sites(id),
            department  VARCHAR(100),
            is_active   BOOLEAN NOT NULL DEFAULT TRUE,
            created_at  TIMESTAMPTZ DEFAULT NOW(),
            updated_at  TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT ck_users_site_required
                CHECK (role IN ('l3_approver', 'finance') OR site_id IS NOT NULL)
        )
    """)
    op.execute("CREATE INDEX ix_users_site_role ON users(site_id, role, is_active)")

    # ── 3. expenses ───────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE expenses (
            id                      UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            expense_number          VARCHAR(30)  NOT NULL UNIQUE,
            title                   VARCHAR(200) NOT NULL,
            description             VARCHAR(1000),
            department              VARCHAR(100),
            amount                  NUMERIC(12,2) NOT NULL DEFAULT 0,
            currency                VARCHAR(3) NOT NULL DEFAULT 'INR',
            category                VARCHAR(50) NOT NULL,
            payment_method          VARCHAR(30),
            expense_date            DATE NOT NULL,
            vehicle_km              JSONB,
            travel                  JSONB,
            accommodation           JSONB,
            location_lat            DOUBLE PRECISION,
            location_lng            DOUBLE PRECISION,
            location_city           VARCHAR(100),
            submitted_by            UUID NOT NULL REFERENCES users(id),
            site_id                 UUID NOT NULL REFERENCES sites(id),
            status                  VARCHAR(30) NOT NULL DEFAULT 'draft',
            current_approval_level  SMALLINT NOT NULL DEFAULT 0,
            required_approval_level SMALLINT NOT NULL DEFAULT 1,
            submission_date         DATE,
            policy_flags            JSONB DEFAULT '[]'::jsonb,
            risk_score              INTEGER DEFAULT 0,
            receipt_hash            VARCHAR(64),
            receipt_path            VARCHAR(500),
            normalized_key          VARCHAR(300),
            original_amount         NUMERIC(12,2),
            modification_reason     VARCHAR(500),
            payment_amount          NUMERIC(12,2),
            payment_date            DATE,
            payment_processed_by    UUID REFERENCES users(id),
            spend_applied           BOOLEAN NOT NULL DEFAULT FALSE,
            is_active               BOOLEAN NOT NULL DEFAULT TRUE,
            is_deleted              BOOLEAN NOT NULL DEFAULT FALSE,
            deleted_at              TIMESTAMPTZ,
            deleted_by              UUID,
            version                 INTEGER NOT NULL,
            created_at              TIMESTAMPTZ DEFAULT NOW(),
            updated_at              TIMESTAMPTZ DEFAULT NOW(),
            CHECK (current_approval_level BETWEEN 0 AND 3),
            CHECK (required_approval_level BETWEEN 0 AND 3),
            CHECK (risk_score BETWEEN 0 AND 100)
        )
    """)
    op.execute("CREATE INDEX ix_expenses_site_status      ON expenses(site_id, status)")
    op.execute("CREATE INDEX ix_expenses_submitter_date   ON expenses(submitted_by, expense_date)")
    op.execute("CREATE INDEX ix_expenses_receipt_hash     ON expenses(receipt_hash)")
    op.execute("CREATE INDEX ix_expenses_normalized_key   ON expenses(normalized_key)")

    # ── 4. pending_approvers ──────────────────────────────────────────────
    op.execute("""
        CREATE TABLE pending_approvers (
            id            UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            expense_id    UUID NOT NULL REFERENCES expenses(id) ON DELETE CASCADE,
            approver_id   UUID NOT NULL REFERENCES users(id),
            level         SMALLINT NOT NULL,
            status        VARCHAR(20) NOT NULL DEFAULT 'pending',
            assigned_date TIMESTAMPTZ DEFAULT NOW(),
            completed_at  TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE INDEX ix_pending_approvers_expense_level
            ON pending_approvers(expense_id, level, status)
    """)
    op.execute("""
        CREATE INDEX ix_pending_approvers_approver_status
            ON pending_approvers(approver_id, status)
    """)

    # ── 5. approval_history ───────────────────────────────────────────────
    op.execute("""
        CREATE TABLE approval_history (
            id                  UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            expense_id          UUID NOT NULL REFERENCES expenses(id) ON DELETE CASCADE,
            approver_id         UUID NOT NULL REFERENCES users(id),
            level               SMALLINT NOT NULL,
            action              VARCHAR(30) NOT NULL,
            comments            VARCHAR(1000),
            amount              NUMERIC(12,2),
            modified_amount     NUMERIC(12,2),
            modification_reason VARCHAR(500),
            payment_amount      NUMERIC(12,2),
            payment_date        DATE,
            created_at          TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX ix_approval_history_expense
            ON approval_history(expense_id, created_at)
    """)

    # ── 6. expense_comments ───────────────────────────────────────────────
    op.execute("""
        CREATE TABLE expense_comments (
            id          UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            expense_id  UUID NOT NULL REFERENCES expenses(id) ON DELETE CASCADE,
            user_id     UUID NOT NULL REFERENCES users(id),
            text        VARCHAR(1000) NOT NULL,
            is_internal BOOLEAN NOT NULL DEFAULT FALSE,
            created_at  TIMESTAMPTZ DEFAULT NOW()
        )
    """)

    # ── 7. notifications ──────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE notifications (
            id           UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            recipient_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            type         VARCHAR(30) NOT NULL DEFAULT 'info',
            title        VARCHAR(200) NOT NULL,
            message      TEXT NOT NULL,
            action_url   VARCHAR(500),
            entity_type  VARCHAR(50),
            entity_id    UUID,
            is_read      BOOLEAN NOT NULL DEFAULT FALSE,
            read_at      TIMESTAMPTZ,
            created_at   TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX ix_notifications_recipient_read
            ON notifications(recipient_id, is_read)
    """)

    # ── 8. audit_trail ────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE audit_trail (
            id          UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            actor_id    UUID REFERENCES users(id),
            action      VARCHAR(50) NOT NULL,
            entity_type VARCHAR(50) NOT NULL,
            entity_id   UUID NOT NULL,
            old_values  JSONB,
            new_values  JSONB,
            created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX ix_audit_trail_actor_id ON audit_trail(actor_id)")
    op.execute("CREATE INDEX ix_audit_trail_entity   ON audit_trail(entity_type, entity_id)")
    op.execute("CREATE INDEX ix_audit_trail_action   ON audit_trail(action)")

    # ── Value constraints ─────────────────────────────────────────────────
    for table, name, column, values in CHECKS:
        _add_check(table, name, column, values)


# ---------------------------------------------------------------------------
# DOWNGRADE
# ---------------------------------------------------------------------------


def downgrade() -> None:
    # Drop tables in reverse dependency order
    tables = [
        "audit_trail",
        "notifications",
        "expense_comments",
        "approval_history",
        "pending_approvers",
        "expenses",
        "users",
        "sites",
    ]
    for t in tables:
        op.execute(f"DROP TABLE IF EXISTS {t} CASCADE")
