"""Initial schema for the CFO recomputation engine."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "20261001_0001"
down_revision = None
branch_labels = None
depends_on = None


GUID_TYPE = sa.CHAR(36).with_variant(postgresql.UUID(as_uuid=True), "postgresql")


def _guid(name: str = "id") -> sa.Column:
    return sa.Column(name, GUID_TYPE, primary_key=True)


def _timestamp(name: str, *, nullable: bool = False, server_default: bool = True) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=sa.func.now() if server_default else None,
    )


def _money(name: str, *, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.Numeric(18, 2), nullable=nullable, server_default=None if nullable else "0")


def _company_month_index(table: str, month_column: str = "month") -> None:
    op.create_index(f"ix_{table}_company_id", table, ["company_id"])
    op.create_index(f"ix_{table}_{month_column}", table, [month_column])


def upgrade() -> None:
    transaction_type_enum = sa.Enum(
        "REVENUE", "EXPENSE", name="financial_transaction_type_enum", native_enum=False
    )
    lock_status_enum = sa.Enum(
        "running",
        "completed",
        "failed",
        name="job_idempotency_lock_status_enum",
        native_enum=False,
    )

    op.create_table(
        "financial_transactions",
        _guid(),
        sa.Column("company_id", sa.String(36), nullable=False),
        sa.Column("transaction_date", sa.Date(), nullable=False),
        sa.Column("type", transaction_type_enum, nullable=False),
        sa.Column("category", sa.String(255), nullable=True),
        sa.Column("description", sa.String(255), nullable=True),
        _money("amount"),
        sa.Column("source", sa.String(32), nullable=False, server_default="INTEGRATION"),
        _timestamp("created_at"),
    )
    op.create_index(
        "ix_financial_transactions_company_date",
        "financial_transactions",
        ["company_id", "transaction_date"],
    )

    op.create_table(
        "cash_balances",
        _guid(),
        sa.Column("company_id", sa.String(36), nullable=False),
        sa.Column("balance_date", sa.Date(), nullable=False),
        _money("amount"),
        sa.Column("bank_name", sa.String(255), nullable=True),
        sa.Column("source", sa.String(32), nullable=False, server_default="INTEGRATION"),
        _timestamp("created_at"),
    )
    op.create_index("ix_cash_balances_company_date", "cash_balances", ["company_id", "balance_date"])

    op.create_table(
        "accounting_months",
        _guid(),
        sa.Column("company_id", sa.String(36), nullable=False),
        sa.Column("month", sa.String(7), nullable=False),
        sa.Column("is_closed", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("source_last_synced_at", nullable=True, server_default=False),
        _timestamp("updated_at"),
        sa.UniqueConstraint("company_id", "month", name="uq_accounting_months_company_month"),
    )
    op.create_index("ix_accounting_months_company_id", "accounting_months", ["company_id"])

    op.create_table(
        "monthly_trial_balance_summaries",
        _guid(),
        sa.Column("company_id", sa.String(36), nullable=False),
        sa.Column("month", sa.String(7), nullable=False),
        _money("cash_and_bank_balance"),
        _money("total_revenue"),
        _money("total_expenses"),
        _money("net_profit"),
        _money("net_cashflow"),
        _money("inventory_total"),
        sa.Column("data_source", sa.String(16), nullable=False, server_default="transactions"),
        _timestamp("generated_at"),
        sa.UniqueConstraint("company_id", "month", name="uq_monthly_summaries_company_month"),
    )
    op.create_index(
        "ix_monthly_trial_balance_summaries_company_id",
        "monthly_trial_balance_summaries",
        ["company_id"],
    )

    for table, name_column, category_column in (
        ("monthly_revenue_breakdowns", "revenue_name", "normalized_revenue_category"),
        ("monthly_expense_breakdowns", "expense_name", "normalized_expense_category"),
    ):
        op.create_table(
            table,
            _guid(),
            sa.Column("company_id", sa.String(36), nullable=False),
            sa.Column("month", sa.String(7), nullable=False),
            sa.Column("canonical_type", sa.String(64), nullable=True),
            sa.Column("canonical_subtype", sa.String(64), nullable=True),
            _money("amount"),
            sa.Column(name_column, sa.String(255), nullable=False),
            sa.Column(category_column, sa.String(255), nullable=True),
        )
        _company_month_index(table)

    for table, name_column in (
        ("monthly_debtors", "debtor_name"),
        ("monthly_creditors", "creditor_name"),
    ):
        op.create_table(
            table,
            _guid(),
            sa.Column("company_id", sa.String(36), nullable=False),
            sa.Column("month", sa.String(7), nullable=False),
            _money("closing_balance"),
            sa.Column("percentage_of_total", sa.Numeric(9, 4), nullable=False, server_default="0"),
            _money("mom_change"),
            _money("avg_3m", nullable=True),
            _money("avg_6m", nullable=True),
            _money("avg_12m", nullable=True),
            sa.Column("trend_flag", sa.String(8), nullable=False, server_default="STABLE"),
            sa.Column("concentration_flag", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("canonical_type", sa.String(64), nullable=True),
            sa.Column("canonical_subtype", sa.String(64), nullable=True),
            sa.Column(name_column, sa.String(255), nullable=False),
        )
        _company_month_index(table)

    op.create_table(
        "ledger_monthly_balances",
        _guid(),
        sa.Column("company_id", sa.String(36), nullable=False),
        sa.Column("month_key", sa.String(7), nullable=False),
        sa.Column("ledger_guid", sa.Text(), nullable=False),
        sa.Column("ledger_name", sa.Text(), nullable=False),
        sa.Column("parent_group", sa.Text(), nullable=True),
        sa.Column("cfo_category", sa.String(32), nullable=False),
        _money("balance"),
        sa.Column("as_of_date", sa.Date(), nullable=True),
        _timestamp("updated_at"),
        sa.UniqueConstraint(
            "company_id",
            "month_key",
            "ledger_guid",
            name="uq_ledger_monthly_balances_company_month_ledger",
        ),
    )
    _company_month_index("ledger_monthly_balances", "month_key")

    op.create_table(
        "cfo_ledger_classifications",
        _guid(),
        sa.Column("company_id", sa.String(36), nullable=False),
        sa.Column("ledger_guid", sa.Text(), nullable=False),
        sa.Column("ledger_name", sa.Text(), nullable=False),
        sa.Column("parent_group", sa.Text(), nullable=True),
        sa.Column("cfo_category", sa.String(32), nullable=True),
        _timestamp("last_seen_at", server_default=False),
        sa.UniqueConstraint("company_id", "ledger_guid", name="uq_cfo_ledger_classifications_ledger"),
    )
    op.create_index(
        "ix_cfo_ledger_classifications_company_id", "cfo_ledger_classifications", ["company_id"]
    )

    op.create_table(
        "accounting_term_mappings",
        _guid(),
        sa.Column("source_system", sa.String(64), nullable=False),
        sa.Column("source_term", sa.String(255), nullable=False),
        sa.Column("normalized_term", sa.String(255), nullable=False),
        sa.Column("normalized_type", sa.String(64), nullable=False),
        sa.Column("canonical_subtype", sa.String(64), nullable=True),
        _timestamp("created_at"),
        sa.UniqueConstraint("source_system", "source_term", name="uq_accounting_term_mappings_term"),
    )

    for table in ("current_cash_balances", "current_debtors", "current_creditors", "current_loans"):
        op.create_table(
            table,
            _guid(),
            sa.Column("company_id", sa.String(36), nullable=False),
            sa.Column("name", sa.String(255), nullable=False),
            _money("balance"),
            sa.Column("source", sa.String(32), nullable=False),
            sa.Column("as_of_date", sa.Date(), nullable=True),
            _timestamp("updated_at"),
        )
        op.create_index(f"ix_{table}_company_id", table, ["company_id"])

    op.create_table(
        "current_liquidity_metrics",
        _guid(),
        sa.Column("company_id", sa.String(36), nullable=False, unique=True),
        _money("avg_net_cash_outflow_3m", nullable=True),
        _money("cash_runway_months", nullable=True),
        sa.Column("balance_source", sa.String(32), nullable=True),
        _timestamp("updated_at"),
    )

    op.create_table(
        "cfo_metrics",
        _guid(),
        sa.Column("company_id", sa.String(36), nullable=False),
        sa.Column("metric_key", sa.String(128), nullable=False),
        sa.Column("time_scope", sa.String(32), nullable=False),
        sa.Column("month", sa.String(7), nullable=True),
        sa.Column("metric_value", sa.Numeric(20, 6), nullable=True),
        sa.Column("metric_text", sa.Text(), nullable=True),
        sa.Column("change_pct", sa.Numeric(20, 6), nullable=True),
        sa.Column("severity", sa.String(16), nullable=True),
        _timestamp("computed_at", server_default=False),
        _timestamp("updated_at"),
        sa.UniqueConstraint(
            "company_id",
            "metric_key",
            "time_scope",
            "month",
            name="uq_cfo_metrics_company_key_scope_month",
        ),
    )
    op.create_index("ix_cfo_metrics_company_id", "cfo_metrics", ["company_id"])
    op.create_index("ix_cfo_metrics_metric_key", "cfo_metrics", ["metric_key"])

    op.create_table(
        "job_idempotency_locks",
        _guid(),
        sa.Column("company_id", sa.String(36), nullable=False),
        sa.Column("job_key", sa.String(64), nullable=False),
        sa.Column("scope_key", sa.String(255), nullable=False),
        sa.Column("payload_hash", sa.String(64), nullable=True),
        sa.Column("status", lock_status_enum, nullable=False),
        _timestamp("locked_at", server_default=False),
        _timestamp("completed_at", nullable=True, server_default=False),
        sa.Column("last_job_id", sa.String(128), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint(
            "company_id", "job_key", "scope_key", name="uq_job_idempotency_locks_scope"
        ),
    )
    op.create_index("ix_job_idempotency_locks_company_id", "job_idempotency_locks", ["company_id"])

    op.create_table(
        "cfo_alerts",
        _guid(),
        sa.Column("company_id", sa.String(36), nullable=False),
        sa.Column("rule_key", sa.String(64), nullable=False),
        sa.Column("severity", sa.String(16), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("link", sa.String(255), nullable=True),
        sa.Column("month", sa.String(7), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        _timestamp("generated_at", server_default=False),
    )
    op.create_index("ix_cfo_alerts_company_id", "cfo_alerts", ["company_id"])
    op.create_index("ix_cfo_alerts_generated_at", "cfo_alerts", ["generated_at"])

    op.create_table(
        "recompute_events",
        _guid("event_id"),
        sa.Column("company_id", sa.String(36), nullable=True),
        sa.Column("event_type", sa.String(120), nullable=False),
        sa.Column("outcome", sa.String(32), nullable=False),
        sa.Column("duration_ms", sa.Numeric(14, 3), nullable=True),
        sa.Column("labels", sa.JSON(), nullable=False),
        sa.Column("details", sa.JSON(), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_recompute_events_company_id", "recompute_events", ["company_id"])
    op.create_index("ix_recompute_events_event_type", "recompute_events", ["event_type"])
    op.create_index("ix_recompute_events_created_at", "recompute_events", ["created_at"])


def downgrade() -> None:
    for table in (
        "recompute_events",
        "cfo_alerts",
        "job_idempotency_locks",
        "cfo_metrics",
        "current_liquidity_metrics",
        "current_loans",
        "current_creditors",
        "current_debtors",
        "current_cash_balances",
        "accounting_term_mappings",
        "cfo_ledger_classifications",
        "ledger_monthly_balances",
        "monthly_creditors",
        "monthly_debtors",
        "monthly_expense_breakdowns",
        "monthly_revenue_breakdowns",
        "monthly_trial_balance_summaries",
        "accounting_months",
        "cash_balances",
        "financial_transactions",
    ):
        op.drop_table(table)
