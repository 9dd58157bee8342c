from __future__ import annotations

from decimal import Decimal

from backend.cfo_engine import models
from backend.cfo_engine.services.ledger_classification import (
    CASH_BANK,
    DEBTORS,
    EXPENSES,
    REVENUE,
    GroupIndex,
    LedgerBalanceService,
    classify_ledger,
    map_ledgers_to_cfo_totals,
    validate_chart_of_accounts_payload,
)

GROUPS = [
    {"name": "Current Assets", "parent": None},
    {"name": "Bank Accounts", "parent": "Current Assets"},
    {"name": "Deposits", "parent": "Current Assets"},
    {"name": "Fixed Deposits", "parent": "Deposits"},
    {"name": "Sundry Debtors", "parent": "Current Assets"},
    {"name": "Regional Customers", "parent": "Sundry Debtors"},
    {"name": "Sales Accounts", "parent": None},
    {"name": "Indirect Expenses", "parent": None},
    {"name": "Office Costs", "parent": "Indirect Expenses"},
]


def _ledger(guid: str, name: str, parent: str, balance: str = "0") -> dict:
    return {"guid": guid, "name": name, "parent": parent, "closingBalance": balance}


def test_classification_walks_up_the_group_tree() -> None:
    index = GroupIndex.build(GROUPS)

    assert classify_ledger(_ledger("1", "HDFC", "Bank Accounts"), index) == CASH_BANK
    assert classify_ledger(_ledger("2", "North Traders", "Regional Customers"), index) == DEBTORS
    assert classify_ledger(_ledger("3", "Stationery", "Office Costs"), index) == EXPENSES
    assert classify_ledger(_ledger("4", "Product Sales", " sales   accounts "), index) == REVENUE


def test_deposits_are_not_cash() -> None:
    index = GroupIndex.build(GROUPS + [{"name": "Bank Accounts", "parent": "Fixed Deposits"}])

    assert classify_ledger(_ledger("5", "FD 2026", "Bank Accounts"), index) is None


def test_group_nodes_and_unknown_parents_are_ignored() -> None:
    index = GroupIndex.build(GROUPS)

    assert classify_ledger({"name": "Sales Accounts", "type": "group", "parent": "Sales Accounts"}, index) is None
    assert classify_ledger(_ledger("6", "Capital", "Capital Account"), index) is None


def test_cyclic_group_tree_terminates() -> None:
    index = GroupIndex.build([{"name": "A", "parent": "B"}, {"name": "B", "parent": "A"}])

    assert classify_ledger(_ledger("7", "Loop", "A"), index) is None


def test_map_ledgers_to_cfo_totals_sums_by_category() -> None:
    result = map_ledgers_to_cfo_totals(
        [
            _ledger("1", "HDFC", "Bank Accounts", "1500.50"),
            _ledger("2", "SBI", "Bank Accounts", "-200"),
            _ledger("3", "Product Sales", "Sales Accounts", "9000"),
            _ledger("4", "Capital", "Capital Account", "50000"),
        ],
        GROUPS,
    )

    assert result.totals[CASH_BANK] == Decimal("1300.50")
    assert result.totals[REVENUE] == Decimal("9000")
    assert result.counts[CASH_BANK] == 2
    assert result.counts["ignored"] == 1
    assert set(result.by_guid()) == {"1", "2", "3"}


def test_validate_chart_of_accounts_rejects_bad_shapes() -> None:
    assert validate_chart_of_accounts_payload(None).error == "chartOfAccounts missing"
    assert validate_chart_of_accounts_payload({"chartOfAccounts": {"groups": {}, "ledgers": []}}).error == (
        "groups must be a list"
    )
    assert validate_chart_of_accounts_payload({"chartOfAccounts": {"groups": [], "ledgers": []}}).error == (
        "ledgers must be a non-empty list"
    )
    missing_guid = {"chartOfAccounts": {"groups": [], "ledgers": [{"name": "X", "parent": "Y"}]}}
    assert validate_chart_of_accounts_payload(missing_guid).error == "ledger must include name, parent, guid"


def _payload() -> dict:
    return {
        "asOfDate": "2026-03-31",
        "chartOfAccounts": {
            "groups": GROUPS,
            "ledgers": [
                _ledger("L1", "HDFC", "Bank Accounts"),
                _ledger("L2", "North Traders", "Regional Customers"),
                _ledger("L3", "Capital", "Capital Account"),
            ],
            "balances": {
                "current": {
                    "monthKey": "2026-04",
                    "asOfDate": "2026-04-10",
                    "items": [
                        {"ledgerGuid": "L1", "balance": "2500"},
                        {"ledgerGuid": "L2", "balance": "700"},
                        {"ledgerGuid": "L3", "balance": "9999"},
                    ],
                },
                "closedMonths": [
                    {"monthKey": "2026-03", "items": [{"ledgerGuid": "L1", "balance": "2000"}]},
                    {"monthKey": "bogus", "items": [{"ledgerGuid": "L1", "balance": "1"}]},
                ],
            },
        },
    }


def test_write_from_payload_upserts_classified_rows(db_session, company_id) -> None:
    validation = validate_chart_of_accounts_payload(_payload())
    assert validation.ok

    result = LedgerBalanceService.write_from_payload(db_session, company_id, validation)

    assert result.months == ["2026-03", "2026-04"]
    assert result.rows_written == 3
    assert result.classified == 2
    assert result.ignored == 1

    rows = (
        db_session.query(models.LedgerMonthlyBalance)
        .filter(models.LedgerMonthlyBalance.company_id == company_id)
        .order_by(models.LedgerMonthlyBalance.month_key, models.LedgerMonthlyBalance.ledger_name)
        .all()
    )
    assert [(row.month_key, row.ledger_name, row.balance) for row in rows] == [
        ("2026-03", "HDFC", Decimal("2000.00")),
        ("2026-04", "HDFC", Decimal("2500.00")),
        ("2026-04", "North Traders", Decimal("700.00")),
    ]
    assert rows[0].as_of_date.isoformat() == "2026-03-31"
    assert rows[1].as_of_date.isoformat() == "2026-04-10"

    # A second write replaces values instead of duplicating rows.
    payload = _payload()
    payload["chartOfAccounts"]["balances"]["current"]["items"][0]["balance"] = "3100"
    LedgerBalanceService.write_from_payload(db_session, company_id, validate_chart_of_accounts_payload(payload))
    db_session.expire_all()

    current_rows = (
        db_session.query(models.LedgerMonthlyBalance)
        .filter(models.LedgerMonthlyBalance.month_key == "2026-04", models.LedgerMonthlyBalance.ledger_guid == "L1")
        .all()
    )
    assert len(current_rows) == 1
    assert current_rows[0].balance == Decimal("3100.00")

    classification = (
        db_session.query(models.CFOLedgerClassification)
        .filter(models.CFOLedgerClassification.ledger_guid == "L2")
        .one()
    )
    assert classification.cfo_category == DEBTORS
