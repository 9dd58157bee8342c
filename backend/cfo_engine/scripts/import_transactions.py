"""Load transactions and cash balances exported from the accounting source."""

from __future__ import annotations

import argparse
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

import pandas as pd

TRANSACTION_COLUMNS = ("transaction_date", "type", "amount")
CASH_COLUMNS = ("balance_date", "amount")
TYPE_ALIASES = {
    "revenue": "REVENUE",
    "income": "REVENUE",
    "sale": "REVENUE",
    "sales": "REVENUE",
    "expense": "EXPENSE",
    "expenses": "EXPENSE",
    "purchase": "EXPENSE",
}


@dataclass
class ImportSummary:
    created: int = 0
    skipped_invalid: int = 0


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Read a CSV or Excel export and store its rows for one company."
    )
    parser.add_argument("source", type=Path, help="Path of the CSV or Excel file")
    parser.add_argument("--company-id", required=True, help="Company the rows belong to")
    parser.add_argument(
        "--kind",
        choices=["transactions", "cash"],
        default="transactions",
        help="Whether the file holds transactions or cash and bank balances",
    )
    parser.add_argument("--sheet", default=0, help="Excel sheet name or index")
    parser.add_argument(
        "--database-url",
        dest="database_url",
        help="Database URL (defaults to DATABASE_URL or the local SQLite file)",
    )
    return parser.parse_args(argv)


def load_frame(source: Path, sheet: str | int = 0) -> pd.DataFrame:
    if source.suffix.lower() in {".xlsx", ".xls"}:
        if isinstance(sheet, str) and sheet.isdigit():
            sheet = int(sheet)
        return pd.read_excel(source, sheet_name=sheet)
    return pd.read_csv(source)


def _normalize_columns(df: pd.DataFrame) -> pd.DataFrame:
    df = df.copy()
    df.columns = [str(column).strip().lower().replace(" ", "_") for column in df.columns]
    return df


def _require(df: pd.DataFrame, columns: tuple[str, ...]) -> None:
    missing = [column for column in columns if column not in df.columns]
    if missing:
        raise ValueError(f"Missing required columns: {', '.join(missing)}")


def prepare_transaction_frame(df: pd.DataFrame) -> pd.DataFrame:
    """Normalize column names, dates, types and amounts; invalid rows are dropped."""

    df = _normalize_columns(df)
    _require(df, TRANSACTION_COLUMNS)
    df["transaction_date"] = pd.to_datetime(df["transaction_date"], errors="coerce").dt.date
    df["type"] = df["type"].astype(str).str.strip().str.lower().map(TYPE_ALIASES)
    df["amount"] = pd.to_numeric(df["amount"], errors="coerce").abs()
    for column in ("category", "description"):
        if column not in df.columns:
            df[column] = None
    return df.dropna(subset=list(TRANSACTION_COLUMNS))


def prepare_cash_frame(df: pd.DataFrame) -> pd.DataFrame:
    df = _normalize_columns(df)
    _require(df, CASH_COLUMNS)
    df["balance_date"] = pd.to_datetime(df["balance_date"], errors="coerce").dt.date
    df["amount"] = pd.to_numeric(df["amount"], errors="coerce")
    if "bank_name" not in df.columns:
        df["bank_name"] = None
    return df.dropna(subset=list(CASH_COLUMNS))


def _coerce_decimal(value: object) -> Optional[Decimal]:
    if pd.isna(value):
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return None


def _text(value: object) -> Optional[str]:
    if value is None or pd.isna(value):
        return None
    text = str(value).strip()
    return text or None


def store_transactions(session, company_id: str, df: pd.DataFrame) -> ImportSummary:
    from ..models import FinancialTransaction, TransactionType

    summary = ImportSummary()
    for row in df.itertuples(index=False):
        amount = _coerce_decimal(row.amount)
        if amount is None:
            summary.skipped_invalid += 1
            continue
        session.add(
            FinancialTransaction(
                company_id=company_id,
                transaction_date=row.transaction_date,
                type=TransactionType(row.type),
                category=_text(row.category),
                description=_text(row.description),
                amount=amount,
                source="IMPORT",
            )
        )
        summary.created += 1
    session.flush()
    return summary


def store_cash_balances(session, company_id: str, df: pd.DataFrame) -> ImportSummary:
    from ..models import CashBalance

    summary = ImportSummary()
    for row in df.itertuples(index=False):
        amount = _coerce_decimal(row.amount)
        if amount is None:
            summary.skipped_invalid += 1
            continue
        session.add(
            CashBalance(
                company_id=company_id,
                balance_date=row.balance_date,
                amount=amount,
                bank_name=_text(row.bank_name),
                source="IMPORT",
            )
        )
        summary.created += 1
    session.flush()
    return summary


def main(argv: Optional[list[str]] = None) -> int:
    args = _parse_args(argv)

    if args.database_url:
        os.environ.setdefault("DATABASE_URL", args.database_url)

    from ..database import session_scope

    raw = load_frame(args.source, args.sheet)
    with session_scope() as session:
        if args.kind == "cash":
            frame = prepare_cash_frame(raw)
            summary = store_cash_balances(session, args.company_id, frame)
        else:
            frame = prepare_transaction_frame(raw)
            summary = store_transactions(session, args.company_id, frame)

    print(f"Rows read: {len(raw)}")
    print(f"Rows stored: {summary.created}")
    print(f"Rows skipped: {len(raw) - len(frame) + summary.skipped_invalid}")
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
