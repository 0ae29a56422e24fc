"""
Dashboard view helpers: turn relay API payloads into DataFrames.

Kept free of Streamlit so they can be unit tested.
"""

from typing import Any, Dict, List

import pandas as pd

GAP_COLUMNS = ["kind", "billCode", "driverId", "amount", "ageMinutes", "createdAt", "paymentId"]

GAP_LABELS = {
    "no_payment_record": "No payment record",
    "ledger_failed": "Ledger update failed",
    "stale_processing": "Stuck in processing",
}


def gaps_to_frame(report: Dict[str, Any]) -> pd.DataFrame:
    """Flatten a /api/ops/reconciliation-gaps report, oldest first."""
    gaps: List[Dict[str, Any]] = report.get("gaps") or []
    df = pd.DataFrame(gaps, columns=GAP_COLUMNS)
    if df.empty:
        return df
    df["label"] = df["kind"].map(GAP_LABELS).fillna(df["kind"])
    df["amount"] = pd.to_numeric(df["amount"], errors="coerce")
    df["ageMinutes"] = pd.to_numeric(df["ageMinutes"], errors="coerce")
    return df.sort_values("ageMinutes", ascending=False, na_position="first").reset_index(drop=True)


def summarize_gaps(df: pd.DataFrame) -> Dict[str, Any]:
    """Counts per kind plus the amount at stake."""
    if df.empty:
        return {"total": 0, "amount_at_stake": 0.0, "by_kind": {}}
    return {
        "total": int(len(df)),
        "amount_at_stake": round(float(df["amount"].fillna(0).sum()), 2),
        "by_kind": {str(k): int(v) for k, v in df["kind"].value_counts().items()},
    }


def actionable(df: pd.DataFrame) -> pd.DataFrame:
    """Rows an operator can reprocess directly (the bill already has a known driver)."""
    if df.empty:
        return df
    return df[df["driverId"].notna() & (df["driverId"] != "")]
