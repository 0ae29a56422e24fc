"""
Reconciliation Desk - Operator Dashboard
========================================
Streamlit dashboard over the relay's operator API.

Features:
- Reconciliation gaps (paid at the gateway, not reflected in the ledger)
- One-click reprocess for bills with a known driver
- Manual recovery form for bills whose mapping was lost
- Gateway configuration diagnostics

Run: RELAY_API_URL=http://localhost:8000 streamlit run admin/dashboard.py
"""

import os
import sys
from typing import Any, Dict, Optional

import httpx
import pandas as pd
import streamlit as st

sys.path.insert(0, os.path.dirname(__file__))

from views import actionable, gaps_to_frame, summarize_gaps

RELAY_API_URL = os.getenv("RELAY_API_URL", "http://localhost:8000").rstrip("/")


# =============================================================================
# PAGE CONFIG
# =============================================================================

st.set_page_config(
    page_title="RidePay Relay - Reconciliation Desk",
    page_icon="💳",
    layout="wide",
    initial_sidebar_state="expanded",
)


# =============================================================================
# API HELPERS
# =============================================================================

def api_call(method: str, path: str, json: Optional[Dict[str, Any]] = None,
             params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Call the relay; errors come back as {"error": ...} so pages can render them."""
    try:
        response = httpx.request(method, f"{RELAY_API_URL}{path}", json=json,
                                 params=params, timeout=30.0)
    except httpx.HTTPError as e:
        return {"error": "RelayUnreachable", "message": str(e)}
    try:
        body = response.json()
    except ValueError:
        return {"error": "BadResponse", "message": response.text[:500]}
    if response.status_code >= 400 and "error" not in body:
        body["error"] = f"HTTP {response.status_code}"
    return body


@st.cache_data(ttl=30)
def fetch_gaps(min_age_minutes: float) -> Dict[str, Any]:
    return api_call("GET", "/api/ops/reconciliation-gaps",
                    params={"minAgeMinutes": min_age_minutes})


@st.cache_data(ttl=60)
def fetch_diagnostics() -> Dict[str, Any]:
    return api_call("GET", "/api/toyyibpay/verify")


# =============================================================================
# SIDEBAR
# =============================================================================

def render_sidebar():
    st.sidebar.title("💳 Reconciliation Desk")
    st.sidebar.caption(RELAY_API_URL)
    st.sidebar.markdown("---")

    page = st.sidebar.radio(
        "Navigation",
        ["🧾 Reconciliation Gaps", "🛠️ Manual Recovery", "⚙️ Gateway Config"],
        label_visibility="collapsed",
    )

    st.sidebar.markdown("---")
    min_age = st.sidebar.slider("Ignore bills younger than (minutes)", 0, 240, 30)

    if st.sidebar.button("🔄 Refresh Data"):
        st.cache_data.clear()
        st.rerun()

    return page, min_age


# =============================================================================
# RECONCILIATION GAPS
# =============================================================================

def render_gaps(min_age: int):
    st.title("🧾 Reconciliation Gaps")
    st.markdown("Bills that may be paid at ToyyibPay but are not reflected in the commission ledger")

    report = fetch_gaps(float(min_age))
    if "error" in report:
        st.error(f"Error fetching gaps: {report.get('message', report['error'])}")
        return

    df = gaps_to_frame(report)
    summary = summarize_gaps(df)

    col1, col2, col3 = st.columns(3)
    with col1:
        st.metric("Open Gaps", summary["total"])
    with col2:
        st.metric("Amount at Stake", f"RM{summary['amount_at_stake']:,.2f}")
    with col3:
        st.metric("Ledger Failures", summary["by_kind"].get("ledger_failed", 0))

    st.markdown("---")

    if df.empty:
        st.success("✅ No gaps. Every bill is reconciled.")
        return

    st.dataframe(
        df[["label", "billCode", "driverId", "amount", "ageMinutes", "createdAt"]],
        use_container_width=True,
        hide_index=True,
    )

    st.subheader("Reprocess")
    for row in actionable(df).itertuples(index=False):
        with st.expander(f"{row.billCode} - {row.label}"):
            st.write(f"**Driver:** {row.driverId}")
            amount = "-" if pd.isna(row.amount) else f"RM{row.amount:,.2f}"
            st.write(f"**Amount:** {amount}")
            if st.button("🔁 Reprocess", key=f"reprocess_{row.billCode}"):
                with st.spinner("Reprocessing..."):
                    result = api_call("POST", "/api/payment/process", json={"billCode": row.billCode})
                if result.get("success"):
                    st.success("Payment recorded and ledger updated")
                    st.cache_data.clear()
                    st.rerun()
                else:
                    st.error(f"Failed: {result.get('error')} {result.get('message', '')}")


# =============================================================================
# MANUAL RECOVERY
# =============================================================================

def render_recovery():
    st.title("🛠️ Manual Recovery")
    st.markdown("Rewrite a lost bill mapping and process the payment")

    with st.form("recover"):
        bill_code = st.text_input("Bill code")
        driver_id = st.text_input("Driver id")
        amount = st.number_input("Amount (RM)", min_value=0.0, step=0.5, format="%.2f")
        reference = st.text_input("Reference", value="")
        submitted = st.form_submit_button("Recover & process")

    if submitted:
        result = api_call("POST", "/api/payment/recover", json={
            "billCode": bill_code.strip(),
            "driverId": driver_id.strip(),
            "amount": amount,
            "reference": reference.strip() or None,
        })
        if result.get("success"):
            st.success(f"Recovered {bill_code}: payment {result.get('paymentId')}")
            st.json(result)
        else:
            st.error(f"Failed: {result.get('error')} {result.get('message', '')}")


# =============================================================================
# GATEWAY CONFIG
# =============================================================================

def render_config():
    st.title("⚙️ Gateway Config")
    diagnostics = fetch_diagnostics()
    if "error" in diagnostics:
        st.error(f"Relay unreachable: {diagnostics.get('message', diagnostics['error'])}")
        return

    col1, col2 = st.columns(2)
    with col1:
        st.metric("Environment", diagnostics.get("environment", "?"))
        st.write(f"**API URL:** {diagnostics.get('apiUrl')}")
    with col2:
        for key in ("hasSecretKey", "hasCategoryCode", "hasDatabaseSecret", "callbackDedupEnabled"):
            icon = "🟢" if diagnostics.get(key) else "🔴"
            st.write(f"{icon} {key}")
    with st.expander("Raw diagnostics"):
        st.json(diagnostics)


# =============================================================================
# MAIN
# =============================================================================

def main():
    page, min_age = render_sidebar()

    if page == "🧾 Reconciliation Gaps":
        render_gaps(min_age)
    elif page == "🛠️ Manual Recovery":
        render_recovery()
    elif page == "⚙️ Gateway Config":
        render_config()


if __name__ == "__main__":
    main()
