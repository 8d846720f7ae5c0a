import streamlit as st
import requests
import pandas as pd

BASE_URL = st.secrets.get("backend_url", "http://localhost:8000")
SHARE_TYPES = ["EQUAL", "EXACT", "PERCENTAGE"]

def balances_frame(balances: dict) -> pd.DataFrame:
    rows = [{"person": p, **entry} for p, entry in balances.items()]
    df = pd.DataFrame(rows, columns=["person", "paid", "owed", "balance"])
    for col in ("paid", "owed", "balance"):
        df[col] = pd.to_numeric(df[col])
    return df.sort_values("balance", ascending=False)

st.title("Shared Expense Ledger")

# Expenses
st.header("Expenses")
expenses = requests.get(f"{BASE_URL}/expenses").json()
st.dataframe(pd.DataFrame(expenses))

people = requests.get(f"{BASE_URL}/expenses/people").json()

# Add Expense
st.header("Add Expense")
description = st.text_input("Description")
amount = st.number_input("Amount", min_value=0.0)
payer = st.selectbox("Paid by", options=people + ["(new person)"])
if payer == "(new person)":
    payer = st.text_input("Payer name")
participants = st.multiselect("Participants", options=people)
extra = st.text_input("Other participants (comma separated)")
participants += [p.strip() for p in extra.split(",") if p.strip()]
share_type = st.selectbox("Share type", options=SHARE_TYPES)

custom_shares = {}
if share_type != "EQUAL":
    unit = "amount" if share_type == "EXACT" else "%"
    for p in sorted(set(participants + [payer])):
        custom_shares[p] = st.number_input(f"{p}'s share ({unit})", min_value=0.0, key=f"share_{p}")

if st.button("Submit Expense"):
    payload = {
        "description": description,
        "amount": amount,
        "paid_by": payer,
        "participants": participants,
        "share_type": share_type,
    }
    if custom_shares:
        payload["custom_shares"] = custom_shares
    r = requests.post(f"{BASE_URL}/expenses", json=payload)
    if r.status_code == 200:
        st.success("Expense added")
    else:
        st.error(f"Error: {r.text}")

# Balances and settlements
st.header("Who Owes Whom")
if st.button("Compute Settlements"):
    balances = requests.get(f"{BASE_URL}/balances").json()
    st.subheader("Balances")
    st.dataframe(balances_frame(balances))

    r = requests.get(f"{BASE_URL}/settlements")
    if r.status_code == 200:
        st.subheader("Settlements")
        st.dataframe(pd.DataFrame(r.json(), columns=["from", "to", "amount"]))
    else:
        st.error(f"Error: {r.json().get('detail', r.text)}")

    summary = requests.get(f"{BASE_URL}/summary").json()
    st.subheader("Summary")
    st.json(summary)
