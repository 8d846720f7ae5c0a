import logging
import os
from collections.abc import Mapping
from decimal import Decimal, InvalidOperation, ROUND_FLOOR, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional, Tuple

from models import (
    SHARE_TYPES,
    BalanceEntry,
    Diagnostic,
    EqualShare,
    ExactShare,
    ExpenseRecord,
    LedgerReport,
    PercentageShare,
    SettlementTransaction,
)

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
# Reconciliation threshold: balances and transfers at or below this are noise.
EPSILON = Decimal("0.01")
EPSILON_CENTS = int(EPSILON.scaleb(2))
DEFAULT_BALANCE_CEILING = Decimal("1000000000")


class LedgerError(Exception):
    """Base class for failures that make a whole computation meaningless."""


class InvalidExpense(LedgerError):
    """A single record that cannot contribute anything to the ledger."""


class BalanceOutOfRange(LedgerError):
    pass


def balance_ceiling() -> Decimal:
    """Largest believable balance magnitude; env LEDGER_BALANCE_CEILING overrides."""
    return to_dec(os.getenv("LEDGER_BALANCE_CEILING", DEFAULT_BALANCE_CEILING))

def to_dec(x) -> Decimal:
    if isinstance(x, Decimal):
        return x
    return Decimal(str(x))

def round2(d: Decimal) -> Decimal:
    return to_dec(d).quantize(CENTS, rounding=ROUND_HALF_UP)

def to_cents(d: Decimal) -> int:
    return int(round2(d).scaleb(2))

def from_cents(cents: int) -> Decimal:
    return Decimal(cents).scaleb(-2)

def parse_money(value: Any) -> Optional[Decimal]:
    """Return ``value`` as a finite Decimal, or None if it is not a number."""
    if value is None or isinstance(value, bool):
        return None
    try:
        d = to_dec(value)
    except (InvalidOperation, ValueError, TypeError):
        return None
    # past ~26 integer digits quantizing to cents overflows the context precision
    if not d.is_finite() or d.adjusted() >= 20:
        return None
    return d


# ========== Record ingestion ==========

def _field(raw: Any, *names: str) -> Any:
    for name in names:
        if isinstance(raw, Mapping):
            if name in raw:
                return raw[name]
        elif hasattr(raw, name):
            return getattr(raw, name)
    return None

def _expense_id(raw: Any) -> Optional[int]:
    expense_id = _field(raw, "id")
    if isinstance(expense_id, int) and not isinstance(expense_id, bool):
        return expense_id
    return None

def _identifier(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()

def _participants(value: Any) -> List[str]:
    """Participants arrive as a list, a set, a bare name or an object whose keys are the names."""
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    elif isinstance(value, Mapping):
        value = list(value.keys())
    try:
        names = {_identifier(v) for v in value}
    except TypeError:
        return []
    names.discard("")
    return sorted(names)

def _custom_shares(value: Any, notes: List[str]) -> Dict[str, Decimal]:
    if not isinstance(value, Mapping):
        notes.append("custom shares missing or not an object; nothing distributed")
        return {}
    shares = {}
    for key in sorted(value, key=_identifier):
        person = _identifier(key)
        share = parse_money(value[key])
        if not person:
            notes.append("custom share with a blank name ignored")
        elif share is None or share <= 0:
            notes.append(f"custom share for {person!r} is not a positive number: {value[key]!r}")
        else:
            shares[person] = shares.get(person, Decimal("0")) + share
    return shares

def resolve_expense(raw: Any) -> Tuple[ExpenseRecord, List[str]]:
    """Normalize one raw expense into an ExpenseRecord.

    Accepts an ExpenseRecord, a mapping using camelCase or snake_case keys, or
    any object with the same attributes (such as a stored Expense row).

    Returns the record together with notes about the fields that were dropped.
    Raises InvalidExpense when nothing of the record can be used.
    """
    notes: List[str] = []
    if isinstance(raw, ExpenseRecord):
        share_type = raw.share.kind
        custom = getattr(raw.share, "shares", None)
        payer_value = raw.payer
    else:
        share_type = _field(raw, "shareType", "share_type")
        custom = _field(raw, "customShares", "custom_shares")
        payer_value = _field(raw, "payer", "paidBy", "paid_by")

    amount = parse_money(_field(raw, "amount"))
    if amount is None:
        raise InvalidExpense(f"amount {_field(raw, 'amount')!r} is not a number")
    amount = round2(amount)
    if amount <= 0:
        raise InvalidExpense(f"amount {amount} is not positive")

    payer = _identifier(payer_value)
    if not payer:
        raise InvalidExpense("payer is missing")

    share_type = _identifier(share_type).upper() or "EQUAL"

    participants = _participants(_field(raw, "participants"))
    if share_type not in SHARE_TYPES:
        # paid still counts; an empty exact split distributes nothing
        notes.append(f"unrecognized share type {share_type!r}; amount recorded as paid only")
        share = ExactShare()
    elif share_type == "EQUAL":
        share = EqualShare()
        if not participants:
            notes.append("no participants; amount recorded as paid only")
    else:
        shares = _custom_shares(custom, notes)
        if not participants:
            participants = list(shares)
        share = ExactShare(shares=shares) if share_type == "EXACT" else PercentageShare(shares=shares)

    record = ExpenseRecord(
        id=_expense_id(raw),
        amount=amount,
        payer=payer,
        participants=frozenset(participants),
        share=share,
    )
    return record, notes


# ========== Owed distribution ==========

def _largest_remainder(exact: Dict[str, Decimal]) -> Dict[str, int]:
    """Round exact cent values to whole cents without losing the rounded total.

    Leftover cents go to the largest fractional parts, ties to the smaller name.
    """
    total = int(sum(exact.values(), Decimal("0")).to_integral_value(rounding=ROUND_HALF_UP))
    cents = {p: int(v.to_integral_value(rounding=ROUND_FLOOR)) for p, v in exact.items()}
    remaining = total - sum(cents.values())
    order = sorted(exact, key=lambda p: (-(exact[p] - cents[p]), p))
    for person in order[:remaining]:
        cents[person] += 1
    return cents

def distribute(record: ExpenseRecord) -> Dict[str, int]:
    """Owed cents per person for one record, in sorted name order."""
    amount_cents = to_cents(record.amount)
    share = record.share
    if isinstance(share, EqualShare):
        names = sorted(record.participants)
        if not names:
            return {}
        per, extra = divmod(amount_cents, len(names))
        return {p: per + (1 if n < extra else 0) for n, p in enumerate(names)}
    if isinstance(share, ExactShare):
        return {p: to_cents(v) for p, v in sorted(share.shares.items())}
    exact = {p: Decimal(amount_cents) * pct / 100 for p, pct in sorted(share.shares.items())}
    return _largest_remainder(exact)


# ========== Balance Aggregator ==========

def aggregate(expenses: Iterable[Any]) -> LedgerReport:
    """Fold expense records into per-person balances.

    Malformed records are skipped (or partially applied) and reported as
    diagnostics; they never abort the fold.
    """
    totals: Dict[str, Dict[str, int]] = {}
    diagnostics: List[Diagnostic] = []
    accepted = 0

    def touch(person: str) -> Dict[str, int]:
        if person not in totals:
            totals[person] = {"paid": 0, "owed": 0}
        return totals[person]

    def note(index: int, raw: Any, reason: str) -> None:
        expense_id = _expense_id(raw)
        logger.warning("Expense #%d (id=%s): %s", index, expense_id, reason)
        diagnostics.append(Diagnostic(index=index, expense_id=expense_id, reason=reason))

    skipped = 0
    for index, raw in enumerate(expenses):
        try:
            record, notes = resolve_expense(raw)
        except InvalidExpense as exc:
            note(index, raw, f"skipped: {exc}")
            skipped += 1
            continue
        for reason in notes:
            note(index, raw, reason)

        accepted += 1
        touch(record.payer)["paid"] += to_cents(record.amount)
        for person in sorted(record.participants):
            touch(person)
        for person, cents in distribute(record).items():
            touch(person)["owed"] += cents

    balances = {
        person: BalanceEntry(
            paid=from_cents(t["paid"]),
            owed=from_cents(t["owed"]),
            net=from_cents(t["paid"] - t["owed"]),
        )
        for person, t in totals.items()
    }
    logger.debug("Aggregated %d expenses (%d skipped) into %d balances", accepted, skipped, len(balances))
    return LedgerReport(balances=balances, diagnostics=diagnostics, accepted=accepted)

def compute_balances(expenses: Iterable[Any]) -> Dict[str, BalanceEntry]:
    return aggregate(expenses).balances


# ========== Settlement Matcher ==========

def _net_of(person: str, value: Any) -> Decimal:
    if isinstance(value, BalanceEntry):
        return value.net
    if isinstance(value, Mapping):
        value = value.get("balance", value.get("net"))
    net = parse_money(value)
    if net is None:
        raise LedgerError(f"Balance for {person!r} is not a number: {value!r}")
    return net

def compute_settlements(balances: Mapping, ceiling: Optional[Decimal] = None) -> List[SettlementTransaction]:
    """
    Given balances (person -> BalanceEntry or net), produce the transfers that
    bring everyone to zero using greedy largest-first matching.
    Debtors and creditors of equal size keep the balance map's order.
    Raises BalanceOutOfRange when any balance is beyond the sanity ceiling.
    """
    ceiling = balance_ceiling() if ceiling is None else to_dec(ceiling)
    debtors = []
    creditors = []
    for person, value in balances.items():
        net = _net_of(person, value)
        if abs(net) > ceiling:
            raise BalanceOutOfRange(
                f"Balance for {person!r} ({net}) exceeds the sanity ceiling of {ceiling}"
            )
        cents = to_cents(net)
        if cents < -EPSILON_CENTS:
            debtors.append([person, -cents])  # store positive owed amount
        elif cents > EPSILON_CENTS:
            creditors.append([person, cents])

    debtors.sort(key=lambda x: x[1], reverse=True)
    creditors.sort(key=lambda x: x[1], reverse=True)

    i = j = 0
    stalled = 0
    limit = max(len(debtors), len(creditors)) * 4
    settlements = []
    while i < len(debtors) and j < len(creditors):
        debtor, creditor = debtors[i], creditors[j]
        transfer = min(debtor[1], creditor[1])
        if transfer > EPSILON_CENTS:
            settlements.append(SettlementTransaction(
                from_person=debtor[0],
                to_person=creditor[0],
                amount=from_cents(transfer),
            ))
        debtor[1] -= transfer
        creditor[1] -= transfer

        progressed = False
        if debtor[1] <= EPSILON_CENTS:
            i += 1
            progressed = True
        if creditor[1] <= EPSILON_CENTS:
            j += 1
            progressed = True
        if progressed:
            stalled = 0
        else:
            stalled += 1
            if stalled >= limit:
                logger.warning("Settlement matching stalled after %d idle rounds; stopping", stalled)
                break
    return settlements


# ========== Derived views ==========

def people(balances: Mapping) -> List[str]:
    return sorted(balances)

def expense_summary(expenses: Iterable[Any]) -> Dict[str, Any]:
    report = aggregate(expenses)
    total = sum((entry.paid for entry in report.balances.values()), Decimal("0.00"))
    average = round2(total / report.accepted) if report.accepted else Decimal("0.00")
    return {
        "total_expenses": report.accepted,
        "total_amount": round2(total),
        "total_people": len(report.balances),
        "average_expense": average,
    }
