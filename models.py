from typing import Annotated, Dict, FrozenSet, List, Literal, Optional, Union
from datetime import datetime, timezone
from decimal import Decimal

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field

# ============== Share rules ==============
# Resolved once when a record enters the ledger; nothing downstream branches on
# the raw shareType string.
class EqualShare(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["EQUAL"] = "EQUAL"

class ExactShare(BaseModel):
    """Literal currency amounts per person, taken verbatim."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["EXACT"] = "EXACT"
    shares: Dict[str, Decimal] = PydanticField(default_factory=dict)

class PercentageShare(BaseModel):
    """Percent of the expense amount per person."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["PERCENTAGE"] = "PERCENTAGE"
    shares: Dict[str, Decimal] = PydanticField(default_factory=dict)

ShareSpec = Annotated[
    Union[EqualShare, ExactShare, PercentageShare],
    PydanticField(discriminator="kind"),
]

SHARE_TYPES = ("EQUAL", "EXACT", "PERCENTAGE")

# ============== Ledger values ==============
class ExpenseRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    amount: Decimal
    payer: str
    participants: FrozenSet[str] = frozenset()
    share: ShareSpec = PydanticField(default_factory=EqualShare)

class BalanceEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    paid: Decimal
    owed: Decimal
    net: Decimal = PydanticField(serialization_alias="balance")

class SettlementTransaction(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_person: str = PydanticField(alias="from")
    to_person: str = PydanticField(alias="to")
    amount: Decimal

class Diagnostic(BaseModel):
    """Why (part of) an input record did not reach the ledger."""
    model_config = ConfigDict(frozen=True)

    index: int
    expense_id: Optional[int] = None
    reason: str

class LedgerReport(BaseModel):
    balances: Dict[str, BalanceEntry]
    diagnostics: List[Diagnostic] = PydanticField(default_factory=list)
    accepted: int = 0

# ============== Stored expenses ==============
def utc_now() -> datetime:
    return datetime.now(timezone.utc)

class ExpenseBase(SQLModel):
    description: str
    amount: Decimal
    paid_by: str
    share_type: str = "EQUAL"
    category: str = "OTHER"

class Expense(ExpenseBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    participants: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    # values kept as strings so Decimal precision survives the JSON column
    custom_shares: Optional[Dict[str, str]] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utc_now)
