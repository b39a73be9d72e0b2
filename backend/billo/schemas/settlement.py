import uuid
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field

from billo.models.settlement import SettlementStatus
from billo.schemas.common import Money, MoneyStr


class SettlementCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    from_user_id: str = Field(alias="fromUserId", min_length=1)
    to_user_id: str = Field(alias="toUserId", min_length=1)
    amount: MoneyStr
    currency: str = "USD"
    group_id: uuid.UUID | None = Field(default=None, alias="groupId")
    receipt_id: uuid.UUID | None = Field(default=None, alias="receiptId")
    notes: str | None = None


class SettlementUpdate(BaseModel):
    status: SettlementStatus
    notes: str | None = None


class SettlementResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: uuid.UUID
    receipt_id: uuid.UUID | None
    group_id: uuid.UUID | None
    from_user_id: str
    to_user_id: str
    amount: Money
    currency: str
    status: SettlementStatus
    settled_at: datetime | None
    notes: str | None
    created_at: datetime


class BalanceSummaryResponse(BaseModel):
    total_you_owe: str
    total_owed_to_you: str
    net_balance: str
    pending_you_owe_count: int
    pending_owed_to_you_count: int
    completed_count: int
    currency: str


class MemberBalanceResponse(BaseModel):
    user_id: str
    name: str | None
    email: str | None
    total_owed: str
    total_owed_to: str
    net_balance: str


class PairBalanceResponse(BaseModel):
    from_user_id: str
    to_user_id: str
    amount: str
    settlement_count: int
