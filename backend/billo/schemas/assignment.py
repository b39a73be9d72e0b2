import uuid
from pydantic import BaseModel, ConfigDict, Field

from billo.models.receipt import SplitType


class AssignmentInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    receipt_item_id: uuid.UUID = Field(alias="receiptItemId")
    user_id: str = Field(alias="userId")
    split_type: SplitType = Field(default=SplitType.full, alias="splitType")
    split_value: str | None = Field(default=None, alias="splitValue")
    # Ignored on write; shares are always recomputed server-side
    calculated_amount: str | None = Field(default=None, alias="calculatedAmount")


class SaveAssignmentsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    assignments: list[AssignmentInput]
    group_id: uuid.UUID | None = Field(default=None, alias="groupId")


class ToggleAssignmentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    receipt_item_id: uuid.UUID = Field(alias="receiptItemId")
    user_id: str = Field(alias="userId")
    version: int | None = None


class AssignAllRequest(BaseModel):
    version: int | None = None
