import uuid
from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, ConfigDict, Field, StringConstraints, field_validator
from typing import Annotated

from billo.models.receipt import ReceiptStatus, SplitType
from billo.schemas.common import Money

PriceStr = Annotated[str, StringConstraints(strip_whitespace=True, pattern=r"^\d+(\.\d{1,2})?$")]
QuantityStr = Annotated[str, StringConstraints(strip_whitespace=True, pattern=r"^\d+(\.\d+)?$")]


def _stringify(v):
    # OCR output sometimes carries numbers instead of strings
    if v is None or isinstance(v, str):
        return v
    if isinstance(v, (int, float, Decimal)) and not isinstance(v, bool):
        return str(v)
    return v


class ExtractedItem(BaseModel):
    name: str = "Unknown Item"
    quantity: str | None = None
    unit_price: str | None = Field(default=None, alias="unitPrice")
    total_price: str | None = Field(default=None, alias="totalPrice")
    line_number: int | None = Field(default=None, alias="lineNumber")
    category: str | None = None

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("quantity", "unit_price", "total_price", mode="before")
    @classmethod
    def coerce_numbers(cls, v):
        return _stringify(v)


class ExtractedReceipt(BaseModel):
    """Shape produced by the OCR collaborator."""
    model_config = ConfigDict(populate_by_name=True)

    merchant_name: str | None = Field(default=None, alias="merchantName")
    merchant_address: str | None = Field(default=None, alias="merchantAddress")
    purchase_date: str | None = Field(default=None, alias="purchaseDate")
    tax: str | None = None
    total_amount: str | None = Field(default=None, alias="totalAmount")
    items: list[ExtractedItem] = []

    @field_validator("tax", "total_amount", mode="before")
    @classmethod
    def coerce_numbers(cls, v):
        return _stringify(v)


class ConfirmExtractionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    extracted_data: ExtractedReceipt = Field(alias="extractedData")


class ManualItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    name: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
    quantity: QuantityStr = "1"
    unit_price: PriceStr = Field(alias="unitPrice")
    total_price: PriceStr = Field(alias="totalPrice")
    category: str | None = None


class ReceiptItemsReplace(BaseModel):
    items: list[ManualItem] = Field(min_length=1)


class ManualReceiptCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    merchant_name: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)] = Field(alias="merchantName")
    merchant_address: str | None = Field(default=None, alias="merchantAddress")
    purchase_date: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)] = Field(alias="purchaseDate")
    tax: PriceStr | None = None
    items: list[ManualItem] = Field(min_length=1)
    group_id: uuid.UUID | None = Field(default=None, alias="groupId")
    image_url: str | None = Field(default=None, alias="imageUrl")
    image_public_id: str | None = Field(default=None, alias="imagePublicId")


class ReceiptCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    image_url: str = Field(alias="imageUrl")
    image_public_id: str = Field(alias="imagePublicId")
    group_id: uuid.UUID | None = Field(default=None, alias="groupId")


class ReceiptUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    merchant_name: str | None = Field(default=None, alias="merchantName")
    merchant_address: str | None = Field(default=None, alias="merchantAddress")
    purchase_date: str | None = Field(default=None, alias="purchaseDate")
    tax: PriceStr | None = None


class ReceiptStatusUpdate(BaseModel):
    status: ReceiptStatus
    error: str | None = None


class ItemAssignmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: uuid.UUID
    receipt_item_id: uuid.UUID
    user_id: str
    split_type: SplitType
    split_value: Money | None = None
    calculated_amount: Money


class ReceiptItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: uuid.UUID
    name: str
    quantity: Decimal
    unit_price: Money
    total_price: Money
    line_number: int | None
    category: str | None


class ReceiptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: uuid.UUID
    user_id: str
    group_id: uuid.UUID | None
    image_url: str | None
    merchant_name: str | None
    merchant_address: str | None
    purchase_date: datetime | None
    tax: Money | None
    total_amount: Money | None
    status: ReceiptStatus
    version: int
    created_at: datetime
    items: list[ReceiptItemResponse] = []


class ReceiptListResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: uuid.UUID
    group_id: uuid.UUID | None
    merchant_name: str | None
    purchase_date: datetime | None
    total_amount: Money | None
    status: ReceiptStatus
    created_at: datetime


class ConfirmExtractionResponse(BaseModel):
    receipt_id: uuid.UUID
    item_count: int
    total_amount: str
