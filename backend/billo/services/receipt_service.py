import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from sqlalchemy import select, delete, update, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import noload

from billo.core.errors import AccessDeniedError, NotFoundError, StateConflictError, ValidationError
from billo.models.group import GroupMember
from billo.models.receipt import Receipt, ReceiptItem, ItemAssignment, ReceiptStatus
from billo.models.user import User
from billo.schemas.receipt import ExtractedReceipt, ManualItem, ManualReceiptCreate, ReceiptUpdate
from billo.services.settlement_service import cancel_receipt_settlements, create_receipt_settlements
from billo.services.split_service import PersonTotals, SplitItem, SplitMember, totals_from_rows
from billo.utils.currency_utils import CENT, from_cents, parse_money, to_cents

logger = logging.getLogger(__name__)

# Upload pipeline; manual receipts jump straight to completed
STATUS_TRANSITIONS: dict[ReceiptStatus, set[ReceiptStatus]] = {
    ReceiptStatus.pending: {ReceiptStatus.uploading, ReceiptStatus.processing, ReceiptStatus.failed},
    ReceiptStatus.uploading: {ReceiptStatus.processing, ReceiptStatus.failed},
    ReceiptStatus.processing: {ReceiptStatus.completed, ReceiptStatus.failed},
    ReceiptStatus.failed: {ReceiptStatus.processing},
    ReceiptStatus.completed: set(),
}


def ensure_can_transition(current: ReceiptStatus, target: ReceiptStatus) -> None:
    current, target = ReceiptStatus(current), ReceiptStatus(target)
    if target not in STATUS_TRANSITIONS[current]:
        raise StateConflictError(f"Receipt cannot move from {current.value} to {target.value}")


def is_manual_receipt(receipt: Receipt) -> bool:
    """Manual entry skips extraction, so it is completed without an extraction timestamp."""
    return receipt.status == ReceiptStatus.completed and receipt.extracted_at is None


@dataclass
class PreparedItem:
    name: str
    quantity: Decimal
    unit_price: Decimal
    total_price: Decimal
    line_number: int
    category: str | None


def clean_optional(value: str | None) -> str | None:
    """OCR emits the literal string "null" for missing values."""
    if value is None:
        return None
    value = str(value).strip()
    if not value or value.lower() in ("null", "none", "undefined"):
        return None
    return value


def parse_purchase_date(value: str | None, required: bool = False) -> datetime | None:
    cleaned = clean_optional(value)
    if cleaned is None:
        if required:
            raise ValidationError("Purchase date is required", field="purchaseDate")
        return None
    try:
        parsed = datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = datetime.combine(date.fromisoformat(cleaned[:10]), time.min)
        except ValueError:
            if required:
                raise ValidationError("Purchase date is not a valid date", field="purchaseDate")
            logger.warning(f"Ignoring unparsable purchase date from extraction: {cleaned!r}")
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _quantity(raw, label: str, field: str) -> Decimal:
    cleaned = clean_optional(raw)
    if cleaned is None:
        return Decimal("1")
    try:
        qty = Decimal(cleaned)
    except InvalidOperation:
        raise ValidationError(f'Invalid item data: quantity must be a number for item "{label}"', field=field)
    if not qty.is_finite() or qty <= 0:
        raise ValidationError(f'Invalid item data: quantity must be positive for item "{label}"', field=field)
    return qty


def prepare_items(items, strict: bool = False) -> list[PreparedItem]:
    """
    Validate raw line items before anything is written.

    Every item needs numeric ``unit_price`` and ``total_price``; the error
    names the offending item. ``strict`` (manual entry) also requires the
    total to match quantity * unit price to the cent.
    """
    prepared = []
    for index, item in enumerate(items):
        label = (item.name or "").strip() or f"#{index + 1}"
        prefix = f"items[{index}]"
        if strict and not (item.name or "").strip():
            raise ValidationError("Item name is required", field=f"{prefix}.name")

        for attr, field in (("unit_price", "unitPrice"), ("total_price", "totalPrice")):
            if clean_optional(getattr(item, attr)) is None:
                raise ValidationError(
                    f'Invalid item data: missing prices for item "{label}"', field=f"{prefix}.{field}"
                )
        try:
            unit_price = parse_money(clean_optional(item.unit_price), f"{prefix}.unitPrice")
            total_price = parse_money(clean_optional(item.total_price), f"{prefix}.totalPrice")
        except ValidationError as e:
            raise ValidationError(
                f'Invalid item data: prices must be valid numbers for item "{label}"', field=e.field
            ) from e

        quantity = _quantity(item.quantity, label, f"{prefix}.quantity")
        if strict:
            expected = (quantity * unit_price).quantize(CENT, rounding=ROUND_HALF_UP)
            if abs(to_cents(expected) - to_cents(total_price)) > 1:
                raise ValidationError(
                    f'Total for item "{label}" does not match quantity x unit price',
                    field=f"{prefix}.totalPrice",
                )

        line_number = getattr(item, "line_number", None)
        prepared.append(PreparedItem(
            name=label if item.name else "Unknown Item",
            quantity=quantity,
            unit_price=unit_price,
            total_price=total_price,
            line_number=line_number if line_number is not None else index + 1,
            category=clean_optional(getattr(item, "category", None)),
        ))
    return prepared


def compute_receipt_total(item_totals, tax: Decimal | None) -> Decimal:
    cents = sum(to_cents(t) for t in item_totals)
    if tax is not None:
        cents += to_cents(tax)
    return from_cents(cents)


def _clean_tax(raw) -> Decimal | None:
    cleaned = clean_optional(raw)
    if cleaned is None:
        return None
    return parse_money(cleaned, "tax")


def _item_rows(receipt_id: uuid.UUID, prepared: list[PreparedItem]) -> list[ReceiptItem]:
    return [
        ReceiptItem(
            receipt_id=receipt_id,
            name=p.name,
            quantity=p.quantity,
            unit_price=p.unit_price,
            total_price=p.total_price,
            line_number=p.line_number,
            category=p.category,
        )
        for p in prepared
    ]


async def _is_group_member(db: AsyncSession, group_id: uuid.UUID | None, user_id: str) -> bool:
    if group_id is None:
        return False
    result = await db.execute(
        select(GroupMember.id).where(GroupMember.group_id == group_id, GroupMember.user_id == user_id)
    )
    return result.scalar_one_or_none() is not None


async def _has_assignment(db: AsyncSession, receipt_id: uuid.UUID, user_id: str) -> bool:
    result = await db.execute(
        select(ItemAssignment.id)
        .join(ReceiptItem, ReceiptItem.id == ItemAssignment.receipt_item_id)
        .where(ReceiptItem.receipt_id == receipt_id, ItemAssignment.user_id == user_id)
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def load_receipt(db: AsyncSession, receipt_id: uuid.UUID) -> Receipt:
    result = await db.execute(select(Receipt).where(Receipt.id == receipt_id))
    receipt = result.scalar_one_or_none()
    if not receipt:
        raise NotFoundError("Receipt not found")
    return receipt


async def reload_receipt(db: AsyncSession, receipt_id: uuid.UUID) -> Receipt:
    """Fresh copy with items and assignments eagerly loaded for serialisation."""
    result = await db.execute(
        select(Receipt).where(Receipt.id == receipt_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def load_owned_receipt(db: AsyncSession, receipt_id: uuid.UUID, actor_id: str) -> Receipt:
    receipt = await load_receipt(db, receipt_id)
    if receipt.user_id != actor_id:
        raise AccessDeniedError("Access denied to this receipt")
    return receipt


async def can_read_receipt(db: AsyncSession, receipt: Receipt, user_id: str) -> bool:
    """Owner, members of the receipt's group, or anyone holding an assignment on it."""
    if receipt.user_id == user_id:
        return True
    if await _is_group_member(db, receipt.group_id, user_id):
        return True
    return await _has_assignment(db, receipt.id, user_id)


async def get_receipt(db: AsyncSession, receipt_id: uuid.UUID, actor_id: str) -> Receipt:
    receipt = await load_receipt(db, receipt_id)
    if not await can_read_receipt(db, receipt, actor_id):
        raise AccessDeniedError("Access denied to this receipt")
    return receipt


async def load_manual_receipt(db: AsyncSession, receipt_id: uuid.UUID, actor_id: str) -> Receipt:
    receipt = await load_owned_receipt(db, receipt_id, actor_id)
    if not is_manual_receipt(receipt):
        raise ValidationError("Only manual receipts can be edited")
    return receipt


async def receipt_items(db: AsyncSession, receipt_id: uuid.UUID) -> list[ReceiptItem]:
    result = await db.execute(
        select(ReceiptItem).where(ReceiptItem.receipt_id == receipt_id).order_by(ReceiptItem.line_number)
    )
    return list(result.scalars().all())


async def assignment_rows(db: AsyncSession, receipt_id: uuid.UUID) -> list[ItemAssignment]:
    result = await db.execute(
        select(ItemAssignment)
        .join(ReceiptItem, ReceiptItem.id == ItemAssignment.receipt_item_id)
        .where(ReceiptItem.receipt_id == receipt_id)
    )
    return list(result.scalars().all())


async def person_totals_for_receipt(db: AsyncSession, receipt: Receipt) -> PersonTotals:
    """Per-person totals from the persisted assignment rows."""
    items = await receipt_items(db, receipt.id)
    rows = await assignment_rows(db, receipt.id)
    user_ids = {r.user_id for r in rows}
    members = []
    if user_ids:
        users_result = await db.execute(
            select(User.id, User.name, User.email).where(User.id.in_(user_ids))
        )
        members = [SplitMember(uid, name, email) for uid, name, email in users_result.all()]
    split_items = [SplitItem(i.id, i.total_price, i.name) for i in items]
    return totals_from_rows(split_items, rows, members, receipt.tax)


async def regenerate_receipt_settlements(db: AsyncSession, receipt: Receipt) -> None:
    """Rebuild pending settlements from the stored assignments and tax. Caller commits."""
    owner_result = await db.execute(select(User.currency_code).where(User.id == receipt.user_id))
    currency = owner_result.scalar_one_or_none() or "USD"
    totals = await person_totals_for_receipt(db, receipt)
    await create_receipt_settlements(db, receipt.id, receipt.user_id, totals, receipt.group_id, currency)


async def list_receipts(db: AsyncSession, user_id: str) -> list[Receipt]:
    """Receipts the user owns, shares a group with, or holds an assignment on."""
    assigned = (
        select(ItemAssignment.id)
        .join(ReceiptItem, ReceiptItem.id == ItemAssignment.receipt_item_id)
        .where(ReceiptItem.receipt_id == Receipt.id, ItemAssignment.user_id == user_id)
    )
    member_groups = select(GroupMember.group_id).where(GroupMember.user_id == user_id)
    result = await db.execute(
        select(Receipt)
        .options(noload(Receipt.items), noload(Receipt.owner))
        .where(or_(
            Receipt.user_id == user_id,
            Receipt.group_id.in_(member_groups),
            assigned.exists(),
        ))
        .order_by(Receipt.created_at.desc())
    )
    return list(result.scalars().all())


async def create_receipt(
    db: AsyncSession,
    owner_id: str,
    image_url: str,
    image_public_id: str,
    group_id: uuid.UUID | None = None,
) -> Receipt:
    if group_id is not None and not await _is_group_member(db, group_id, owner_id):
        raise AccessDeniedError("Access denied to this group")
    receipt = Receipt(
        user_id=owner_id,
        group_id=group_id,
        image_url=image_url,
        image_public_id=image_public_id,
        status=ReceiptStatus.pending,
    )
    db.add(receipt)
    await db.commit()
    return await reload_receipt(db, receipt.id)


async def create_manual_receipt(db: AsyncSession, owner_id: str, data: ManualReceiptCreate) -> Receipt:
    purchase_date = parse_purchase_date(data.purchase_date, required=True)
    prepared = prepare_items(data.items, strict=True)
    tax = _clean_tax(data.tax)
    if data.group_id is not None and not await _is_group_member(db, data.group_id, owner_id):
        raise AccessDeniedError("Access denied to this group")

    receipt = Receipt(
        user_id=owner_id,
        group_id=data.group_id,
        image_url=data.image_url,
        image_public_id=data.image_public_id,
        merchant_name=data.merchant_name,
        merchant_address=clean_optional(data.merchant_address),
        purchase_date=purchase_date,
        tax=tax,
        total_amount=compute_receipt_total((p.total_price for p in prepared), tax),
        status=ReceiptStatus.completed,
    )
    db.add(receipt)
    await db.flush()
    db.add_all(_item_rows(receipt.id, prepared))
    await db.commit()
    return await reload_receipt(db, receipt.id)


async def confirm_extraction(
    db: AsyncSession, receipt_id: uuid.UUID, actor_id: str, extracted: ExtractedReceipt
) -> Receipt:
    """
    Make ``extracted`` the receipt's authoritative item list.

    Validation happens before any write. Old items (and, through the cascade,
    their assignments) are deleted and the new ones inserted in the same
    transaction, so a failure leaves the previous item set in place. Re-running
    with the same input gives the same items and total.
    """
    receipt = await load_owned_receipt(db, receipt_id, actor_id)
    prepared = prepare_items(extracted.items)
    tax = _clean_tax(extracted.tax)
    purchase_date = parse_purchase_date(extracted.purchase_date)

    try:
        await cancel_receipt_settlements(db, receipt_id)
        await db.execute(delete(ReceiptItem).where(ReceiptItem.receipt_id == receipt_id))
        db.add_all(_item_rows(receipt_id, prepared))
        await db.execute(
            update(Receipt)
            .where(Receipt.id == receipt_id)
            .values(
                merchant_name=clean_optional(extracted.merchant_name),
                merchant_address=clean_optional(extracted.merchant_address),
                purchase_date=purchase_date,
                tax=tax,
                total_amount=compute_receipt_total((p.total_price for p in prepared), tax),
                extracted_data=extracted.model_dump(by_alias=True),
                extraction_error=None,
                extracted_at=datetime.now(timezone.utc),
                status=ReceiptStatus.completed,
                version=Receipt.version + 1,
                updated_at=datetime.now(timezone.utc),
            )
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Receipt {receipt_id}: confirmed {len(prepared)} extracted item(s)")
    return await reload_receipt(db, receipt_id)


async def update_receipt(
    db: AsyncSession, receipt_id: uuid.UUID, actor_id: str, data: ReceiptUpdate
) -> Receipt:
    receipt = await load_owned_receipt(db, receipt_id, actor_id)
    fields = data.model_dump(exclude_unset=True)

    if "merchant_name" in fields:
        receipt.merchant_name = clean_optional(fields["merchant_name"])
    if "merchant_address" in fields:
        receipt.merchant_address = clean_optional(fields["merchant_address"])
    if "purchase_date" in fields:
        receipt.purchase_date = parse_purchase_date(fields["purchase_date"])
    receipt.version += 1

    try:
        if "tax" in fields:
            # Tax shares feed every member's total
            receipt.tax = _clean_tax(fields["tax"])
            items_result = await db.execute(
                select(ReceiptItem.total_price).where(ReceiptItem.receipt_id == receipt_id)
            )
            receipt.total_amount = compute_receipt_total(items_result.scalars().all(), receipt.tax)
            await regenerate_receipt_settlements(db, receipt)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return await reload_receipt(db, receipt.id)


async def list_items(db: AsyncSession, receipt_id: uuid.UUID, actor_id: str) -> list[ReceiptItem]:
    await load_owned_receipt(db, receipt_id, actor_id)
    return await receipt_items(db, receipt_id)


async def replace_items(
    db: AsyncSession, receipt_id: uuid.UUID, actor_id: str, items: list[ManualItem]
) -> list[ReceiptItem]:
    """
    Swap the whole item list of a manual receipt.

    Old items take their assignments with them, so the receipt's pending
    settlements are cancelled in the same transaction.
    """
    receipt = await load_manual_receipt(db, receipt_id, actor_id)
    if not items:
        raise ValidationError("At least one item is required", field="items")
    prepared = prepare_items(items, strict=True)

    try:
        await db.execute(delete(ReceiptItem).where(ReceiptItem.receipt_id == receipt_id))
        db.add_all(_item_rows(receipt_id, prepared))
        receipt.total_amount = compute_receipt_total((p.total_price for p in prepared), receipt.tax)
        receipt.version += 1
        await cancel_receipt_settlements(db, receipt_id)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Receipt {receipt_id}: replaced items with {len(prepared)} manual item(s)")
    return await receipt_items(db, receipt_id)


async def add_item(db: AsyncSession, receipt_id: uuid.UUID, actor_id: str, item: ManualItem) -> ReceiptItem:
    receipt = await load_manual_receipt(db, receipt_id, actor_id)
    prepared = prepare_items([item], strict=True)[0]

    existing_result = await db.execute(
        select(ReceiptItem.total_price, ReceiptItem.line_number).where(ReceiptItem.receipt_id == receipt_id)
    )
    existing = existing_result.all()
    prepared.line_number = max((line or 0 for _, line in existing), default=0) + 1

    new_item = _item_rows(receipt_id, [prepared])[0]
    try:
        db.add(new_item)
        receipt.total_amount = compute_receipt_total(
            [total for total, _ in existing] + [prepared.total_price], receipt.tax
        )
        receipt.version += 1
        await db.flush()
        await regenerate_receipt_settlements(db, receipt)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return new_item


async def clear_items(db: AsyncSession, receipt_id: uuid.UUID, actor_id: str) -> int:
    """Drop every item of a manual receipt; the total falls back to the tax alone."""
    receipt = await load_manual_receipt(db, receipt_id, actor_id)
    try:
        result = await db.execute(delete(ReceiptItem).where(ReceiptItem.receipt_id == receipt_id))
        receipt.total_amount = compute_receipt_total([], receipt.tax)
        receipt.version += 1
        await cancel_receipt_settlements(db, receipt_id)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return result.rowcount or 0


async def update_receipt_status(
    db: AsyncSession, receipt_id: uuid.UUID, status: ReceiptStatus, error: str | None = None
) -> Receipt:
    receipt = await load_receipt(db, receipt_id)
    current = ReceiptStatus(receipt.status)
    status = ReceiptStatus(status)
    ensure_can_transition(current, status)

    result = await db.execute(
        update(Receipt)
        .where(Receipt.id == receipt_id, Receipt.status == current)
        .values(
            status=status,
            extraction_error=error if status == ReceiptStatus.failed else None,
            updated_at=datetime.now(timezone.utc),
        )
        .returning(Receipt.id)
    )
    if result.scalar_one_or_none() is None:
        await db.rollback()
        raise StateConflictError("Receipt status changed, please refresh")
    await db.commit()
    return await reload_receipt(db, receipt.id)


async def delete_receipt(db: AsyncSession, receipt_id: uuid.UUID, actor_id: str) -> None:
    """Items, assignments and settlements go with it via ON DELETE CASCADE."""
    await load_owned_receipt(db, receipt_id, actor_id)
    await db.execute(delete(Receipt).where(Receipt.id == receipt_id))
    await db.commit()
