import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from billo.api.deps import get_usage_limiter
from billo.core.auth import get_current_user
from billo.core.database import get_db
from billo.models.receipt import ReceiptStatus
from billo.models.user import User
from billo.schemas.assignment import AssignAllRequest, SaveAssignmentsRequest, ToggleAssignmentRequest
from billo.schemas.receipt import (
    ConfirmExtractionRequest, ConfirmExtractionResponse, ItemAssignmentResponse, ManualItem, ManualReceiptCreate,
    ReceiptCreate, ReceiptItemResponse, ReceiptItemsReplace, ReceiptListResponse, ReceiptResponse,
    ReceiptStatusUpdate, ReceiptUpdate,
)
from billo.schemas.settlement import SettlementResponse
from billo.services import assignment_service
from billo.services.receipt_service import (
    add_item, clear_items, confirm_extraction, create_manual_receipt, create_receipt, delete_receipt,
    ensure_can_transition, get_receipt, list_items, list_receipts, load_owned_receipt,
    person_totals_for_receipt, replace_items, update_receipt, update_receipt_status,
)
from billo.services.settlement_service import list_receipt_settlements
from billo.services.usage_service import UsageLimiter
from billo.utils.currency_utils import money_str

router = APIRouter(prefix="/api/receipts", tags=["receipts"])


@router.post("", response_model=ReceiptResponse, status_code=201)
async def upload(
    body: ReceiptCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await create_receipt(db, user.id, body.image_url, body.image_public_id, body.group_id)


@router.post("/manual", response_model=ReceiptResponse, status_code=201)
async def create_manual(
    body: ManualReceiptCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await create_manual_receipt(db, user.id, body)


@router.get("", response_model=list[ReceiptListResponse])
async def list_all(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await list_receipts(db, user.id)


@router.get("/{receipt_id}", response_model=ReceiptResponse)
async def get(
    receipt_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await get_receipt(db, receipt_id, user.id)


@router.patch("/{receipt_id}", response_model=ReceiptResponse)
async def update(
    receipt_id: uuid.UUID,
    body: ReceiptUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await update_receipt(db, receipt_id, user.id, body)


@router.delete("/{receipt_id}", status_code=204)
async def delete(
    receipt_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await delete_receipt(db, receipt_id, user.id)


@router.post("/{receipt_id}/scan", response_model=ReceiptResponse)
async def scan(
    receipt_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    limiter: UsageLimiter = Depends(get_usage_limiter),
):
    """Spend one AI scan and hand the receipt to the extraction worker."""
    receipt = await load_owned_receipt(db, receipt_id, user.id)
    # A scan the receipt cannot accept must not spend quota
    ensure_can_transition(receipt.status, ReceiptStatus.processing)
    usage = await limiter.check_and_consume(user.id, user.tier)
    if not usage.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"AI scan limit reached ({usage.limit} per window)",
            headers={"X-RateLimit-Reset": usage.resets_at.isoformat()},
        )
    return await update_receipt_status(db, receipt_id, ReceiptStatus.processing)


@router.post("/{receipt_id}/status", response_model=ReceiptResponse)
async def set_status(
    receipt_id: uuid.UUID,
    body: ReceiptStatusUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await load_owned_receipt(db, receipt_id, user.id)
    if body.status == ReceiptStatus.completed:
        raise HTTPException(status_code=400, detail="Confirm the extraction to complete a receipt")
    return await update_receipt_status(db, receipt_id, body.status, body.error)


@router.post("/{receipt_id}/confirm", response_model=ConfirmExtractionResponse)
async def confirm(
    receipt_id: uuid.UUID,
    body: ConfirmExtractionRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    receipt = await confirm_extraction(db, receipt_id, user.id, body.extracted_data)
    return ConfirmExtractionResponse(
        receipt_id=receipt.id,
        item_count=len(receipt.items),
        total_amount=money_str(receipt.total_amount),
    )


@router.get("/{receipt_id}/assignments", response_model=list[ItemAssignmentResponse])
async def get_assignments(
    receipt_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await assignment_service.get_assignments(db, receipt_id, user.id)


@router.put("/{receipt_id}/assignments", response_model=list[ItemAssignmentResponse])
async def save_assignments(
    receipt_id: uuid.UUID,
    body: SaveAssignmentsRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await assignment_service.save_assignments(db, receipt_id, user.id, body.assignments, body.group_id)


@router.post("/{receipt_id}/assignments/toggle")
async def toggle(
    receipt_id: uuid.UUID,
    body: ToggleAssignmentRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await assignment_service.toggle_assignment(
        db, receipt_id, body.receipt_item_id, body.user_id, user.id, body.version
    )
    result["assignments"] = [
        {**a, "calculated_amount": money_str(a["calculated_amount"])} for a in result["assignments"]
    ]
    return result


@router.post("/{receipt_id}/assignments/all", response_model=list[ItemAssignmentResponse])
async def assign_all(
    receipt_id: uuid.UUID,
    body: AssignAllRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await assignment_service.assign_all_to_group(db, receipt_id, user.id, body.version)


@router.delete("/{receipt_id}/assignments", status_code=204)
async def clear(
    receipt_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await assignment_service.clear_assignments(db, receipt_id, user.id)


@router.get("/{receipt_id}/totals")
async def totals(
    receipt_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    receipt = await get_receipt(db, receipt_id, user.id)
    person_totals = await person_totals_for_receipt(db, receipt)
    return person_totals.to_dict()


@router.get("/{receipt_id}/settlements", response_model=list[SettlementResponse])
async def receipt_settlements(
    receipt_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await get_receipt(db, receipt_id, user.id)
    return await list_receipt_settlements(db, receipt_id)


@router.get("/{receipt_id}/items", response_model=list[ReceiptItemResponse])
async def get_items(
    receipt_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await list_items(db, receipt_id, user.id)


@router.put("/{receipt_id}/items", response_model=list[ReceiptItemResponse])
async def put_items(
    receipt_id: uuid.UUID,
    body: ReceiptItemsReplace,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await replace_items(db, receipt_id, user.id, body.items)


@router.post("/{receipt_id}/items", response_model=ReceiptItemResponse, status_code=201)
async def post_item(
    receipt_id: uuid.UUID,
    body: ManualItem,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await add_item(db, receipt_id, user.id, body)


@router.delete("/{receipt_id}/items", status_code=204)
async def delete_items(
    receipt_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await clear_items(db, receipt_id, user.id)
