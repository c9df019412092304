"""API routes — credits, entitlement and checkout for the signed-in user."""

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from canvas_billing.db.session import get_db
from canvas_billing.models.user import User
from canvas_billing.schemas.credits import ConsumeRequest, CreditSummary, LedgerEntryOut
from canvas_billing.services.auth_service import get_current_user
from canvas_billing.services.checkout_service import CheckoutError, create_checkout_session
from canvas_billing.services.credit_service import consume, recent_entries
from canvas_billing.services.subscription_service import get_credits_balance, has_entitlement

router = APIRouter(prefix="/api", tags=["api"])

_CONSUME_ERROR_STATUS = {
    "invalid-amount": 422,
    "no-subscription": 404,
    "not-entitled": 403,
    "insufficient-credits": 402,
}


@router.get("/credits", response_model=CreditSummary)
async def credits_summary(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    entries = await recent_entries(db, user.id)
    return CreditSummary(
        balance=await get_credits_balance(db, user.id),
        entitled=await has_entitlement(db, user.id),
        recent_entries=[
            LedgerEntryOut(
                id=entry.id,
                entry_type=entry.entry_type,
                amount=entry.amount,
                reason=entry.reason,
                idempotency_key=entry.idempotency_key,
                created_at=entry.created_at,
            )
            for entry in entries
        ],
    )


@router.post("/credits/consume")
async def consume_credits(
    request: ConsumeRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await consume(
        db,
        user.id,
        request.amount,
        reason=request.reason,
        idempotency_key=request.idempotency_key,
    )
    if not result.ok:
        return JSONResponse(
            status_code=_CONSUME_ERROR_STATUS.get(result.error, 400),
            content=result.model_dump(),
        )
    return result.model_dump()


@router.get("/entitlement")
async def entitlement(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return {"entitled": await has_entitlement(db, user.id)}


# --- Billing endpoints ---


@router.post("/billing/checkout")
async def billing_checkout(
    plan: str = Query("professional"),
    user: User = Depends(get_current_user),
):
    try:
        url = await create_checkout_session(user, plan)
    except CheckoutError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return RedirectResponse(url, status_code=303)
