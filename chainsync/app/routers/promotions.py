from fastapi import APIRouter, Depends, Query

from ..deps import get_state
from ..pricing import fmt_amount
from ..state import AgentState
from ..validation import Money, ProductId

router = APIRouter(prefix="/promotions", tags=["promotions"])


@router.get("/effective-price")
async def effective_price(
    product_id: ProductId = Query(...),
    price: Money = Query(...),
    state: AgentState = Depends(get_state),
):
    # Served from cache when fresh; a miss costs one batch call.
    await state.promotions.fetch_promotions([product_id])
    eff = state.promotions.get_effective_price(product_id, price)
    return {
        "productId": product_id,
        "price": fmt_amount(eff.price),
        "hasDiscount": eff.has_discount,
        "discountAmount": fmt_amount(eff.discount_amount),
        "promotion": eff.promotion.model_dump(mode="json", by_alias=True) if eff.promotion else None,
    }
