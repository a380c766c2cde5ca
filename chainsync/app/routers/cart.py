from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..cart import CartEngine, Product
from ..deps import get_state
from ..state import AgentState
from ..validation import Money, PaymentMethod, ProductId, Rate

router = APIRouter(prefix="/cart", tags=["cart"])


class CartItemIn(BaseModel):
    product_id: ProductId
    name: str = Field(min_length=1, max_length=200)
    price: Money
    barcode: Optional[str] = None


class QuantityIn(BaseModel):
    # null/0 are allowed while the cashier is editing; submission rejects them.
    quantity: Optional[int] = Field(default=None, ge=0)


class CartSettingsIn(BaseModel):
    tax_rate: Optional[Rate] = None
    tax_included: Optional[bool] = None
    redeem_value: Optional[Money] = None
    redeem_points: Optional[int] = Field(default=None, ge=0)


class PaymentIn(BaseModel):
    method: Optional[PaymentMethod] = None
    amount_received: Optional[Money] = None


def cart_view(cart: CartEngine) -> dict:
    return {
        "items": [it.to_dict() for it in cart.items],
        "payment": cart.payment.to_dict(),
        "summary": cart.summary.to_dict(),
        "redeemPoints": cart.redeem_points,
        "canComplete": cart.can_complete(),
        "errors": cart.validation_errors(),
    }


@router.get("")
async def get_cart(state: AgentState = Depends(get_state)):
    return cart_view(state.cart)


@router.post("/items")
async def add_item(data: CartItemIn, state: AgentState = Depends(get_state)):
    state.add_product(Product(id=data.product_id, name=data.name, price=data.price, barcode=data.barcode))
    return cart_view(state.cart)


@router.patch("/items/{line_id}")
async def update_item(line_id: str, data: QuantityIn, state: AgentState = Depends(get_state)):
    try:
        state.cart.update_quantity(line_id, data.quantity)
    except KeyError:
        raise HTTPException(status_code=404, detail="line not found")
    return cart_view(state.cart)


@router.delete("/items/{line_id}")
async def remove_item(line_id: str, state: AgentState = Depends(get_state)):
    if not state.cart.remove_item(line_id):
        raise HTTPException(status_code=404, detail="line not found")
    return cart_view(state.cart)


@router.post("/clear")
async def clear_cart(state: AgentState = Depends(get_state)):
    state.cart.clear_cart()
    return cart_view(state.cart)


@router.patch("/settings")
async def update_settings(data: CartSettingsIn, state: AgentState = Depends(get_state)):
    cart = state.cart
    if data.tax_rate is not None:
        cart.set_tax_rate(data.tax_rate)
    if data.tax_included is not None:
        cart.set_tax_included(data.tax_included)
    if data.redeem_value is not None:
        cart.set_redeem_value(data.redeem_value)
    if data.redeem_points is not None:
        cart.set_redeem_points(data.redeem_points)
    return cart_view(cart)


@router.patch("/payment")
async def update_payment(data: PaymentIn, state: AgentState = Depends(get_state)):
    kwargs = {"method": data.method}
    # Explicit null clears the tendered amount; omitting it leaves it alone.
    if "amount_received" in data.model_fields_set:
        kwargs["amount_received"] = data.amount_received
    state.cart.update_payment(**kwargs)
    return cart_view(state.cart)
