from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..deps import get_state
from ..logs import json_log
from ..state import AgentState

router = APIRouter(tags=["sales"])


class SaleIn(BaseModel):
    cashier: Optional[str] = None
    print_receipt: bool = True


@router.post("/sale")
async def submit_sale(data: SaleIn, state: AgentState = Depends(get_state)):
    # CartValidationError -> 422 and OfflineDataLossError -> 507 are mapped in main.py.
    result = await state.checkout.submit(state.cart, state.settings.store_id, cashier=data.cashier)
    state.last_receipt = result.receipt

    print_error = None
    printed_with = None
    if data.print_receipt:
        try:
            printed_with = await state.printer.print_receipt(result.receipt)
        except Exception as ex:
            # The sale is already saved; a jammed printer must not undo it.
            json_log("warning", "sale.receipt_not_printed", receipt_number=result.receipt_number, error=str(ex))
            print_error = str(ex)

    return {
        "status": result.status,
        "idempotencyKey": result.idempotency_key,
        "localId": result.local_id,
        "receiptNumber": result.receipt_number,
        "total": result.payload["total"],
        "changeDue": result.payload["changeDue"],
        "printedWith": printed_with,
        "printError": print_error,
    }
