from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import PlainTextResponse

from ..deps import get_state
from ..receipts import DEFAULT_WIDTH, render_receipt
from ..state import AgentState

router = APIRouter(prefix="/receipts", tags=["receipts"])


@router.get("/last", response_class=PlainTextResponse)
def last_receipt(width: int = Query(DEFAULT_WIDTH, ge=24, le=64), state: AgentState = Depends(get_state)):
    if state.last_receipt is None:
        raise HTTPException(status_code=404, detail="no receipt yet")
    return PlainTextResponse(render_receipt(state.last_receipt, width=width))
