from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..deps import get_state
from ..state import AgentState

router = APIRouter(tags=["sync"])


class ConnectivityIn(BaseModel):
    online: bool


@router.get("/sync/status")
async def sync_status(state: AgentState = Depends(get_state)):
    st = await state.driver.status()
    return {
        "online": st.online,
        "pending": st.pending,
        "escalated": st.escalated,
        "escalationThreshold": state.driver.escalation_threshold,
        "inProgress": st.in_progress,
        "lastResult": asdict(st.last_result) if st.last_result else None,
        "lastSyncedAt": st.last_synced_at,
        "storeDegraded": bool(getattr(state.store, "degraded", False)),
    }


@router.post("/sync/now")
async def sync_now(state: AgentState = Depends(get_state)):
    result = await state.driver.sync_now()
    return asdict(result)


@router.post("/connectivity")
async def report_connectivity(data: ConnectivityIn, state: AgentState = Depends(get_state)):
    task = state.monitor.report(data.online)
    return {"online": state.driver.online, "drainScheduled": task is not None}


@router.get("/outbox")
async def list_outbox(state: AgentState = Depends(get_state)):
    records = await state.queue.list()
    threshold = state.driver.escalation_threshold
    return {
        "records": [
            {
                "id": r.id,
                "idempotencyKey": r.idempotency_key,
                "createdAt": r.created_at,
                "attempts": r.attempts,
                "nextAttemptAt": r.next_attempt_at,
                "lastError": r.last_error,
                "escalated": r.attempts >= threshold,
                "total": (r.payload or {}).get("total"),
            }
            for r in records
        ]
    }


@router.post("/outbox/{local_id}/expedite")
async def expedite_outbox(local_id: str, state: AgentState = Depends(get_state)):
    if not await state.queue.expedite(local_id):
        raise HTTPException(status_code=404, detail="record not found")
    return {"ok": True}


@router.delete("/outbox/{local_id}")
async def delete_outbox(local_id: str, state: AgentState = Depends(get_state)):
    if not await state.queue.delete(local_id):
        raise HTTPException(status_code=404, detail="record not found")
    return {"ok": True}
