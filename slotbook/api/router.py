from fastapi import APIRouter
from slotbook.modules.slots.router import router as slots_router
from slotbook.modules.admission.router import router as admission_router
from slotbook.modules.reconciliation.router import router as reconciliation_router

api_router = APIRouter()
api_router.include_router(slots_router, prefix="/slots", tags=["slots"])
api_router.include_router(admission_router, tags=["bookings"])
api_router.include_router(reconciliation_router, tags=["reconciliation"])

@api_router.get("/health", tags=["health"])
async def health():
    return {"status": "ok"}
