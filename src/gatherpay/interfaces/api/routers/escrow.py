# src/gatherpay/interfaces/api/routers/escrow.py
from typing import Any, Dict

from fastapi import APIRouter, Depends

from gatherpay.application.services import EscrowEngine
from gatherpay.interfaces.api.deps import require_admin, get_escrow_service
from gatherpay.interfaces.api.schemas import EscrowOut

router = APIRouter(prefix="/escrow", tags=["Escrow"], dependencies=[Depends(require_admin)])


@router.get("/stats")
def escrow_stats(escrow: EscrowEngine = Depends(get_escrow_service)) -> Dict[str, Any]:
    return escrow.stats()


@router.post("/{escrow_id}/retry", response_model=EscrowOut)
def retry_escrow(escrow_id: int, escrow: EscrowEngine = Depends(get_escrow_service)):
    return escrow.retry_failed(escrow_id)
