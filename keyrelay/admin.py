"""Admin and coordinator endpoints for the credential pool."""

import logging
from typing import Any, Dict

from fastapi import APIRouter, HTTPException, Request
from starlette.responses import JSONResponse

from keyrelay.coordinator import Coordinator, Reconfigure, ResetPool
from keyrelay.errors import NoCredentialError, UnknownOperationError
from keyrelay.pool_client import DISPATCH_PATH

logger = logging.getLogger(__name__)

admin_router = APIRouter(prefix="/admin", tags=["admin"])
coordinator_router = APIRouter(tags=["coordinator"])


def _coordinator(request: Request) -> Coordinator:
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(
            status_code=409,
            detail="Credential pool is owned by the coordinator at COORDINATOR_URL",
        )
    return coordinator


@admin_router.get("/status")
async def get_all_status(request: Request) -> Dict[str, object]:
    """Get status of all credentials in the pool."""
    return _coordinator(request).pool.get_status()


@admin_router.get("/status/{index}")
async def get_credential_status(request: Request, index: int) -> Dict[str, object]:
    """Get status of a specific credential."""
    status = _coordinator(request).pool.get_record_status(index)
    if status is None:
        raise HTTPException(status_code=404, detail=f"Credential {index} not found")
    return status


@admin_router.post("/reconfigure")
async def reconfigure(request: Request) -> Dict[str, object]:
    """Replace every credential in the pool.

    Body: {"api_keys": ["AIza...", "AIza..."]}
    """
    body = await request.json()
    api_keys = body.get("api_keys") if isinstance(body, dict) else None
    if not isinstance(api_keys, list) or not api_keys:
        raise HTTPException(status_code=400, detail="api_keys must be a non-empty list")
    if not all(isinstance(key, str) and key.strip() for key in api_keys):
        raise HTTPException(
            status_code=400, detail="api_keys must contain non-empty strings"
        )

    coordinator = _coordinator(request)
    await coordinator.dispatch(Reconfigure(secrets=[key.strip() for key in api_keys]))
    return coordinator.pool.get_status()


@admin_router.post("/reset")
async def reset_pool(request: Request) -> Dict[str, str]:
    """Clear quota exhaustion and error counters on every credential."""
    await _coordinator(request).dispatch(ResetPool())
    logger.info("Credential pool reset by admin")
    return {"message": "Credential pool reset successfully"}


@coordinator_router.post(DISPATCH_PATH)
async def dispatch(request: Request) -> JSONResponse:
    """Apply one typed pool/session operation.

    Body: {"op": "select_credential"} or e.g. {"op": "report_success", "index": 0}
    """
    try:
        message: Any = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Body must be JSON")
    if not isinstance(message, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")

    try:
        result = await _coordinator(request).dispatch_message(message)
    except UnknownOperationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NoCredentialError as e:
        raise HTTPException(status_code=503, detail=str(e), headers={"Retry-After": "60"})
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return JSONResponse(content=result)
