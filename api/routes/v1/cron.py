"""
api/routes/v1/cron.py -- Maintenance endpoints for an external scheduler.

Routes:
  POST /api/v1/cron/delete-expired-tokens  -- sweep tokens with expires <= now

Auth: `Authorization: Bearer <CRON_API_KEY>`. The key is compared in constant
time. Missing or wrong keys get the same 401 so the response never hints at
how close a guess was.
"""

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import SweepResponse
from auth.dependencies import Services, get_services
from auth.tokens import constant_time_equals

router = APIRouter()


def require_cron_key(request: Request, services: Services = Depends(get_services)) -> None:
    header = request.headers.get("Authorization", "")
    presented = header[7:] if header.startswith("Bearer ") else ""
    if not presented or not constant_time_equals(presented, services.settings.cron_api_key):
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Valid cron API key required."},
        )


@router.post("/cron/delete-expired-tokens", response_model=SweepResponse, dependencies=[Depends(require_cron_key)])
def delete_expired_tokens(services: Services = Depends(get_services)) -> SweepResponse:
    return SweepResponse(deleted=services.accounts.sweep_expired_tokens())
