"""
api/routes/v1/admin.py -- Operator endpoints: account directory and audit trail.

Read-only. Every route requires the admin role (router-level dependency).

Routes:
  GET /api/v1/admin/accounts                       -- page through / search accounts
  GET /api/v1/admin/accounts/{id}                  -- one account
  GET /api/v1/admin/accounts/{id}/events           -- audit events of one account
  GET /api/v1/admin/events/system                  -- audit events without an account
"""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query

from api.models import AccountPageResponse, AccountResponse, AuditEventResponse
from auth.dependencies import Services, get_services, require_admin

# Auth policy:
# - every route: requires admin (require_admin) -- account data and audit history are internal
router = APIRouter(dependencies=[Depends(require_admin)])


@router.get("/admin/accounts", response_model=AccountPageResponse)
def list_accounts(
    q: Annotated[str, Query(max_length=255)] = "",
    page: Annotated[int, Query(ge=1)] = 1,
    per_page: Annotated[int, Query(ge=1, le=200)] = 50,
    services: Services = Depends(get_services),
) -> AccountPageResponse:
    """List accounts newest first. `q` filters by email, id, or role substring."""
    result = services.directory.search_accounts(q, page, per_page)
    return AccountPageResponse(
        accounts=[AccountResponse.from_account(a) for a in result.accounts],
        total=result.total,
        page=page,
        per_page=per_page,
    )


@router.get("/admin/accounts/{account_id}", response_model=AccountResponse)
def get_account(account_id: str, services: Services = Depends(get_services)) -> AccountResponse:
    account = services.directory.get_by_id(account_id)
    if account is None:
        tombstone = services.directory.get_tombstone(account_id)
        message = "Account was deleted." if tombstone is not None else "Account not found."
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": message})
    return AccountResponse.from_account(account)


@router.get("/admin/accounts/{account_id}/events", response_model=list[AuditEventResponse])
def account_events(
    account_id: str,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
    services: Services = Depends(get_services),
) -> list[AuditEventResponse]:
    events = services.audit.query_for_account(account_id, limit=limit, offset=offset)
    return [AuditEventResponse.from_event(e) for e in events]


@router.get("/admin/events/system", response_model=list[AuditEventResponse])
def system_events(
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
    services: Services = Depends(get_services),
) -> list[AuditEventResponse]:
    events = services.audit.query_system(limit=limit, offset=offset)
    return [AuditEventResponse.from_event(e) for e in events]
