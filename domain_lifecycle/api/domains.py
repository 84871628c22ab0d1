"""
REST API for a tenant's custom domain.
"""

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from ..domains.errors import REJECTIONS, ErrorKind, OperationResult

logger = logging.getLogger("domain_lifecycle.api.domains")

router = APIRouter(prefix="/api/domains", tags=["domains"])

security = HTTPBearer(auto_error=False)

_STATUS_CODES = {
    ErrorKind.INVALID_DOMAIN: 400,
    ErrorKind.NOT_CONFIGURED: 404,
    ErrorKind.INVALID_STATE: 409,
    ErrorKind.CONFLICT: 409,
}


# ── Auth / tenant dependency ─────────────────────────────────────────

async def get_tenant_id(
    request: Request,
    x_tenant_id: str = Header(..., alias="X-Tenant-ID"),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """Resolve the calling tenant, enforcing the service token when configured."""
    api_token = request.app.state.settings.api_token
    if api_token:
        if credentials is None:
            raise HTTPException(status_code=401, detail="Missing bearer token")
        if not secrets.compare_digest(credentials.credentials, api_token):
            raise HTTPException(status_code=401, detail="Invalid token")

    tenant_id = x_tenant_id.strip()
    if not tenant_id:
        raise HTTPException(status_code=400, detail="X-Tenant-ID header is empty")
    return tenant_id


# ── Request models ───────────────────────────────────────────────────

class DomainSetRequest(BaseModel):
    domain: str


# ── Helpers ──────────────────────────────────────────────────────────

def _respond(result: OperationResult, dns_records: Optional[dict] = None) -> dict:
    """Raise for rejections; return the body for everything else."""
    if result.error in REJECTIONS:
        raise HTTPException(
            status_code=_STATUS_CODES[result.error],
            detail={"error": result.error.value, "message": result.message},
        )
    body = result.to_dict()
    if dns_records is not None:
        body["dns_records"] = dns_records
    return body


# ── Routes ───────────────────────────────────────────────────────────

@router.get("")
async def get_domain(request: Request, tenant_id: str = Depends(get_tenant_id)):
    """Current domain configuration and the DNS records to publish."""
    manager = request.app.state.domain_manager
    result = await manager.get_domain(tenant_id)
    return _respond(result, await manager.get_dns_records(tenant_id))


@router.put("")
async def set_domain(
    body: DomainSetRequest,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
):
    """Configure (or replace) the tenant's custom domain."""
    manager = request.app.state.domain_manager
    result = await manager.set_domain(tenant_id, body.domain)
    return _respond(result, await manager.get_dns_records(tenant_id) if result.ok else None)


@router.post("/verify")
async def verify_domain(request: Request, tenant_id: str = Depends(get_tenant_id)):
    """Check the DNS TXT ownership record."""
    manager = request.app.state.domain_manager
    return _respond(await manager.verify_domain(tenant_id))


@router.post("/provision")
async def provision_ssl(request: Request, tenant_id: str = Depends(get_tenant_id)):
    """Start SSL provisioning for a verified domain."""
    manager = request.app.state.domain_manager
    return _respond(await manager.provision_ssl(tenant_id))


@router.post("/status")
async def check_status(request: Request, tenant_id: str = Depends(get_tenant_id)):
    """Poll the hosting provider for certificate state."""
    manager = request.app.state.domain_manager
    return _respond(await manager.check_status(tenant_id))


@router.delete("")
async def remove_domain(request: Request, tenant_id: str = Depends(get_tenant_id)):
    """Remove the tenant's custom domain."""
    manager = request.app.state.domain_manager
    return _respond(await manager.remove_domain(tenant_id))


@router.get("/events")
async def list_events(
    request: Request,
    limit: int = 20,
    tenant_id: str = Depends(get_tenant_id),
):
    """Recent lifecycle events for the tenant's domain."""
    manager = request.app.state.domain_manager
    events = await manager.list_events(tenant_id, max(1, min(limit, 100)))
    return {"count": len(events), "events": events}
