from fastapi import APIRouter, Depends, Request
from typing import Optional
from sqlalchemy.orm import Session
from examcore.core.database import get_db
from examcore.core.errors import ResourceNotFoundError
from examcore.models.schemas import CamelModel
from examcore.services.tenants import resolve_tenant

router = APIRouter()

class ResolvedTenant(CamelModel):
    tenant_slug: str
    educator_id: str
    coaching_name: Optional[str] = None
    tagline: Optional[str] = None

@router.get("/resolve", response_model=ResolvedTenant)
def resolve(request: Request, host: Optional[str] = None, tenant: Optional[str] = None, db: Session = Depends(get_db)):
    hostname = host or request.headers.get("x-forwarded-host") or request.url.hostname or ""
    t = resolve_tenant(db, hostname, tenant)
    if t is None: raise ResourceNotFoundError("Tenant", hostname, error_code="tenant_not_found")
    return ResolvedTenant(tenant_slug=t.slug, educator_id=t.educator_id, coaching_name=t.coaching_name, tagline=t.tagline)
