"""
Tenant resolution: inbound hostname -> tenant slug -> owning educator.

Tenant sites live on ``<slug>.<TENANT_BASE_DOMAIN>``; local development passes
the slug as ``?tenant=`` on ``localhost``. Anything else is not a tenant domain.
"""
import re
from typing import Optional
from sqlalchemy.orm import Session
from sqlalchemy import select
from examcore.core.config import settings
from examcore.models.orm import Tenant

SLUG_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
RESERVED_SLUGS = {"www"}


def is_valid_slug(slug: str) -> bool:
    return bool(SLUG_RE.match(slug or "")) and slug not in RESERVED_SLUGS


def slug_from_hostname(hostname: str, tenant_param: Optional[str] = None, base_domain: Optional[str] = None) -> Optional[str]:
    host = (hostname or "").strip().lower().split(":", 1)[0]
    if host == "localhost":
        slug = (tenant_param or "").strip().lower()
        return slug if is_valid_slug(slug) else None
    base = (base_domain or settings.TENANT_BASE_DOMAIN).lower().split(".")
    parts = host.split(".")
    # exactly one label in front of the base domain
    if len(parts) != len(base) + 1 or parts[1:] != base:
        return None
    return parts[0] if is_valid_slug(parts[0]) else None


def get_tenant(db: Session, slug: Optional[str]) -> Optional[Tenant]:
    if not slug:
        return None
    return db.scalar(select(Tenant).where(Tenant.slug == slug.lower()))


def resolve_tenant(db: Session, hostname: str, tenant_param: Optional[str] = None) -> Optional[Tenant]:
    return get_tenant(db, slug_from_hostname(hostname, tenant_param))
