"""Administrative surface for the abuse-prevention pipeline."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from shield.app.api.deps import get_services, require_admin
from shield.app.container import SecurityServices
from shield.app.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(
    prefix="/admin/security",
    tags=["admin-security"],
    dependencies=[Depends(require_admin)],
)


class AuthLimitReset(BaseModel):
    identity: str = Field(min_length=1)
    address: str = Field(min_length=1)


class IdentifierEntry(BaseModel):
    identifier: str = Field(min_length=1, max_length=512)


class IPBlock(BaseModel):
    ip: str = Field(min_length=1)
    reason: str = "Blocked by administrator"
    ttl_seconds: Optional[int] = Field(default=None, gt=0)


class TrustedOrigin(BaseModel):
    origin: str = Field(min_length=1)


@router.get("/stats")
async def get_stats(services: SecurityServices = Depends(get_services)) -> dict:
    """Tracked identifiers, blocked counts, attempts and reputation state."""
    return await services.orchestrator.get_stats()


# ============================================
# Auth attempt limiter
# ============================================


@router.post("/auth-limits/reset")
async def reset_auth_limit(
    data: AuthLimitReset,
    services: SecurityServices = Depends(get_services),
) -> dict:
    await services.auth_limiter.reset(data.identity, data.address)
    return {"success": True}


@router.post("/auth-limits/reset-all")
async def reset_all_auth_limits(services: SecurityServices = Depends(get_services)) -> dict:
    removed = await services.auth_limiter.reset_all()
    return {"success": True, "removed": removed}


# ============================================
# Rate limits
# ============================================


@router.post("/rate-limits/reset")
async def reset_rate_limit(
    data: IdentifierEntry,
    services: SecurityServices = Depends(get_services),
) -> dict:
    removed = await services.engine.reset(data.identifier)
    return {"success": True, "removed": removed}


@router.post("/rate-limits/reset-all")
async def reset_all_rate_limits(services: SecurityServices = Depends(get_services)) -> dict:
    removed = await services.engine.reset_all()
    return {"success": True, "removed": removed}


@router.post("/whitelist")
async def add_to_whitelist(
    data: IdentifierEntry,
    services: SecurityServices = Depends(get_services),
) -> dict:
    services.engine.add_to_whitelist(data.identifier)
    logger.info("Identifier added to rate limit whitelist")
    return {"success": True}


@router.delete("/whitelist/{identifier}")
async def remove_from_whitelist(
    identifier: str,
    services: SecurityServices = Depends(get_services),
) -> dict:
    if not services.engine.remove_from_whitelist(identifier):
        raise HTTPException(status_code=404, detail="Identifier not whitelisted")
    return {"success": True}


@router.post("/blacklist")
async def add_to_blacklist(
    data: IdentifierEntry,
    services: SecurityServices = Depends(get_services),
) -> dict:
    services.engine.add_to_blacklist(data.identifier)
    logger.info("Identifier added to rate limit blacklist")
    return {"success": True}


@router.delete("/blacklist/{identifier}")
async def remove_from_blacklist(
    identifier: str,
    services: SecurityServices = Depends(get_services),
) -> dict:
    if not services.engine.remove_from_blacklist(identifier):
        raise HTTPException(status_code=404, detail="Identifier not blacklisted")
    return {"success": True}


# ============================================
# IP reputation
# ============================================


@router.post("/ip-blocks")
async def block_ip(
    data: IPBlock,
    services: SecurityServices = Depends(get_services),
) -> dict:
    ttl_ms = data.ttl_seconds * 1000 if data.ttl_seconds else None
    services.reputation.block(data.ip, data.reason, ttl_ms=ttl_ms)
    return {"success": True}


@router.delete("/ip-blocks/{ip}")
async def unblock_ip(ip: str, services: SecurityServices = Depends(get_services)) -> dict:
    if not services.reputation.unblock(ip):
        raise HTTPException(status_code=404, detail="IP address is not blocked")
    return {"success": True}


# ============================================
# CSRF trusted origins
# ============================================


@router.post("/trusted-origins")
async def add_trusted_origin(
    data: TrustedOrigin,
    services: SecurityServices = Depends(get_services),
) -> dict:
    services.csrf.add_trusted_origin(data.origin)
    return {"success": True, "trusted_origins": services.csrf.get_config()["trusted_origins"]}


@router.delete("/trusted-origins")
async def remove_trusted_origin(
    origin: str,
    services: SecurityServices = Depends(get_services),
) -> dict:
    if not services.csrf.remove_trusted_origin(origin):
        raise HTTPException(status_code=404, detail="Origin is not trusted")
    return {"success": True, "trusted_origins": services.csrf.get_config()["trusted_origins"]}


# ============================================
# Emergency mode
# ============================================


@router.post("/emergency")
async def enable_emergency_mode(services: SecurityServices = Depends(get_services)) -> dict:
    services.orchestrator.enable_emergency_mode()
    return {"success": True, "emergency_mode": True}


@router.delete("/emergency")
async def disable_emergency_mode(services: SecurityServices = Depends(get_services)) -> dict:
    services.orchestrator.disable_emergency_mode()
    return {"success": True, "emergency_mode": False}
