from __future__ import annotations

from fastapi import APIRouter, Depends

from clubauth.api.deps import require_super_admin, require_tenant_admin
from clubauth.api.schemas import (
    CoachActionRequest,
    CoachCreateRequest,
    CoachUpdateRequest,
    ColdCallRequest,
    TenantCreateRequest,
    TenantUpdateRequest,
)
from clubauth.service.auth import AuthContext
from clubauth.service.coaches import coach_view
from clubauth.service.errors import ValidationError
from clubauth.service.runtime import get_runtime

router = APIRouter()


# -- coaches (tenant admins) ------------------------------------------------


@router.get("/{tenant_id}/admin/coaches")
async def list_coaches(tenant_id: str, ctx: AuthContext = Depends(require_tenant_admin)):
    runtime = get_runtime()
    coaches = runtime.coaches.list_coaches(tenant_id)
    return {"success": True, "coaches": [coach_view(c) for c in coaches]}


@router.post("/{tenant_id}/admin/coaches", status_code=201)
async def create_coach(
    tenant_id: str, body: CoachCreateRequest, ctx: AuthContext = Depends(require_tenant_admin)
):
    runtime = get_runtime()
    created = await runtime.coaches.create_coach(
        tenant_id,
        email=body.email,
        username=body.username,
        pin=body.pin,
        send_email=body.send_email,
    )
    coach = {
        "id": created.coach.id,
        "email": created.coach.email,
        "username": created.coach.username,
        "tenantId": created.coach.tenant_id,
        "role": created.coach.role.value,
    }
    if created.pin is not None:
        coach["pin"] = created.pin
    message = "Coach created successfully"
    if created.email_sent:
        message += ". Welcome email sent."
    return {"success": True, "coach": coach, "message": message}


@router.get("/{tenant_id}/admin/coaches/{coach_id}")
async def get_coach(tenant_id: str, coach_id: str, ctx: AuthContext = Depends(require_tenant_admin)):
    runtime = get_runtime()
    return {"success": True, "coach": coach_view(runtime.coaches.get_coach(tenant_id, coach_id))}


@router.put("/{tenant_id}/admin/coaches/{coach_id}")
async def update_coach(
    tenant_id: str,
    coach_id: str,
    body: CoachUpdateRequest,
    ctx: AuthContext = Depends(require_tenant_admin),
):
    runtime = get_runtime()
    coach = await runtime.coaches.update_coach(
        tenant_id, coach_id, email=body.email, username=body.username, pin=body.pin
    )
    return {
        "success": True,
        "coach": {
            "id": coach.id,
            "email": coach.email,
            "username": coach.username,
            "role": coach.role.value,
        },
    }


@router.delete("/{tenant_id}/admin/coaches/{coach_id}")
async def delete_coach(tenant_id: str, coach_id: str, ctx: AuthContext = Depends(require_tenant_admin)):
    runtime = get_runtime()
    runtime.coaches.delete_coach(tenant_id, coach_id)
    return {"success": True, "message": "Coach deleted successfully"}


@router.post("/{tenant_id}/admin/coaches/{coach_id}")
async def coach_action(
    tenant_id: str,
    coach_id: str,
    body: CoachActionRequest,
    ctx: AuthContext = Depends(require_tenant_admin),
):
    if body.action != "reset-pin":
        raise ValidationError("Invalid action")
    runtime = get_runtime()
    await runtime.coaches.send_pin_reset(tenant_id, coach_id)
    return {"success": True, "message": "PIN reset email sent successfully"}


# -- tenants and outreach (super admins) ------------------------------------


@router.get("/admin/tenants")
async def list_tenants(ctx: AuthContext = Depends(require_super_admin)):
    runtime = get_runtime()
    return {"tenants": [summary.to_dict() for summary in runtime.platform.list_tenants()]}


@router.post("/admin/tenants", status_code=201)
async def create_tenant(body: TenantCreateRequest, ctx: AuthContext = Depends(require_super_admin)):
    runtime = get_runtime()
    config, admin = await runtime.platform.create_tenant(
        name=body.name,
        subdomain=body.subdomain,
        logo=body.logo,
        max_courts=body.max_courts,
        admin_email=body.admin_email,
        admin_password=body.admin_password,
        plan_id=body.plan_id,
    )
    return {
        "success": True,
        "tenant": config.to_dict(),
        "admin": {"id": admin.id, "email": admin.email, "role": admin.role.value},
    }


@router.get("/admin/tenants/{tenant_id}")
async def get_tenant(tenant_id: str, ctx: AuthContext = Depends(require_super_admin)):
    runtime = get_runtime()
    return {"tenant": runtime.platform.get_tenant(tenant_id).to_dict()}


@router.put("/admin/tenants/{tenant_id}")
async def update_tenant(
    tenant_id: str, body: TenantUpdateRequest, ctx: AuthContext = Depends(require_super_admin)
):
    runtime = get_runtime()
    config = runtime.platform.update_tenant(tenant_id, body.changes())
    return {"success": True, "tenant": config.to_dict()}


@router.post("/admin/cold-call-emails")
async def send_cold_call_email(body: ColdCallRequest, ctx: AuthContext = Depends(require_super_admin)):
    runtime = get_runtime()
    record = await runtime.platform.send_cold_call(
        email=body.email, club_name=body.club_name, president_name=body.president_name
    )
    return {"success": True, "email": record.to_dict()}


@router.get("/admin/cold-call-emails")
async def cold_call_history(ctx: AuthContext = Depends(require_super_admin)):
    runtime = get_runtime()
    return {"history": [record.to_dict() for record in runtime.platform.cold_call_history()]}
