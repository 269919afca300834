"""Operator-level administration: tenant provisioning and cold outreach.

Every operation here is reachable only by a super admin.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from clubauth.logging import get_logger
from clubauth.service.auth import AuthService, PrincipalStore, detail
from clubauth.service.email import EmailDeliveryError, EmailService
from clubauth.service.errors import NotFoundError, ServerError, ValidationError
from clubauth.service.tenants import TenantRegistry, name_to_subdomain, validate_subdomain
from clubauth.storage.models import ColdCallEmail, Principal, Role, TenantConfig

logger = get_logger(__name__)

COLD_CALL_HISTORY_LIMIT = 100


@dataclass
class TenantSummary:
    config: TenantConfig
    principal_count: int

    def to_dict(self) -> Dict[str, Any]:
        data = self.config.to_dict()
        data["userCount"] = self.principal_count
        return data


class PlatformService:
    def __init__(
        self,
        store: PrincipalStore,
        *,
        tenants: TenantRegistry,
        email: EmailService,
        auth: AuthService,
    ) -> None:
        self.store = store
        self.tenants = tenants
        self.email = email
        self.auth = auth

    def list_tenants(self) -> List[TenantSummary]:
        counts = self.store.count_principals_by_tenant()
        return [TenantSummary(c, counts.get(c.id, 0)) for c in self.tenants.list()]

    def get_tenant(self, tenant_id: str) -> TenantConfig:
        config = self.tenants.get(tenant_id)
        if config is None:
            raise NotFoundError("Tenant not found")
        return config

    async def create_tenant(
        self,
        *,
        name: str,
        admin_email: str,
        admin_password: str,
        subdomain: Optional[str] = None,
        logo: Optional[str] = None,
        max_courts: Optional[int] = None,
        plan_id: Optional[str] = None,
    ) -> tuple[TenantConfig, Principal]:
        """Provision a tenant together with its first, already verified, admin."""

        subdomain = (subdomain or name_to_subdomain(name)).strip().lower()
        check = validate_subdomain(subdomain)
        if not check.valid:
            raise ValidationError("Invalid subdomain", details=[detail("subdomain", check.error or "")])
        if not self.tenants.is_available(subdomain):
            raise ValidationError(
                "Subdomain already exists",
                details=[detail("subdomain", f'Subdomain "{subdomain}" is already taken')],
            )
        await self.auth.require_strong_password(admin_password, path="adminPassword")
        config = self.tenants.create(
            name=name, subdomain=subdomain, logo=logo, max_courts=max_courts, plan_id=plan_id
        )
        admin = await self.auth.create_admin(
            tenant_id=config.id, email=admin_email, password=admin_password
        )
        logger.info("tenant_provisioned", tenant_id=config.id, admin_id=admin.id)
        return config, admin

    def update_tenant(self, tenant_id: str, changes: Dict[str, Any]) -> TenantConfig:
        config = self.get_tenant(tenant_id)
        if not changes:
            return config
        return self.tenants.update(config, changes)

    async def ensure_super_admin(self, *, tenant_id: str, email: str, password: str) -> tuple[Principal, str]:
        """Create a super admin, or promote the existing admin with this email.

        Returns the principal and ``"created"``, ``"promoted"`` or ``"unchanged"``.
        """

        existing = self.store.find_admin_by_email(tenant_id, email)
        if existing is not None:
            if existing.role == Role.SUPER_ADMIN:
                return existing, "unchanged"
            self.store.set_role(existing.id, Role.SUPER_ADMIN)
            logger.info("super_admin_promoted", principal_id=existing.id)
            return self.store.get_principal(existing.id) or existing, "promoted"
        if self.tenants.get(tenant_id) is None:
            self.tenants.create(name=tenant_id, subdomain=tenant_id)
        principal = await self.auth.create_admin(
            tenant_id=tenant_id, email=email, password=password, role=Role.SUPER_ADMIN
        )
        logger.info("super_admin_created", principal_id=principal.id)
        return principal, "created"

    # -- cold outreach --------------------------------------------------

    async def send_cold_call(self, *, email: str, club_name: str, president_name: str) -> ColdCallEmail:
        """Send the outreach mail and record the attempt whether or not it went out."""

        try:
            await asyncio.to_thread(self.email.send_cold_outreach, email, club_name, president_name)
        except EmailDeliveryError as exc:
            self.store.record_cold_call_email(
                ColdCallEmail.new(email, club_name, president_name, "failed", error=str(exc))
            )
            logger.error("cold_call_email_failed", club_name=club_name, error=str(exc))
            raise ServerError("Failed to send email", extra={"message": str(exc)})
        record = self.store.record_cold_call_email(
            ColdCallEmail.new(email, club_name, president_name, "sent")
        )
        logger.info("cold_call_email_sent", club_name=club_name)
        return record

    def cold_call_history(self) -> List[ColdCallEmail]:
        return self.store.list_cold_call_emails(limit=COLD_CALL_HISTORY_LIMIT)
