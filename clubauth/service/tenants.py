from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from clubauth.logging import get_logger
from clubauth.storage.models import DEFAULT_MAX_COURTS, DEFAULT_TENANT_LOGO, TenantConfig
from clubauth.storage.tenant_store import TenantStore

logger = get_logger(__name__)

RESERVED_SUBDOMAINS = frozenset(
    {"www", "demo", "api", "admin", "mail", "ftp", "localhost", "marketing"}
)
_SUBDOMAIN_RE = re.compile(r"^[a-z0-9-]+$")

# Letters that have no combining-mark decomposition in NFKD.
_TRANSLITERATIONS = str.maketrans({"æ": "ae", "ø": "o", "å": "a", "ß": "ss", "đ": "d", "ł": "l"})


def name_to_subdomain(name: str) -> str:
    """Slug a club name into a subdomain candidate."""

    lowered = (name or "").lower().translate(_TRANSLITERATIONS)
    stripped = "".join(
        ch for ch in unicodedata.normalize("NFKD", lowered) if not unicodedata.combining(ch)
    )
    slug = re.sub(r"[^a-z0-9-]+", "-", stripped)
    slug = re.sub(r"-{2,}", "-", slug)
    return slug.strip("-")


@dataclass
class SubdomainCheck:
    valid: bool
    error: Optional[str] = None


def validate_subdomain(subdomain: str) -> SubdomainCheck:
    if not subdomain:
        return SubdomainCheck(False, "Subdomain cannot be empty")
    if len(subdomain) < 3:
        return SubdomainCheck(False, "Subdomain must be at least 3 characters")
    if len(subdomain) > 63:
        return SubdomainCheck(False, "Subdomain must be at most 63 characters")
    if not _SUBDOMAIN_RE.match(subdomain):
        return SubdomainCheck(
            False, "Subdomain may only contain lowercase letters, numbers and hyphens"
        )
    if subdomain.startswith("-") or subdomain.endswith("-"):
        return SubdomainCheck(False, "Subdomain cannot start or end with a hyphen")
    if subdomain in RESERVED_SUBDOMAINS:
        return SubdomainCheck(False, "This subdomain is reserved")
    return SubdomainCheck(True)


class TenantRegistry:
    """Subdomain rules plus config create/get/list over a :class:`TenantStore`."""

    def __init__(self, store: TenantStore) -> None:
        self.store = store

    def is_available(self, subdomain: str) -> bool:
        if subdomain in set(self.store.stems()):
            return False
        return all(config.subdomain != subdomain for config in self.store.list())

    def get(self, tenant_id: str) -> Optional[TenantConfig]:
        return self.store.get(tenant_id)

    def list(self) -> List[TenantConfig]:
        return self.store.list()

    def create(
        self,
        *,
        name: str,
        subdomain: str,
        logo: Optional[str] = None,
        max_courts: Optional[int] = None,
        features: Optional[Dict[str, Any]] = None,
        plan_id: Optional[str] = None,
    ) -> TenantConfig:
        config = TenantConfig(
            id=subdomain,
            name=name,
            subdomain=subdomain,
            logo=logo or DEFAULT_TENANT_LOGO,
            max_courts=max_courts or DEFAULT_MAX_COURTS,
            features=dict(features or {}),
            plan_id=plan_id,
        )
        self.store.put(config)
        logger.info("tenant_created", tenant_id=config.id, plan_id=plan_id)
        return config

    def update(self, config: TenantConfig, changes: Dict[str, Any]) -> TenantConfig:
        for key, value in changes.items():
            setattr(config, key, value)
        self.store.put(config)
        logger.info("tenant_updated", tenant_id=config.id, fields=sorted(changes))
        return config

    def plan_for(self, tenant_id: str) -> Optional[str]:
        config = self.store.get(tenant_id)
        return config.plan_id if config else None
