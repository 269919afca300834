from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import List, Optional, Protocol

from redis import Redis
from redis.exceptions import RedisError

from clubauth.logging import get_logger
from clubauth.storage.errors import StorageUnavailable
from clubauth.storage.models import TenantConfig


class TenantStore(Protocol):
    """Keyed object store for tenant configuration documents."""

    def get(self, tenant_id: str) -> Optional[TenantConfig]:
        ...

    def put(self, config: TenantConfig) -> TenantConfig:
        ...

    def list(self) -> List[TenantConfig]:
        ...

    def stems(self) -> List[str]:
        ...

    def ping(self) -> bool:
        ...


class FileTenantStore:
    """One ``<id>.json`` document per tenant inside a config directory."""

    def __init__(self, root: str) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self._lock = threading.Lock()

    def _path(self, tenant_id: str) -> Path:
        return self.root / f"{tenant_id}.json"

    def get(self, tenant_id: str) -> Optional[TenantConfig]:
        try:
            data = json.loads(self._path(tenant_id).read_text())
        except FileNotFoundError:
            return None
        except json.JSONDecodeError:
            self.logger.warning("tenant_config_unreadable", tenant_id=tenant_id)
            return None
        return TenantConfig.from_dict(data)

    def put(self, config: TenantConfig) -> TenantConfig:
        with self._lock:
            self._path(config.id).write_text(json.dumps(config.to_dict(), indent=2) + "\n")
        return config

    def list(self) -> List[TenantConfig]:
        configs: List[TenantConfig] = []
        for path in sorted(self.root.glob("*.json")):
            try:
                data = json.loads(path.read_text())
            except (OSError, json.JSONDecodeError):
                self.logger.warning("tenant_config_unreadable", path=str(path))
                continue
            data.setdefault("id", path.stem)
            configs.append(TenantConfig.from_dict(data))
        return configs

    def stems(self) -> List[str]:
        return [path.stem for path in self.root.glob("*.json")]

    def ping(self) -> bool:
        return self.root.is_dir()


class RedisTenantStore:
    """Tenant documents kept as JSON values in a single Redis hash."""

    def __init__(self, redis_url: str, *, key: str = "clubauth:tenants", socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.key = key
        self.logger = get_logger(__name__)
        self.client = Redis.from_url(
            redis_url, decode_responses=True, socket_timeout=socket_timeout
        )

    def get(self, tenant_id: str) -> Optional[TenantConfig]:
        try:
            raw = self.client.hget(self.key, tenant_id)
        except RedisError as exc:
            raise StorageUnavailable(f"tenant store unavailable: {exc}") from exc
        if raw is None:
            return None
        return TenantConfig.from_dict(json.loads(raw))

    def put(self, config: TenantConfig) -> TenantConfig:
        try:
            self.client.hset(self.key, config.id, json.dumps(config.to_dict()))
        except RedisError as exc:
            raise StorageUnavailable(f"tenant store unavailable: {exc}") from exc
        return config

    def list(self) -> List[TenantConfig]:
        try:
            entries = self.client.hgetall(self.key)
        except RedisError as exc:
            raise StorageUnavailable(f"tenant store unavailable: {exc}") from exc
        configs = []
        for tenant_id, raw in sorted(entries.items()):
            data = json.loads(raw)
            data.setdefault("id", tenant_id)
            configs.append(TenantConfig.from_dict(data))
        return configs

    def stems(self) -> List[str]:
        try:
            return list(self.client.hkeys(self.key))
        except RedisError as exc:
            raise StorageUnavailable(f"tenant store unavailable: {exc}") from exc

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except RedisError as exc:
            self.logger.error("tenant_store_ping_failed", error=str(exc))
            return False
