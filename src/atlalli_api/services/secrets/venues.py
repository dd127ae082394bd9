"""Per-venue signing secret resolution."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping, MutableMapping, Protocol, Sequence

import httpx
from loguru import logger

from atlalli_api.core.settings import settings


class VaultRequestError(RuntimeError):
    """Raised when Vault returns an unexpected response."""


class VaultClientProtocol(Protocol):
    """Protocol describing the subset of Vault client interactions we require."""

    async def read_secret(self, path: str) -> Mapping[str, Any] | None:
        """Retrieve a secret from Vault, returning ``None`` when it is missing."""


class HttpVaultClient(VaultClientProtocol):
    """Vault KV v2 reader backed by ``httpx``."""

    def __init__(
        self,
        *,
        base_url: str,
        token: str,
        namespace: str | None = None,
        timeout_seconds: float = 5.0,
    ) -> None:
        if not base_url:
            raise ValueError("Vault base URL must be configured")
        if not token:
            raise ValueError("Vault token must be configured")
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._namespace = namespace
        self._timeout_seconds = timeout_seconds

    async def read_secret(self, path: str) -> Mapping[str, Any] | None:  # pragma: no cover - thin HTTP wrapper
        url = f"{self._base_url}/v1/{path.lstrip('/')}"
        headers = {"X-Vault-Token": self._token}
        if self._namespace:
            headers["X-Vault-Namespace"] = self._namespace
        async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
            response = await client.get(url, headers=headers)
        if response.status_code == 200:
            return response.json()
        if response.status_code in (204, 404):
            return None
        raise VaultRequestError(
            f"Vault responded with unexpected status {response.status_code} for path '{path}'"
        )


class VenueSecretSource(Protocol):
    """Anything that can map a venue id to its signing secret."""

    async def fetch(self, venue_id: str) -> str | None:
        """Return the venue secret or ``None`` when the venue is unknown."""


class MappingVenueSecretSource(VenueSecretSource):
    """Serve secrets from an in-memory mapping."""

    def __init__(self, secrets: Mapping[str, str]) -> None:
        self._secrets = dict(secrets)

    async def fetch(self, venue_id: str) -> str | None:
        return self._secrets.get(venue_id) or None


class SettingsVenueSecretSource(VenueSecretSource):
    """Secrets configured through ``VENUE_SECRETS`` (a JSON object)."""

    async def fetch(self, venue_id: str) -> str | None:
        return settings.venue_secrets.get(venue_id) or None


class JsonFileVenueSecretSource(VenueSecretSource):
    """Secrets kept in a JSON file mapping venue id to secret."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._secrets: dict[str, str] | None = None

    def _load(self) -> dict[str, str]:
        if self._secrets is None:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(raw, dict):
                raise ValueError(f"Venue secrets file '{self._path}' must contain a JSON object")
            self._secrets = {str(key): str(value) for key, value in raw.items() if value}
            logger.info("Loaded venue secrets file", path=str(self._path), venues=len(self._secrets))
        return self._secrets

    async def fetch(self, venue_id: str) -> str | None:
        return self._load().get(venue_id)


class VaultVenueSecretSource(VenueSecretSource):
    """Read ``{mount_path}/{venue_id}`` from Vault, expecting a ``secret`` field."""

    def __init__(self, client: VaultClientProtocol, *, mount_path: str) -> None:
        self._client = client
        self._mount_path = mount_path.rstrip("/")

    async def fetch(self, venue_id: str) -> str | None:
        path = f"{self._mount_path}/{venue_id}"
        try:
            payload = await self._client.read_secret(path)
        except (VaultRequestError, httpx.HTTPError, ValueError):
            logger.exception("vault.venue_secret.read_failed", venue_id=venue_id)
            return None
        if not payload:
            return None

        data = payload.get("data") or {}
        if "data" in data:
            data = data["data"] or {}
        secret = data.get("secret")
        if not secret:
            logger.warning("vault.venue_secret.missing_field", venue_id=venue_id)
            return None
        return str(secret)


class CompositeVenueSecretSource(VenueSecretSource):
    """Attempts multiple secret sources in sequence until one knows the venue."""

    def __init__(self, sources: Sequence[VenueSecretSource]) -> None:
        self._sources = list(sources)

    async def fetch(self, venue_id: str) -> str | None:
        for source in self._sources:
            secret = await source.fetch(venue_id)
            if secret is not None:
                return secret
        return None


@dataclass(slots=True)
class _CacheEntry:
    secret: bytes
    expires_at: datetime

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at


class VenueKeyStore:
    """Caches venue signing secrets resolved from a :class:`VenueSecretSource`.

    Secrets are returned as raw key bytes. Missing venues are never cached so a
    newly provisioned venue becomes usable without a restart.
    """

    def __init__(
        self,
        source: VenueSecretSource,
        *,
        cache_ttl: timedelta | None = None,
    ) -> None:
        self._source = source
        self._cache_ttl = cache_ttl if cache_ttl is not None else timedelta(
            seconds=settings.venue_secret_cache_ttl_seconds
        )
        self._cache: MutableMapping[str, _CacheEntry] = {}
        self._locks: MutableMapping[str, asyncio.Lock] = {}
        self._lock_users: MutableMapping[str, int] = {}

    @classmethod
    def from_mapping(cls, secrets: Mapping[str, str], **kwargs: Any) -> "VenueKeyStore":
        return cls(MappingVenueSecretSource(secrets), **kwargs)

    async def get(self, venue_id: str) -> bytes | None:
        now = datetime.now(timezone.utc)
        cached = self._cache.get(venue_id)
        if cached and cached.is_valid(now):
            return cached.secret

        lock = self._locks.setdefault(venue_id, asyncio.Lock())
        self._lock_users[venue_id] = self._lock_users.get(venue_id, 0) + 1
        try:
            async with lock:
                cached = self._cache.get(venue_id)
                if cached and cached.is_valid(datetime.now(timezone.utc)):
                    return cached.secret

                secret = await self._source.fetch(venue_id)
                if not secret:
                    self._cache.pop(venue_id, None)
                    return None

                key = secret.encode("utf-8")
                self._cache[venue_id] = _CacheEntry(
                    secret=key,
                    expires_at=datetime.now(timezone.utc) + self._cache_ttl,
                )
                return key
        finally:
            # locks only live while someone is fetching or waiting
            remaining = self._lock_users[venue_id] - 1
            if remaining:
                self._lock_users[venue_id] = remaining
            else:
                del self._lock_users[venue_id]
                del self._locks[venue_id]

    def invalidate(self, venue_id: str | None = None) -> None:
        if venue_id is None:
            self._cache.clear()
            return
        self._cache.pop(venue_id, None)


def build_default_venue_secret_source() -> VenueSecretSource:
    """Vault first (when configured), then the secrets file, then settings."""

    sources: list[VenueSecretSource] = []
    if settings.vault_addr and settings.vault_token and settings.vault_venue_secret_mount_path:
        client = HttpVaultClient(
            base_url=settings.vault_addr,
            token=settings.vault_token,
            namespace=settings.vault_namespace,
            timeout_seconds=settings.vault_timeout_seconds,
        )
        sources.append(
            VaultVenueSecretSource(client, mount_path=settings.vault_venue_secret_mount_path)
        )
    if settings.venue_secrets_path:
        sources.append(JsonFileVenueSecretSource(Path(settings.venue_secrets_path)))
    sources.append(SettingsVenueSecretSource())
    return CompositeVenueSecretSource(sources)


@lru_cache(maxsize=1)
def build_default_venue_key_store() -> VenueKeyStore:
    return VenueKeyStore(build_default_venue_secret_source())


__all__ = [
    "CompositeVenueSecretSource",
    "HttpVaultClient",
    "JsonFileVenueSecretSource",
    "MappingVenueSecretSource",
    "SettingsVenueSecretSource",
    "VaultClientProtocol",
    "VaultRequestError",
    "VaultVenueSecretSource",
    "VenueKeyStore",
    "VenueSecretSource",
    "build_default_venue_key_store",
    "build_default_venue_secret_source",
]
