"""Credential resolution

Credentials live outside the gateway: a per-user store (the persistence layer)
and the process environment. For every secret a provider needs, the user's
active stored credential wins over the environment.
"""

import os
from typing import Dict, Mapping, Optional, Protocol, Tuple

import structlog

from polymux.providers.base import ResolvedCredential
from polymux.providers.catalog import ProviderDescriptor


logger = structlog.get_logger(__name__)


class CredentialStore(Protocol):
    """Per-user credential lookup supplied by the persistence layer"""

    async def get_active_credential(self, user_id: str, credential_kind: str) -> Optional[str]:
        ...


class InMemoryCredentialStore:
    """Dict-backed store used when no persistence layer is wired in"""

    def __init__(self, credentials: Optional[Mapping[Tuple[str, str], str]] = None):
        self._credentials: Dict[Tuple[str, str], str] = dict(credentials or {})

    def set_credential(self, user_id: str, credential_kind: str, value: str) -> None:
        self._credentials[(user_id, credential_kind)] = value

    async def get_active_credential(self, user_id: str, credential_kind: str) -> Optional[str]:
        return self._credentials.get((user_id, credential_kind))


class EnvironmentSecrets:
    """Process-environment fallback for provider secrets"""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self._environ = os.environ if environ is None else environ

    def get_env_secret(self, name: str) -> Optional[str]:
        return self._environ.get(name) or None


class CredentialResolver:
    """Resolve the secrets a provider needs for one user"""

    def __init__(self, store: CredentialStore, env: Optional[EnvironmentSecrets] = None):
        self.store = store
        self.env = env or EnvironmentSecrets()

    async def _lookup(
        self,
        user_id: Optional[str],
        credential_kind: Optional[str],
        env_name: Optional[str],
    ) -> Optional[str]:
        if user_id and credential_kind:
            value = await self.store.get_active_credential(user_id, credential_kind)
            if value:
                return value
        if env_name:
            return self.env.get_env_secret(env_name)
        return None

    async def resolve(
        self,
        user_id: Optional[str],
        descriptor: ProviderDescriptor,
    ) -> Optional[ResolvedCredential]:
        """Credential for this user and provider, or None when any required secret is missing"""
        if descriptor.manages_own_auth:
            return None

        api_key = await self._lookup(user_id, descriptor.credential_kind, descriptor.env_key)
        if not api_key:
            logger.info("No credential available", provider=descriptor.id, user_id=user_id)
            return None

        secret_key = None
        if descriptor.secret_credential_kind or descriptor.env_secret_key:
            secret_key = await self._lookup(
                user_id, descriptor.secret_credential_kind, descriptor.env_secret_key
            )
            if not secret_key:
                logger.info("No secret key available", provider=descriptor.id, user_id=user_id)
                return None

        return ResolvedCredential(api_key=api_key, secret_key=secret_key)
