"""Authentication fallback chain.

Credential strategies are tried in configured order for every target:
- ambient: the managed identity the engine runs as (system or user-assigned)
- cli: the Azure CLI login on an operator workstation
- service_principal: an explicitly configured client id and secret

A strategy authorizes a target when it yields an ARM token and the cloud
API's authorize read succeeds. Each worker receives its own resolved
credential; there is no process-wide "current identity" to switch.

SECURITY INVARIANTS:
1. The fallback client secret is never logged or rendered in repr
2. Client ids are masked in logs
3. Credentials are built once per strategy and shared read-only
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass

from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError, ClientAuthenticationError
from azure.identity import AzureCliCredential, ClientSecretCredential, ManagedIdentityCredential

from .cloud_api import ARM_SCOPE, CloudResourceApi
from .config import AuthStrategyName, Config, ServicePrincipalSettings
from .context import run_blocking
from .errors import ExportOperatorError, NoAuthorizedCredential
from .models import Target

logger = logging.getLogger(__name__)


def mask_client_id(client_id: str | None) -> str | None:
    if not client_id:
        return client_id
    return client_id[:8] + "..." if len(client_id) > 8 else client_id


class CredentialStrategy(ABC):
    """One way of obtaining a TokenCredential."""

    name: AuthStrategyName

    @abstractmethod
    def build(self) -> TokenCredential:
        """Construct the credential. Raises ExportOperatorError if misconfigured."""


class AmbientIdentity(CredentialStrategy):
    name = AuthStrategyName.AMBIENT

    def __init__(self, client_id: str | None = None) -> None:
        self._client_id = client_id

    def build(self) -> TokenCredential:
        if self._client_id:
            logger.info(
                "Using user-assigned managed identity",
                extra={"client_id": mask_client_id(self._client_id)},
            )
            return ManagedIdentityCredential(client_id=self._client_id)

        logger.info("Using system-assigned managed identity")
        return ManagedIdentityCredential()


class AzureCliIdentity(CredentialStrategy):
    name = AuthStrategyName.AZURE_CLI

    def build(self) -> TokenCredential:
        return AzureCliCredential()


class ExplicitServicePrincipal(CredentialStrategy):
    """Fallback service principal from explicit configuration."""

    name = AuthStrategyName.SERVICE_PRINCIPAL

    def __init__(self, settings: ServicePrincipalSettings) -> None:
        self._settings = settings

    def build(self) -> TokenCredential:
        if not self._settings.is_complete:
            raise ExportOperatorError("Fallback service principal is not configured")
        logger.info(
            "Using explicit service principal",
            extra={"client_id": mask_client_id(self._settings.client_id)},
        )
        return ClientSecretCredential(
            tenant_id=self._settings.tenant_id,
            client_id=self._settings.client_id,
            client_secret=self._settings.client_secret,
        )


def strategies_from_config(config: Config) -> list[CredentialStrategy]:
    """Instantiate the configured strategies in order."""
    strategies: list[CredentialStrategy] = []
    for name in config.auth_strategies:
        if name == AuthStrategyName.AMBIENT:
            strategies.append(AmbientIdentity(config.managed_identity_client_id))
        elif name == AuthStrategyName.AZURE_CLI:
            strategies.append(AzureCliIdentity())
        elif name == AuthStrategyName.SERVICE_PRINCIPAL:
            strategies.append(ExplicitServicePrincipal(config.service_principal))
    return strategies


@dataclass(frozen=True)
class ResolvedCredential:
    """A credential proven to authorize one target."""

    strategy: AuthStrategyName
    credential: TokenCredential


def log_security_audit_event(
    event_type: str,
    target_id: str | None = None,
    strategy: str | None = None,
    result: str | None = None,
) -> None:
    """Log a security-relevant event with structured fields."""
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "target_id": target_id,
            "strategy": strategy,
            "result": result,
        },
    )


class AuthenticationChain:
    """Resolves an authorized credential per target."""

    def __init__(
        self,
        api: CloudResourceApi,
        strategies: list[CredentialStrategy],
        host_subscription_id: str,
    ) -> None:
        if not strategies:
            raise ValueError("At least one credential strategy is required")
        self._api = api
        self._strategies = strategies
        self._host_target = Target(id=host_subscription_id, display_name="host")
        self._cache: dict[AuthStrategyName, TokenCredential] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Config, api: CloudResourceApi) -> AuthenticationChain:
        return cls(api, strategies_from_config(config), config.host_subscription_id)

    def _credential_for(self, strategy: CredentialStrategy) -> TokenCredential:
        with self._lock:
            credential = self._cache.get(strategy.name)
            if credential is None:
                try:
                    credential = strategy.build()
                except ValueError as e:
                    # azure-identity validates tenant and client ids at construction
                    raise ExportOperatorError(
                        f"{strategy.name.value} credential could not be built: {e}"
                    ) from e
                self._cache[strategy.name] = credential
            return credential

    def _try(self, strategy: CredentialStrategy, target: Target) -> TokenCredential:
        credential = self._credential_for(strategy)
        credential.get_token(ARM_SCOPE)
        self._api.authorize(credential, target)
        return credential

    async def authenticate(self, target: Target) -> ResolvedCredential:
        """Return the first strategy whose credential authorizes the target.

        Raises:
            NoAuthorizedCredential: If every strategy fails.
        """
        attempts: dict[str, str] = {}
        for strategy in self._strategies:
            try:
                credential = await run_blocking(self._try, strategy, target)
            except (AzureError, ExportOperatorError) as e:
                reason = "authentication failed" if isinstance(e, ClientAuthenticationError) else str(e)
                attempts[strategy.name.value] = reason
                logger.warning(
                    "Credential strategy did not authorize target",
                    extra={
                        "target_id": target.id,
                        "strategy": strategy.name.value,
                        "error": reason,
                    },
                )
                continue

            log_security_audit_event(
                "credential_resolved",
                target_id=target.id,
                strategy=strategy.name.value,
                result="success",
            )
            return ResolvedCredential(strategy=strategy.name, credential=credential)

        log_security_audit_event(
            "credential_resolved",
            target_id=target.id,
            result="denied",
        )
        raise NoAuthorizedCredential(target.id, attempts)

    async def host_credential(self) -> ResolvedCredential:
        """Credential for the host subscription, used by run-level phases."""
        return await self.authenticate(self._host_target)
