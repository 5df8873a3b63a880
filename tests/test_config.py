"""Tests for configuration loading."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from billing_export.config import (
    DEFAULT_AUTH_STRATEGIES,
    AuthStrategyName,
    Config,
    ConfigurationError,
    ServicePrincipalSettings,
)

HOST_ID = "12345678-1234-1234-1234-123456abcdef"


class TestConfig:
    """Tests for Config class."""

    def test_valid_config(self) -> None:
        """Test creating a valid configuration."""
        config = Config(host_subscription_id=HOST_ID)

        assert config.location == "uksouth"
        assert config.auth_strategies == DEFAULT_AUTH_STRATEGIES
        assert config.dry_run is False
        assert config.proceed_on_propagation_timeout is True

    def test_missing_host_subscription(self) -> None:
        """Test that missing host subscription raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(host_subscription_id="")

        assert "HOST_SUBSCRIPTION_ID" in str(exc_info.value)

    def test_invalid_host_subscription(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(host_subscription_id="not-a-guid")

        assert "valid GUID" in str(exc_info.value)

    def test_errors_are_collected(self) -> None:
        """All validation errors are reported together."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(
                host_subscription_id=HOST_ID,
                storage_account_prefix="Invalid-Prefix",
                max_workers=0,
                operation_timeout_seconds=0,
            )

        message = str(exc_info.value)
        assert "STORAGE_ACCOUNT_PREFIX" in message
        assert "MAX_WORKERS" in message
        assert "OPERATION_TIMEOUT" in message

    def test_invalid_target_id(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(host_subscription_id=HOST_ID, target_ids=("nope",))

        assert "TARGET_IDS" in str(exc_info.value)

    def test_propagation_wait_bounds(self) -> None:
        with pytest.raises(ConfigurationError):
            Config(host_subscription_id=HOST_ID, propagation_max_wait_seconds=10_000)

    def test_incomplete_service_principal(self) -> None:
        """A partially configured fallback principal is rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(
                host_subscription_id=HOST_ID,
                service_principal=ServicePrincipalSettings(client_id="abc"),
            )

        assert "FALLBACK_CLIENT_SECRET" in str(exc_info.value)

    def test_missing_plan_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError):
            Config(host_subscription_id=HOST_ID, plan_file=tmp_path / "missing.yaml")

    def test_storage_account_name(self) -> None:
        """Storage account name is prefix plus the host id's last six chars."""
        config = Config(host_subscription_id=HOST_ID, storage_account_prefix="billingexport")

        assert config.storage_account_name == "billingexportabcdef"
        assert config.storage_account_id == (
            f"/subscriptions/{HOST_ID}/resourceGroups/billing-dataexport"
            "/providers/Microsoft.Storage/storageAccounts/billingexportabcdef"
        )

    def test_billing_scope_format(self) -> None:
        config = Config(
            host_subscription_id=HOST_ID,
            billing_scope="/providers/Microsoft.Billing/billingAccounts/1234:5678/billingProfiles/AB12",
        )

        assert config.billing_scope is not None

        with pytest.raises(ConfigurationError) as exc_info:
            Config(host_subscription_id=HOST_ID, billing_scope="/subscriptions/abc")

        assert "BILLING_SCOPE" in str(exc_info.value)

    def test_negative_registration_wait(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(host_subscription_id=HOST_ID, provider_registration_max_wait_seconds=-1)

        assert "PROVIDER_REGISTRATION_MAX_WAIT" in str(exc_info.value)

    def test_secret_not_in_repr(self) -> None:
        settings = ServicePrincipalSettings(tenant_id="t", client_id="c", client_secret="s3cret")

        assert "s3cret" not in repr(settings)
        assert settings.is_complete


class TestConfigFromEnv:
    """Tests for Config.from_env()."""

    def test_from_env_minimal(self) -> None:
        """Test loading config with minimal environment variables."""
        env = {"HOST_SUBSCRIPTION_ID": HOST_ID}

        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.host_subscription_id == HOST_ID
        assert config.target_ids == ()
        assert config.state_file == Path("known_subscriptions.jsonl")

    def test_from_env_full(self, tmp_path: Path) -> None:
        """Test loading config with all environment variables."""
        plan_file = tmp_path / "plan.yaml"
        plan_file.write_text("{}")
        target = "aaaaaaaa-0000-0000-0000-000000000001"
        env = {
            "HOST_SUBSCRIPTION_ID": HOST_ID,
            "AZURE_LOCATION": "westeurope",
            "EXPORT_RESOURCE_GROUP": "rg-exports",
            "STORAGE_ACCOUNT_PREFIX": "costs",
            "STATE_FILE": str(tmp_path / "state.jsonl"),
            "PLAN_FILE": str(plan_file),
            "TARGET_IDS": f"{target}, ",
            "CONSUMER_PRINCIPAL_ID": "11111111-2222-3333-4444-555555555555",
            "AUTH_STRATEGIES": "cli,service_principal",
            "FALLBACK_TENANT_ID": "tenant",
            "FALLBACK_CLIENT_ID": "client",
            "FALLBACK_CLIENT_SECRET": "secret",
            "MAX_WORKERS": "8",
            "PROPAGATION_MAX_WAIT": "30",
            "PROCEED_ON_PROPAGATION_TIMEOUT": "false",
            "RUN_TIMEOUT": "900",
            "DRY_RUN": "true",
            "SKIP_AUTOMATION": "1",
            "BILLING_SCOPE": "/providers/Microsoft.Billing/billingAccounts/1234",
            "DISCOVER_BILLING_SCOPE": "true",
            "FORCE_PER_SUB_EXPORTS": "true",
            "PROVIDER_REGISTRATION_MAX_WAIT": "15",
        }

        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.location == "westeurope"
        assert config.resource_group == "rg-exports"
        assert config.plan_file == plan_file
        assert config.target_ids == (target,)
        assert config.auth_strategies == (
            AuthStrategyName.AZURE_CLI,
            AuthStrategyName.SERVICE_PRINCIPAL,
        )
        assert config.service_principal.is_complete
        assert config.max_workers == 8
        assert config.propagation_max_wait_seconds == 30.0
        assert config.proceed_on_propagation_timeout is False
        assert config.run_timeout_seconds == 900.0
        assert config.dry_run is True
        assert config.skip_automation is True
        assert config.billing_scope == "/providers/Microsoft.Billing/billingAccounts/1234"
        assert config.discover_billing_scope is True
        assert config.force_per_subscription_exports is True
        assert config.provider_registration_max_wait_seconds == 15.0

    def test_from_env_invalid_integer(self) -> None:
        env = {"HOST_SUBSCRIPTION_ID": HOST_ID, "MAX_WORKERS": "many"}

        with patch.dict(os.environ, env, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "MAX_WORKERS must be an integer" in str(exc_info.value)

    def test_from_env_unknown_strategy(self) -> None:
        env = {"HOST_SUBSCRIPTION_ID": HOST_ID, "AUTH_STRATEGIES": "ambient,password"}

        with patch.dict(os.environ, env, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "AUTH_STRATEGIES" in str(exc_info.value)
