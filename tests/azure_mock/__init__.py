"""Azure API Mock for Integration Testing.

This module provides mock implementations of the Azure collaborators used
by the billing export engine so runs can be tested without connectivity.

Key Features:
- Scripted in-memory Cloud Resource API (exports, operations, capabilities)
- Variant fallback, authorization and LRO failure injection
- Subscription listing simulation for enumeration
- Token credential simulation for the authentication chain

Usage:
    from azure_mock import MockCloudApi, CreateBehavior

    api = MockCloudApi(destination_id=config.storage_account_id)
    api.script(SUB_A, ExportVariant.ACTUAL_COST, CreateBehavior.UNSUPPORTED)

    summary = await executor.run()
    assert api.count("create", SUB_A) == 2
"""

from .cloud import CreateBehavior, MockCall, MockCloudApi, MockExport
from .context import MockAzureContext, mock_azure_context
from .credential import MockStrategy, MockTokenCredential, create_mock_credential
from .subscriptions import MockSubscription, MockSubscriptionClient, make_subscription

__all__ = [
    "CreateBehavior",
    "MockAzureContext",
    "MockCall",
    "MockCloudApi",
    "MockExport",
    "MockStrategy",
    "MockSubscription",
    "MockSubscriptionClient",
    "MockTokenCredential",
    "create_mock_credential",
    "make_subscription",
    "mock_azure_context",
]
