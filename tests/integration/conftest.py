"""Pytest fixtures for integration tests against a running broker.

Note: Integration tests require:
1. A running broker (python -m managed_federation) on a host with a managed identity
2. An app registration trusting that identity through a federated credential

Environment Variables:
- BROKER_URL: Broker endpoint (default: http://localhost:8000)
- BROKER_FUNCTION_KEY: Function key from local.yaml
- FEDERATED_CLIENT_ID: Client ID of the app with the federated credential
- FEDERATED_TENANT_ID: Tenant where the app is granted access
- FEDERATION_SCOPE: Managed identity token scope (default: api://AzureADTokenExchange/.default)
- TARGET_SCOPE: Scope of the app token (default: https://graph.microsoft.com/.default)
"""

import os
from typing import Generator

import httpx
import pytest


BROKER_URL = os.getenv("BROKER_URL", "http://localhost:8000")
BROKER_FUNCTION_KEY = os.getenv("BROKER_FUNCTION_KEY", "test-function-key")

FEDERATED_CLIENT_ID = os.getenv("FEDERATED_CLIENT_ID")
FEDERATED_TENANT_ID = os.getenv("FEDERATED_TENANT_ID")
FEDERATION_SCOPE = os.getenv("FEDERATION_SCOPE", "api://AzureADTokenExchange/.default")
TARGET_SCOPE = os.getenv("TARGET_SCOPE", "https://graph.microsoft.com/.default")


@pytest.fixture(scope="session")
def broker_url() -> str:
    """Get the broker URL."""
    return BROKER_URL


@pytest.fixture(scope="session")
def http_client() -> Generator[httpx.Client, None, None]:
    """Create an HTTP client that sends the function key."""
    client = httpx.Client(
        base_url=BROKER_URL,
        headers={"x-functions-key": BROKER_FUNCTION_KEY},
        timeout=60.0,
    )
    yield client
    client.close()


@pytest.fixture
def app_token_params() -> dict[str, str]:
    """Query parameters for an app token request."""
    if not FEDERATED_CLIENT_ID or not FEDERATED_TENANT_ID:
        pytest.skip("FEDERATED_CLIENT_ID and FEDERATED_TENANT_ID are required")
    return {
        "clientId": FEDERATED_CLIENT_ID,
        "tenantId": FEDERATED_TENANT_ID,
        "fedScope": FEDERATION_SCOPE,
        "scope": TARGET_SCOPE,
    }


@pytest.fixture
def federation_scope() -> str:
    return FEDERATION_SCOPE


@pytest.fixture(autouse=True)
def check_server_running(broker_url: str) -> None:
    """Verify the broker is running before each test."""
    try:
        response = httpx.get(f"{broker_url}/health", timeout=5.0)
        if response.status_code != 200:
            pytest.skip(f"Broker not healthy: {response.status_code}")
    except httpx.ConnectError:
        pytest.skip(f"Broker not running at {broker_url}")
    except httpx.HTTPError as e:
        pytest.skip(f"Cannot connect to broker: {e}")
