"""
Pytest configuration and shared fixtures for the tx_helper test suite.
Mocked httpx clients and JSON-RPC payload helpers, endpoint and retry
settings tuned for fast tests, and local signing keys for the key pool.
"""
from typing import Any, Dict, List
from unittest.mock import AsyncMock

import httpx
import pytest

from tx_helper.key_pool import KeyPool
from tx_helper.signer import LocalKeySigner
from tx_helper.transport import RetryingTransport
from tx_helper.utils.models.settings_model import ConnectionLimits
from tx_helper.utils.models.settings_model import EndpointConfig
from tx_helper.utils.models.settings_model import EndpointRole
from tx_helper.utils.models.settings_model import KeyPoolSettings
from tx_helper.utils.models.settings_model import RetryPolicy
from tx_helper.utils.models.settings_model import TxHelperSettings


# Test configuration
TEST_RPC_URL = 'https://rpc.primary.test'
TEST_BACKUP_URL = 'https://rpc.backup.test'

TEST_ACCOUNT = 'alice.test'
TEST_RECEIVER = 'bob.test'
TEST_BLOCK_HASH = 'AbC1234567890blockhash'

# deterministic test keys, never used outside tests
TEST_SECRET_KEYS = [
    '0x' + '11' * 32,
    '0x' + '22' * 32,
    '0x' + '33' * 32,
]


class MockResponse:
    """Minimal stand-in for httpx.Response."""

    def __init__(self, status_code=200, json_data=None, text=''):
        self.status_code = status_code
        self._json_data = json_data
        self._json_error = None
        self.text = text

    def json(self):
        """Return json data to match httpx behavior."""
        if self._json_error is not None:
            raise self._json_error
        return self._json_data

    def set_json_data(self, data):
        self._json_data = data

    def set_json_error(self, error):
        self._json_error = error


def jsonrpc_result(result, request_id=1) -> Dict[str, Any]:
    return {'jsonrpc': '2.0', 'id': request_id, 'result': result}


def jsonrpc_error(name, cause=None, code=-32000, request_id=1) -> Dict[str, Any]:
    error = {'name': name, 'code': code, 'message': 'Server error'}
    if cause is not None:
        error['cause'] = {'name': cause, 'info': {}}
    return {'jsonrpc': '2.0', 'id': request_id, 'error': error}


def block_result(block_hash=TEST_BLOCK_HASH, height=1000) -> Dict[str, Any]:
    return {'header': {'hash': block_hash, 'height': height}, 'chunks': []}


def access_key_result(nonce, block_hash=TEST_BLOCK_HASH, height=1000) -> Dict[str, Any]:
    return {
        'nonce': nonce,
        'permission': 'FullAccess',
        'block_hash': block_hash,
        'block_height': height,
    }


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Retry policy with backoff small enough to keep tests fast."""
    return RetryPolicy(max_attempts=3, base_backoff=0.001, max_backoff=0.002)


@pytest.fixture
def rpc_config(fast_retry) -> TxHelperSettings:
    """Fixture providing a single-endpoint configuration for testing."""
    return TxHelperSettings(
        endpoints=[EndpointConfig(url=TEST_RPC_URL)],
        retry=fast_retry,
        request_time_out=10,
        connection_limits=ConnectionLimits(
            max_connections=100,
            max_keepalive_connections=50,
            keepalive_expiry=300,
        ),
    )


@pytest.fixture
def failover_config(fast_retry) -> TxHelperSettings:
    """Fixture providing a primary and a backup endpoint."""
    return TxHelperSettings(
        endpoints=[
            EndpointConfig(url=TEST_RPC_URL),
            EndpointConfig(url=TEST_BACKUP_URL, role=EndpointRole.BACKUP, api_key='backup-key'),
        ],
        retry=fast_retry,
    )


@pytest.fixture
def mock_async_client() -> AsyncMock:
    """Fixture providing a mock HTTP client answering every post with one response."""
    mock = AsyncMock(spec=httpx.AsyncClient)
    mock_response = MockResponse(json_data=[])
    mock.post = AsyncMock(return_value=mock_response)
    return mock


@pytest.fixture
def transport(rpc_config, mock_async_client) -> RetryingTransport:
    """Fixture providing a transport wired to the mock HTTP client."""
    return RetryingTransport(rpc_config, client=mock_async_client)


@pytest.fixture
def failover_transport(failover_config, mock_async_client) -> RetryingTransport:
    return RetryingTransport(failover_config, client=mock_async_client)


@pytest.fixture
def signers() -> List[LocalKeySigner]:
    return [LocalKeySigner(secret_key) for secret_key in TEST_SECRET_KEYS]


@pytest.fixture
def key_pool() -> KeyPool:
    return KeyPool(KeyPoolSettings())
