"""
Unit tests for the retrying JSON-RPC transport.

These tests verify error classification, the retry budget, endpoint failover
and the "dispatched" bookkeeping that tells never-sent calls apart from calls
that may have reached a node.
"""
from unittest.mock import MagicMock

import httpx
import pytest

from tests.conftest import jsonrpc_error
from tests.conftest import jsonrpc_result
from tests.conftest import MockResponse
from tests.conftest import TEST_BACKUP_URL
from tests.conftest import TEST_RPC_URL
from tx_helper.transport import classify_exception
from tx_helper.transport import classify_rpc_error
from tx_helper.transport import CRITICAL
from tx_helper.transport import reached_server
from tx_helper.transport import RetryingTransport
from tx_helper.transport import TRANSIENT
from tx_helper.transport import wait_transient_backoff
from tx_helper.utils.exceptions import CriticalRPCError
from tx_helper.utils.exceptions import EndpointDownError
from tx_helper.utils.exceptions import RetriesExhausted
from tx_helper.utils.exceptions import TransientRPCError
from tx_helper.utils.models.settings_model import ClassificationRules
from tx_helper.utils.models.settings_model import EndpointConfig
from tx_helper.utils.models.settings_model import RetryPolicy
from tx_helper.utils.models.settings_model import TxHelperSettings


REQUEST = {'jsonrpc': '2.0', 'id': 1, 'method': 'block', 'params': {'finality': 'final'}}


def ok(result='ok'):
    return MockResponse(json_data=jsonrpc_result(result))


class TestClassification:
    """Test cases for deciding transient vs critical."""

    @pytest.mark.unit
    def test_cause_name_takes_precedence(self):
        rules = ClassificationRules()
        error = jsonrpc_error('HANDLER_ERROR', cause='INVALID_TRANSACTION')['error']

        assert classify_rpc_error(error, rules) == CRITICAL

    @pytest.mark.unit
    def test_transient_cause(self):
        rules = ClassificationRules()
        error = jsonrpc_error('HANDLER_ERROR', cause='TIMEOUT_ERROR')['error']

        assert classify_rpc_error(error, rules) == TRANSIENT

    @pytest.mark.unit
    def test_critical_code_without_known_name(self):
        rules = ClassificationRules()

        assert classify_rpc_error({'code': -32601, 'message': 'Method not found'}, rules) == CRITICAL

    @pytest.mark.unit
    def test_unknown_error_follows_rule(self):
        error = {'name': 'SOMETHING_NEW', 'code': -32000}

        assert classify_rpc_error(error, ClassificationRules()) == TRANSIENT
        assert classify_rpc_error(error, ClassificationRules(unknown_rpc_error_is_critical=True)) == CRITICAL

    @pytest.mark.unit
    def test_classify_network_exceptions(self):
        assert isinstance(classify_exception(httpx.ConnectError('refused'), REQUEST), EndpointDownError)
        assert isinstance(classify_exception(httpx.ReadTimeout('slow'), REQUEST), TransientRPCError)
        assert isinstance(classify_exception(httpx.RemoteProtocolError('reset'), REQUEST), TransientRPCError)
        assert isinstance(classify_exception(httpx.UnsupportedProtocol('ftp'), REQUEST), CriticalRPCError)

    @pytest.mark.unit
    def test_reached_server(self):
        assert reached_server(classify_exception(httpx.ReadTimeout('slow'), REQUEST)) is True
        assert reached_server(classify_exception(httpx.ConnectTimeout('slow'), REQUEST)) is False
        assert reached_server(classify_exception(httpx.ConnectError('refused'), REQUEST)) is False

    @pytest.mark.unit
    def test_backoff_skips_endpoint_down(self):
        wait = wait_transient_backoff(1.0, 4.0)
        retry_state = MagicMock()

        retry_state.outcome.exception.return_value = EndpointDownError(REQUEST, None, None, 'down')
        assert wait(retry_state) == 0

        retry_state.outcome.exception.return_value = TransientRPCError(REQUEST, None, None, 'slow')
        for expected_cap in (1.0, 2.0, 4.0, 4.0):
            assert 0 <= wait(retry_state) <= expected_cap
        assert wait.transient_failures == 4


class TestRetryingTransportCall:
    """Test cases for single calls against one endpoint."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success(self, transport, mock_async_client):
        mock_async_client.post.return_value = ok({'header': {}})

        response = await transport.call(REQUEST)

        assert response == jsonrpc_result({'header': {}})
        mock_async_client.post.assert_awaited_once_with(url=TEST_RPC_URL, json=REQUEST, headers=None)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_twice_then_success(self, transport, mock_async_client):
        """Two transient failures then a success take exactly three attempts."""
        mock_async_client.post.side_effect = [
            MockResponse(status_code=503, text='Service Unavailable'),
            MockResponse(json_data=jsonrpc_error('HANDLER_ERROR', cause='NO_SYNCED_BLOCKS')),
            ok(),
        ]

        response = await transport.call(REQUEST)

        assert response['result'] == 'ok'
        assert mock_async_client.post.await_count == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_critical_is_not_retried(self, transport, mock_async_client):
        mock_async_client.post.return_value = MockResponse(
            json_data=jsonrpc_error('HANDLER_ERROR', cause='INVALID_TRANSACTION'),
        )

        with pytest.raises(CriticalRPCError) as exc_info:
            await transport.call(REQUEST)

        assert mock_async_client.post.await_count == 1
        assert exc_info.value.underlying_exception['cause']['name'] == 'INVALID_TRANSACTION'
        assert exc_info.value.dispatched is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_critical_after_unanswered_attempt_is_dispatched(self, transport, mock_async_client):
        """A rejection that follows a timed-out attempt cannot vouch for that attempt."""
        mock_async_client.post.side_effect = [
            httpx.ReadTimeout('read timed out'),
            MockResponse(json_data=jsonrpc_error('HANDLER_ERROR', cause='INVALID_TRANSACTION')),
        ]

        with pytest.raises(CriticalRPCError) as exc_info:
            await transport.call(REQUEST)

        assert mock_async_client.post.await_count == 2
        assert exc_info.value.dispatched is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_critical_after_refused_connection_is_not_dispatched(self, transport, mock_async_client):
        mock_async_client.post.side_effect = [
            httpx.ConnectError('connection refused'),
            MockResponse(json_data=jsonrpc_error('HANDLER_ERROR', cause='INVALID_TRANSACTION')),
        ]

        with pytest.raises(CriticalRPCError) as exc_info:
            await transport.call(REQUEST)

        assert exc_info.value.dispatched is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_client_error_status_is_critical(self, transport, mock_async_client):
        mock_async_client.post.return_value = MockResponse(status_code=400, text='Bad Request')

        with pytest.raises(CriticalRPCError):
            await transport.call(REQUEST)

        assert mock_async_client.post.await_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unparsable_body_is_critical(self, transport, mock_async_client):
        response = MockResponse(text='<html>')
        response.set_json_error(ValueError('Expecting value'))
        mock_async_client.post.return_value = response

        with pytest.raises(CriticalRPCError):
            await transport.call(REQUEST)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retries_exhausted_after_dispatch(self, transport, mock_async_client):
        mock_async_client.post.side_effect = httpx.ReadTimeout('read timed out')

        with pytest.raises(RetriesExhausted) as exc_info:
            await transport.call(REQUEST)

        assert exc_info.value.attempts == 3
        assert exc_info.value.dispatched is True
        assert isinstance(exc_info.value.last_error, TransientRPCError)
        assert mock_async_client.post.await_count == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retries_exhausted_never_dispatched(self, transport, mock_async_client):
        mock_async_client.post.side_effect = httpx.ConnectError('connection refused')

        with pytest.raises(RetriesExhausted) as exc_info:
            await transport.call(REQUEST)

        assert exc_info.value.dispatched is False
        assert isinstance(exc_info.value.last_error, EndpointDownError)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_batch_response_returned_as_is(self, transport, mock_async_client):
        batch_response = [jsonrpc_result(1, request_id=1), jsonrpc_error('HANDLER_ERROR', request_id=2)]
        mock_async_client.post.return_value = MockResponse(json_data=batch_response)

        assert await transport.call([REQUEST, REQUEST]) == batch_response

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_single_attempt_policy(self, mock_async_client):
        settings = TxHelperSettings(
            endpoints=[EndpointConfig(url=TEST_RPC_URL)],
            retry=RetryPolicy(max_attempts=1, base_backoff=0.001, max_backoff=0.001),
        )
        transport = RetryingTransport(settings, client=mock_async_client)
        mock_async_client.post.return_value = MockResponse(status_code=502)

        with pytest.raises(RetriesExhausted) as exc_info:
            await transport.call(REQUEST)

        assert exc_info.value.attempts == 1


class TestEndpointFailover:
    """Test cases for moving between primary and backup endpoints."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failover_is_sticky_until_reset(self, failover_transport, mock_async_client):
        async def post(url, json, headers):
            if url == TEST_RPC_URL:
                raise httpx.ConnectError('connection refused')
            return ok(url)

        mock_async_client.post.side_effect = post

        first = await failover_transport.call(REQUEST)
        assert first['result'] == TEST_BACKUP_URL
        assert failover_transport.current_endpoint().url == TEST_BACKUP_URL

        # the next call starts on the backup without touching the primary
        mock_async_client.post.reset_mock()
        second = await failover_transport.call(REQUEST)
        assert second['result'] == TEST_BACKUP_URL
        assert mock_async_client.post.await_count == 1

        failover_transport.reset_endpoint()
        assert failover_transport.current_endpoint_index == 0
        assert failover_transport.current_endpoint().url == TEST_RPC_URL

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_backup_receives_api_key(self, failover_transport, mock_async_client):
        mock_async_client.post.side_effect = [httpx.ConnectError('refused'), ok()]

        await failover_transport.call(REQUEST)

        _, kwargs = mock_async_client.post.await_args
        assert kwargs['url'] == TEST_BACKUP_URL
        assert kwargs['headers'] == {'Authorization': 'Bearer backup-key'}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_error_stays_on_endpoint(self, failover_transport, mock_async_client):
        mock_async_client.post.side_effect = [MockResponse(status_code=429), ok()]

        await failover_transport.call(REQUEST)

        urls = [call.kwargs['url'] for call in mock_async_client.post.await_args_list]
        assert urls == [TEST_RPC_URL, TEST_RPC_URL]
        assert failover_transport.current_endpoint_index == 0


class TestTransportLifecycle:
    """Test cases for client creation and teardown."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_init_creates_client_once(self, rpc_config):
        transport = RetryingTransport(rpc_config)

        await transport.init()
        client = transport._client
        await transport.init()

        assert isinstance(client, httpx.AsyncClient)
        assert transport._client is client
        await transport.close()
        assert transport._client is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_close_keeps_injected_client_open(self, transport, mock_async_client):
        await transport.close()

        mock_async_client.aclose.assert_not_awaited()
