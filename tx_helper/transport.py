import asyncio
import random
from typing import Any, Dict, List, Optional, Union

import httpx
import tenacity
from httpx import AsyncClient
from httpx import AsyncHTTPTransport
from httpx import Limits
from httpx import Timeout
from tenacity import retry
from tenacity import retry_if_exception_type
from tenacity import RetryError
from tenacity import stop_after_attempt
from tenacity.wait import wait_base

from tx_helper.utils.default_logger import get_logger
from tx_helper.utils.exceptions import CriticalRPCError
from tx_helper.utils.exceptions import EndpointDownError
from tx_helper.utils.exceptions import RetriesExhausted
from tx_helper.utils.exceptions import RPCException
from tx_helper.utils.exceptions import TransientRPCError
from tx_helper.utils.models.settings_model import ClassificationRules
from tx_helper.utils.models.settings_model import EndpointConfig
from tx_helper.utils.models.settings_model import RPCConfigBase


logger = get_logger('RetryingTransport')

JsonRpcRequest = Union[Dict[str, Any], List[Dict[str, Any]]]

TRANSIENT = 'transient'
CRITICAL = 'critical'


def rpc_error_names(error) -> List[str]:
    """
    Returns the error identifiers of a JSON-RPC error object, most specific first.

    Nodes report e.g. `{"name": "HANDLER_ERROR", "cause": {"name": "INVALID_TRANSACTION"}}`.
    """
    if not isinstance(error, dict):
        return []
    names = []
    cause = error.get('cause')
    if isinstance(cause, dict) and isinstance(cause.get('name'), str):
        names.append(cause['name'])
    if isinstance(error.get('name'), str):
        names.append(error['name'])
    return names


def classify_rpc_error(error, rules: ClassificationRules) -> str:
    """
    Decides whether a JSON-RPC error object is transient or critical.

    Args:
        error (dict): The `error` member of a JSON-RPC response.
        rules (ClassificationRules): Error names and codes to match against.

    Returns:
        str: TRANSIENT or CRITICAL.
    """
    for name in rpc_error_names(error):
        if name in rules.critical_rpc_errors:
            return CRITICAL
        if name in rules.transient_rpc_errors:
            return TRANSIENT
    if isinstance(error, dict) and error.get('code') in rules.critical_rpc_codes:
        return CRITICAL
    return CRITICAL if rules.unknown_rpc_error_is_critical else TRANSIENT


def rpc_error_to_exception(request, response, error, rules: ClassificationRules) -> RPCException:
    exc_class = CriticalRPCError if classify_rpc_error(error, rules) == CRITICAL else TransientRPCError
    return exc_class(
        request=request,
        response=response,
        underlying_exception=error,
        extra_info=f'RPC_JSONRPC_ERROR: {error}',
    )


def classify_exception(exc: BaseException, request) -> RPCException:
    """
    Wraps a low-level failure of one HTTP attempt into the transport's error taxonomy.

    Connection refused and DNS failures mean the endpoint is down; timeouts and other
    network hiccups are transient; local misconfiguration and unparsable bodies are critical.
    """
    if isinstance(exc, RPCException):
        return exc
    if isinstance(exc, httpx.ConnectError):
        exc_class = EndpointDownError
    elif isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        exc_class = TransientRPCError
    elif isinstance(exc, (httpx.UnsupportedProtocol, httpx.LocalProtocolError, httpx.InvalidURL)):
        exc_class = CriticalRPCError
    elif isinstance(exc, httpx.TransportError):
        exc_class = TransientRPCError
    else:
        exc_class = CriticalRPCError
    return exc_class(
        request=request,
        response=None,
        underlying_exception=exc,
        extra_info=f'RPC call error | Exception: {exc!r}',
    )


def reached_server(exc: BaseException) -> bool:
    """False when the failed attempt certainly never left this process."""
    if isinstance(exc, EndpointDownError):
        return False
    if isinstance(exc, RPCException) and isinstance(
        exc.underlying_exception, (httpx.ConnectTimeout, httpx.PoolTimeout),
    ):
        return False
    return True


class wait_transient_backoff(wait_base):
    """
    Full-jitter exponential backoff that only counts transient failures.

    Failing over to another endpoint is immediate and does not grow the backoff.
    """

    def __init__(self, base: float, maximum: float):
        self.base = base
        self.maximum = maximum
        self.transient_failures = 0

    def __call__(self, retry_state: tenacity.RetryCallState) -> float:
        exc = retry_state.outcome.exception()
        if isinstance(exc, EndpointDownError):
            return 0
        self.transient_failures += 1
        return random.uniform(0, min(self.maximum, self.base * 2 ** (self.transient_failures - 1)))


class RetryingTransport(object):

    def __init__(self, rpc_settings: RPCConfigBase, client: Optional[AsyncClient] = None):
        """
        Initializes the transport.

        Args:
            rpc_settings (RPCConfigBase): Endpoints, retry policy and connection limits.
            client (AsyncClient, optional): Pre-built HTTP client; the transport creates
                and owns one on `init()` otherwise.
        """
        self._rpc_settings = rpc_settings
        self._policy = rpc_settings.retry
        self._endpoints: List[EndpointConfig] = list(rpc_settings.endpoints)
        self._current_endpoint_index = 0
        self._client = client
        self._owns_client = client is None
        self._async_transport = None
        self._logger = logger

    async def init(self):
        """
        Initializes the HTTP client used for RPC requests.

        If the client has already been initialized, this function returns immediately.
        """
        if self._client is not None:
            return
        self._async_transport = AsyncHTTPTransport(
            limits=Limits(
                max_connections=self._rpc_settings.connection_limits.max_connections,
                max_keepalive_connections=self._rpc_settings.connection_limits.max_keepalive_connections,
                keepalive_expiry=self._rpc_settings.connection_limits.keepalive_expiry,
            ),
        )
        self._client = AsyncClient(
            timeout=Timeout(timeout=self._rpc_settings.request_time_out),
            follow_redirects=False,
            transport=self._async_transport,
        )
        self._owns_client = True
        self._logger.debug('HTTP client initialized for {} endpoints', len(self._endpoints))

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
        self._async_transport = None

    @property
    def classification_rules(self) -> ClassificationRules:
        return self._policy.classification_rules

    @property
    def current_endpoint_index(self) -> int:
        return self._current_endpoint_index

    def current_endpoint(self) -> EndpointConfig:
        """Returns the endpoint new calls start on."""
        return self._endpoints[self._current_endpoint_index]

    def reset_endpoint(self):
        """Points the cursor back at the primary endpoint."""
        if self._current_endpoint_index != 0:
            self._logger.info(
                'Resetting endpoint cursor from {} to primary {}',
                self._endpoints[self._current_endpoint_index].url, self._endpoints[0].url,
            )
        self._current_endpoint_index = 0

    def _advance_endpoint(self, failed_idx: int) -> int:
        # only move if nobody else already moved past the failed endpoint
        if self._current_endpoint_index == failed_idx:
            self._current_endpoint_index = (failed_idx + 1) % len(self._endpoints)
        return self._current_endpoint_index

    def _on_endpoint_exception(self, retry_state: tenacity.RetryCallState):
        """
        Callback run before every retry of a call.

        On EndpointDown the shared cursor moves to the next configured endpoint and the
        retry is injected with it; transient failures retry the same endpoint.
        """
        exc_idx = retry_state.kwargs['node_idx']
        exc = retry_state.outcome.exception()
        if isinstance(exc, EndpointDownError):
            next_node_idx = self._advance_endpoint(exc_idx)
            retry_state.kwargs['node_idx'] = next_node_idx
            self._logger.warning(
                'Endpoint {} at idx {} is down, failing over to {} at idx {} | exception: {}',
                self._endpoints[exc_idx].url, exc_idx,
                self._endpoints[next_node_idx].url, next_node_idx, exc.underlying_exception,
            )
        else:
            self._logger.warning(
                'Transient error on endpoint {} (attempt {}/{}), retrying in {:.2f}s | exception: {!r}',
                self._endpoints[exc_idx].url, retry_state.attempt_number,
                self._policy.max_attempts, retry_state.upcoming_sleep, exc,
            )

    async def _send(self, node_idx: int, request: JsonRpcRequest):
        endpoint = self._endpoints[node_idx]
        headers = {'Authorization': f'Bearer {endpoint.api_key}'} if endpoint.api_key else None
        try:
            response = await self._client.post(url=endpoint.url, json=request, headers=headers)
        except (httpx.HTTPError, httpx.InvalidURL, asyncio.TimeoutError) as e:
            exc = classify_exception(e, request)
            self._logger.trace('Error in making jsonrpc call to {}, error {}', endpoint.url, exc)
            raise exc

        rules = self._policy.classification_rules
        if response.status_code != 200:
            exc_class = TransientRPCError if response.status_code in rules.transient_http_statuses else CriticalRPCError
            raise exc_class(
                request=request,
                response=(response.status_code, response.text),
                underlying_exception=None,
                extra_info=f'RPC_CALL_ERROR: HTTP {response.status_code} {response.text}',
            )

        try:
            response_data = response.json()
        except ValueError as e:
            raise CriticalRPCError(
                request=request,
                response=(response.status_code, response.text),
                underlying_exception=e,
                extra_info=f'RPC_CALL_ERROR: unparsable response body: {e}',
            )

        # per-item errors of a batch are left to the caller, a single error object fails the call
        if isinstance(response_data, dict) and 'error' in response_data:
            raise rpc_error_to_exception(request, response_data, response_data['error'], rules)
        return response_data

    async def call(self, request: JsonRpcRequest):
        """
        Sends a JSON-RPC request (or batch) with retries and endpoint failover.

        Args:
            request (dict or list): A JSON-RPC request object or a list of them.

        Returns:
            dict or list: The decoded response. Batch responses are returned as-is.

        Raises:
            CriticalRPCError: Immediately, without retrying. Its `dispatched` flag tells
                whether an earlier attempt of this call may have reached a server.
            RetriesExhausted: When `max_attempts` attempts failed with retryable errors.
        """
        if self._client is None:
            await self.init()

        wait = wait_transient_backoff(self._policy.base_backoff, self._policy.max_backoff)
        call_state = {'dispatched': False}

        @retry(
            retry=retry_if_exception_type((TransientRPCError, EndpointDownError)),
            wait=wait,
            stop=stop_after_attempt(self._policy.max_attempts),
            before_sleep=self._on_endpoint_exception,
        )
        async def f(node_idx):
            try:
                return await self._send(node_idx, request)
            except CriticalRPCError as e:
                e.dispatched = call_state['dispatched']
                raise
            except RPCException as e:
                if reached_server(e):
                    call_state['dispatched'] = True
                raise

        try:
            return await f(node_idx=self._current_endpoint_index)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            exc = RetriesExhausted(
                request=request,
                last_error=last_error,
                attempts=e.last_attempt.attempt_number,
                dispatched=call_state['dispatched'],
            )
            self._logger.warning('Giving up on RPC call: {}', exc.extra_info)
            raise exc from last_error
