"""
Coalesces independent view queries into one JSON-RPC batch request.

Queries are grouped explicitly by the caller (no background timer) and
matched back to their callers purely by position in the response array.
"""
import asyncio
from typing import Any, Callable, List, Optional

from tx_helper.transport import RetryingTransport
from tx_helper.transport import rpc_error_to_exception
from tx_helper.utils.default_logger import get_logger
from tx_helper.utils.exceptions import CriticalRPCError
from tx_helper.utils.exceptions import MalformedBatchResponse
from tx_helper.utils.exceptions import RPCException
from tx_helper.utils.rpc_requests import build_jsonrpc_request


logger = get_logger('QueryBatch')

_UNSET = object()


class PendingQuery(object):
    """
    Single-assignment result slot for one query of a batch.

    Await it (or call `result()` after the flush) to get the parsed value; a
    failed query raises its own error.
    """

    def __init__(self, request_payload: dict, parser: Optional[Callable[[Any], Any]] = None):
        self.request_payload = request_payload
        self._parser = parser
        self._value = _UNSET
        self._exception = None
        self._event = None

    @property
    def id(self):
        return self.request_payload.get('id')

    def done(self) -> bool:
        return self._value is not _UNSET or self._exception is not None

    def result(self):
        if not self.done():
            raise asyncio.InvalidStateError('query has not been flushed yet')
        if self._exception is not None:
            raise self._exception
        return self._value

    def exception(self) -> Optional[BaseException]:
        if not self.done():
            raise asyncio.InvalidStateError('query has not been flushed yet')
        return self._exception

    def outcome(self):
        """The parsed value, or the exception this query failed with."""
        return self._exception if self._exception is not None else self._value

    def _settle(self):
        if self._event is not None:
            self._event.set()

    def set_raw_result(self, raw):
        if self.done():
            raise asyncio.InvalidStateError('query result already set')
        if self._parser is None:
            self._value = raw
        else:
            try:
                self._value = self._parser(raw)
            except Exception as e:
                self._exception = e
        self._settle()

    def set_exception(self, exc: BaseException):
        if self.done():
            raise asyncio.InvalidStateError('query result already set')
        self._exception = exc
        self._settle()

    async def wait(self):
        if not self.done():
            if self._event is None:
                self._event = asyncio.Event()
            await self._event.wait()
        return self.result()

    def __await__(self):
        return self.wait().__await__()

    def __repr__(self):
        state = 'pending' if not self.done() else ('failed' if self._exception is not None else 'done')
        return f'PendingQuery(id={self.id}, method={self.request_payload.get("method")!r}, {state})'


class QueryBatch(object):

    def __init__(self, transport: RetryingTransport):
        self._transport = transport
        self._queries: List[PendingQuery] = []
        self._flushed = False
        self._logger = logger

    def __len__(self):
        return len(self._queries)

    @property
    def flushed(self) -> bool:
        return self._flushed

    def enqueue(self, method: str, params: Any, parser: Optional[Callable[[Any], Any]] = None) -> PendingQuery:
        """
        Adds a query to the batch.

        Args:
            method (str): JSON-RPC method name.
            params: JSON-RPC params.
            parser (callable, optional): Turns the raw `result` into a typed value.

        Returns:
            PendingQuery: Handle resolved by `flush()`.
        """
        if self._flushed:
            raise RuntimeError('cannot enqueue into a batch that was already flushed')
        query = PendingQuery(
            build_jsonrpc_request(method, params, request_id=len(self._queries) + 1),
            parser=parser,
        )
        self._queries.append(query)
        return query

    def _fail_all(self, exc: BaseException):
        for query in self._queries:
            if not query.done():
                query.set_exception(exc)

    async def flush(self) -> List[Any]:
        """
        Sends every enqueued query as one composite request and routes the answers back.

        Returns:
            list: Per-query outcome in enqueue order, the parsed value or the exception
            that query failed with.
        """
        if self._flushed:
            raise RuntimeError('batch was already flushed')
        self._flushed = True
        if not self._queries:
            return []

        request = [query.request_payload for query in self._queries]
        self._logger.debug('Flushing batch of {} queries', len(request))
        try:
            response = await self._transport.call(request)
        except asyncio.CancelledError as e:
            self._fail_all(e)
            raise
        except Exception as e:
            self._logger.opt(exception=not isinstance(e, RPCException)).warning(
                'Batch of {} queries failed as a whole: {!r}', len(request), e,
            )
            self._fail_all(e)
            if not isinstance(e, RPCException):
                raise
            return [query.outcome() for query in self._queries]

        self._demultiplex(request, response)
        return [query.outcome() for query in self._queries]

    def _demultiplex(self, request: list, response):
        if not isinstance(response, list) or len(response) != len(self._queries):
            received = len(response) if isinstance(response, list) else type(response).__name__
            self._fail_all(
                MalformedBatchResponse(
                    request=request,
                    response=response,
                    underlying_exception=None,
                    extra_info=f'RPC_BATCH_RESPONSE_ERROR: expected {len(self._queries)} items, got {received}',
                ),
            )
            return

        for position, (query, item) in enumerate(zip(self._queries, response)):
            if not isinstance(item, dict) or ('id' in item and item['id'] != query.id):
                self._fail_all(
                    MalformedBatchResponse(
                        request=request,
                        response=response,
                        underlying_exception=None,
                        extra_info=f'RPC_BATCH_RESPONSE_ERROR: item {position} does not answer request id {query.id}',
                    ),
                )
                return

        rules = self._transport.classification_rules
        for query, item in zip(self._queries, response):
            if 'error' in item:
                query.set_exception(
                    rpc_error_to_exception(query.request_payload, item, item['error'], rules),
                )
            elif 'result' in item:
                query.set_raw_result(item['result'])
            else:
                query.set_exception(
                    CriticalRPCError(
                        request=query.request_payload,
                        response=item,
                        underlying_exception=None,
                        extra_info='RPC_BATCH_RESPONSE_ERROR: item has neither result nor error',
                    ),
                )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self._flushed:
            return
        if exc_type is None:
            await self.flush()
        else:
            self._flushed = True
            self._fail_all(asyncio.CancelledError('batch scope exited with an error'))
