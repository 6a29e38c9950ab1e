from typing import Iterable
from typing import List
from typing import Optional
from typing import Tuple
from typing import Union

from tx_helper.batcher import QueryBatch
from tx_helper.key_pool import KeyPool
from tx_helper.signer import Signer
from tx_helper.submitter import TransactionSubmitter
from tx_helper.transport import RetryingTransport
from tx_helper.utils.default_logger import enable_debug_logging
from tx_helper.utils.default_logger import get_logger
from tx_helper.utils.default_logger import remove_tx_handlers
from tx_helper.utils.exceptions import RPCException
from tx_helper.utils.models.data_models import AccessKeyView
from tx_helper.utils.models.data_models import BlockReference
from tx_helper.utils.models.data_models import TransactionOutcome
from tx_helper.utils.models.data_models import TransactionRequest
from tx_helper.utils.models.settings_model import TxHelperSettings
from tx_helper.utils.rpc_requests import access_key_query
from tx_helper.utils.rpc_requests import extract_result
from tx_helper.utils.rpc_requests import parse_access_key


logger = get_logger('TxHelper')


class TxHelper(object):

    def __init__(
        self,
        settings: TxHelperSettings,
        signer: Signer,
        key_pool: Optional[KeyPool] = None,
        debug_mode=False,
    ):
        """
        Initializes an instance of the TxHelper class.

        Args:
            settings (TxHelperSettings): Endpoints, retry policy and key pool behaviour.
            signer (Signer): Signs the payloads of submitted transactions.
            key_pool (KeyPool, optional): Pool shared with other helpers. A private pool
                is created from `settings.key_pool` otherwise.
            debug_mode (bool, optional): Mirror DEBUG and TRACE records to stdout. Defaults to False.
        """
        self._settings = settings
        self._debug_mode = debug_mode
        self._logger = logger
        self._initialized = False
        self._transport = RetryingTransport(settings)
        self._key_pool = key_pool or KeyPool(settings.key_pool)
        self._key_pool.set_nonce_fetcher(self._fetch_nonce)
        self._submitter = TransactionSubmitter(self._key_pool, self._transport, signer, settings)
        self._debug_handler_ids = []

        if self._debug_mode:
            self._debug_handler_ids.append(enable_debug_logging())

    @property
    def key_pool(self) -> KeyPool:
        return self._key_pool

    @property
    def transport(self) -> RetryingTransport:
        return self._transport

    async def init(self):
        """
        Initializes the HTTP client shared by transactions and queries.

        Calling it again is a no-op.
        """
        if not self._initialized:
            await self._transport.init()
            self._initialized = True
            self._logger.debug(
                'TxHelper initialized with {} endpoints',
                len(self._settings.endpoints),
            )

    async def close(self):
        await self._transport.close()
        remove_tx_handlers(self._debug_handler_ids)
        self._debug_handler_ids = []
        self._initialized = False

    async def __aenter__(self):
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def register_key(self, account_id: str, public_key: str, initial_nonce: Optional[int] = None):
        """
        Registers an access key of `account_id` with the key pool.

        Without `initial_nonce` the current nonce is read from the network right away.

        Raises:
            DuplicateKey: If the key is already registered.
            RPCException: If the nonce could not be read. The key stays registered but
                out of rotation until it is reconciled.
        """
        self._key_pool.register(account_id, public_key, initial_nonce)
        if initial_nonce is None:
            try:
                await self._key_pool.reconcile(public_key)
            except RPCException as e:
                self._logger.warning(
                    'Registered key {} of {} but could not read its nonce: {}',
                    public_key, account_id, e.extra_info,
                )
                raise

    async def reconcile_pending(self, account_id: Optional[str] = None) -> int:
        """Re-reads the nonce of every parked key, see `KeyPool.reconcile_pending`."""
        return await self._key_pool.reconcile_pending(account_id)

    async def submit_transaction(
        self, request: Union[TransactionRequest, dict],
    ) -> TransactionOutcome:
        """
        Submits a transaction signed with a pooled key of `request.signer_id`.

        Args:
            request (TransactionRequest or dict): The transaction to submit.

        Returns:
            TransactionOutcome: The accepted transaction.

        Raises:
            SubmitError: Typed terminal failure, see `TransactionSubmitter.submit_transaction`.
        """
        if not isinstance(request, TransactionRequest):
            request = TransactionRequest.model_validate(request)
        return await self._submitter.submit_transaction(request)

    def query_batch_scope(self) -> QueryBatch:
        """
        Opens a batch for independent view queries, flushed as one request.

        Usage:
            async with helper.query_batch_scope() as batch:
                key = batch.enqueue('query', params, parser)
            print(key.result())
        """
        return QueryBatch(self._transport)

    async def fetch_access_key(self, account_id: str, public_key: str) -> AccessKeyView:
        """
        Reads one access key, including its current nonce.

        Args:
            account_id (str): Account the key belongs to.
            public_key (str): The access key.

        Returns:
            AccessKeyView: The on-chain key record.
        """
        request = access_key_query(account_id, public_key, self._settings.finality)
        response = await self._transport.call(request)
        return parse_access_key(extract_result(request, response))

    async def fetch_access_keys(self, keys: Iterable[Tuple[str, str]]) -> List[Union[AccessKeyView, Exception]]:
        """
        Reads several access keys in one batch request.

        Args:
            keys (iterable): (account_id, public_key) pairs.

        Returns:
            list: One entry per pair, in order. Each is an AccessKeyView or the error
            that query failed with.
        """
        batch = self.query_batch_scope()
        for account_id, public_key in keys:
            query = access_key_query(account_id, public_key, self._settings.finality)
            batch.enqueue(query['method'], query['params'], parse_access_key)
        return await batch.flush()

    async def fetch_latest_block(self) -> BlockReference:
        return await self._submitter.fetch_latest_block()

    async def _fetch_nonce(self, account_id: str, public_key: str) -> int:
        return (await self.fetch_access_key(account_id, public_key)).nonce
