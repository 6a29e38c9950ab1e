"""
Drives one transaction from key reservation to a terminal state.

    Building -> Signed -> Submitted -> Confirmed | Rejected | Unknown

The key pool is told about every outcome: a confirmed transaction consumes its
nonce, a transaction that definitely never landed gives it back, and anything
in between parks the key until its nonce is re-read from the network.
"""
import asyncio
from enum import Enum
from typing import Optional

from tx_helper.key_pool import KeyPool
from tx_helper.key_pool import KeyReservation
from tx_helper.signer import Signer
from tx_helper.signer import sign_payload
from tx_helper.transport import RetryingTransport
from tx_helper.utils.default_logger import get_logger
from tx_helper.utils.exceptions import CriticalRPCError
from tx_helper.utils.exceptions import OutcomeUnknown
from tx_helper.utils.exceptions import RetriesExhausted
from tx_helper.utils.exceptions import RPCException
from tx_helper.utils.exceptions import SignerError
from tx_helper.utils.exceptions import SigningFailed
from tx_helper.utils.exceptions import TransactionNotSent
from tx_helper.utils.exceptions import TransactionRejected
from tx_helper.utils.models.data_models import BlockReference
from tx_helper.utils.models.data_models import TransactionOutcome
from tx_helper.utils.models.data_models import TransactionRequest
from tx_helper.utils.models.settings_model import TxHelperSettings
from tx_helper.utils.rpc_requests import encode_signed_transaction
from tx_helper.utils.rpc_requests import encode_transaction_payload
from tx_helper.utils.rpc_requests import extract_result
from tx_helper.utils.rpc_requests import latest_block_query
from tx_helper.utils.rpc_requests import parse_block_reference
from tx_helper.utils.rpc_requests import send_tx_request
from tx_helper.utils.rpc_requests import transaction_hash


logger = get_logger('TransactionSubmitter')


class TransactionState(str, Enum):
    BUILDING = 'building'
    SIGNED = 'signed'
    SUBMITTED = 'submitted'
    CONFIRMED = 'confirmed'
    REJECTED = 'rejected'
    UNKNOWN = 'unknown'


class TransactionSubmitter(object):

    def __init__(
        self,
        key_pool: KeyPool,
        transport: RetryingTransport,
        signer: Signer,
        settings: TxHelperSettings,
    ):
        self._key_pool = key_pool
        self._transport = transport
        self._signer = signer
        self._settings = settings
        self._logger = logger

    def _transition(self, reservation: KeyReservation, state: TransactionState, detail: str = ''):
        self._logger.debug(
            'Transaction of {} with key {} nonce {} -> {}{}',
            reservation.account_id, reservation.public_key, reservation.nonce,
            state.value, f' | {detail}' if detail else '',
        )

    async def fetch_latest_block(self) -> BlockReference:
        request = latest_block_query(self._settings.finality)
        response = await self._transport.call(request)
        return parse_block_reference(extract_result(request, response))

    async def submit_transaction(self, request: TransactionRequest) -> TransactionOutcome:
        """
        Reserves a key, signs and sends the transaction, and settles the key with the outcome.

        Args:
            request (TransactionRequest): Transaction to submit. A missing `block_hash`
                is filled in with the latest final block.

        Returns:
            TransactionOutcome: The accepted transaction.

        Raises:
            NoAvailableKey: If no key of the signer account could be reserved.
            SigningFailed: If the signer refused or could not sign. The nonce is reusable.
            TransactionNotSent: If the transaction never reached an endpoint. The nonce is reusable.
            TransactionRejected: If the network refused the transaction and no earlier attempt
                may have landed. The nonce is reusable.
            OutcomeUnknown: If the transaction may have landed, including a rejection that
                follows an attempt with no answer. The key stays parked until
                reconciled.
        """
        async with self._key_pool.reserved(request.signer_id) as reservation:
            self._transition(reservation, TransactionState.BUILDING)
            block_hash = request.block_hash
            if block_hash is None:
                try:
                    block_hash = (await self.fetch_latest_block()).block_hash
                except RPCException as e:
                    reservation.release()
                    raise TransactionNotSent(
                        f'could not fetch a recent block hash: {e.extra_info}',
                        public_key=reservation.public_key, nonce=reservation.nonce, cause=e,
                    ) from e

            payload = encode_transaction_payload(
                signer_id=request.signer_id,
                public_key=reservation.public_key,
                nonce=reservation.nonce,
                receiver_id=request.receiver_id,
                block_hash=block_hash,
                actions=request.actions,
            )
            try:
                signature = await sign_payload(self._signer, payload, reservation.public_key)
            except SignerError as e:
                reservation.release()
                self._transition(reservation, TransactionState.REJECTED, f'signing failed: {e!r}')
                raise SigningFailed(
                    f'signer could not sign with key {reservation.public_key}: {e}',
                    public_key=reservation.public_key, nonce=reservation.nonce, cause=e,
                ) from e
            self._transition(reservation, TransactionState.SIGNED)

            tx_hash = transaction_hash(payload)
            wait_until = request.wait_until or self._settings.wait_until
            send_request = send_tx_request(encode_signed_transaction(payload, signature), wait_until)
            self._transition(reservation, TransactionState.SUBMITTED, tx_hash)
            try:
                response = await self._transport.call(send_request)
            except CriticalRPCError as e:
                if e.dispatched:
                    # an earlier attempt may have landed and consumed the nonce
                    raise self._unknown(reservation, tx_hash, e) from e
                reservation.release()
                self._transition(reservation, TransactionState.REJECTED, e.extra_info)
                raise TransactionRejected(
                    f'transaction {tx_hash} rejected: {e.extra_info}',
                    public_key=reservation.public_key, nonce=reservation.nonce, cause=e,
                ) from e
            except RetriesExhausted as e:
                if not e.dispatched:
                    reservation.release()
                    self._transition(reservation, TransactionState.REJECTED, 'never dispatched')
                    raise TransactionNotSent(
                        f'transaction {tx_hash} could not be sent: {e.extra_info}',
                        public_key=reservation.public_key, nonce=reservation.nonce, cause=e,
                    ) from e
                raise self._unknown(reservation, tx_hash, e) from e
            except asyncio.CancelledError:
                reservation.release_uncertain()
                self._transition(reservation, TransactionState.UNKNOWN, 'cancelled while in flight')
                raise
            except Exception as e:
                raise self._unknown(reservation, tx_hash, e) from e

            if not isinstance(response, dict) or 'result' not in response:
                raise self._unknown(reservation, tx_hash, None, f'unexpected response {response!r}')

            reservation.commit()
            self._transition(reservation, TransactionState.CONFIRMED, tx_hash)
            return TransactionOutcome(
                tx_hash=tx_hash,
                signer_id=request.signer_id,
                public_key=reservation.public_key,
                nonce=reservation.nonce,
                result=response['result'],
            )

    def _unknown(
        self,
        reservation: KeyReservation,
        tx_hash: str,
        cause: Optional[BaseException],
        detail: Optional[str] = None,
    ) -> OutcomeUnknown:
        reservation.release_uncertain()
        detail = detail or repr(cause)
        self._transition(reservation, TransactionState.UNKNOWN, detail)
        self._logger.warning(
            'Outcome of transaction {} (key {} nonce {}) is unknown: {}',
            tx_hash, reservation.public_key, reservation.nonce, detail,
        )
        return OutcomeUnknown(
            f'outcome of transaction {tx_hash} is unknown: {detail}',
            public_key=reservation.public_key, nonce=reservation.nonce, cause=cause,
        )
