import base64
import json
from typing import Any, Dict, List

from eth_utils import keccak
from hexbytes import HexBytes

from tx_helper.utils.exceptions import CriticalRPCError
from tx_helper.utils.models.data_models import AccessKeyView
from tx_helper.utils.models.data_models import BlockReference


QUERY_METHOD = 'query'
BLOCK_METHOD = 'block'
SEND_TX_METHOD = 'send_tx'


def build_jsonrpc_request(method: str, params: Any, request_id: int = 1) -> Dict[str, Any]:
    return {
        'jsonrpc': '2.0',
        'id': request_id,
        'method': method,
        'params': params,
    }


def access_key_query(account_id: str, public_key: str, finality: str = 'final', request_id: int = 1) -> Dict[str, Any]:
    params = {
        'request_type': 'view_access_key',
        'finality': finality,
        'account_id': account_id,
        'public_key': public_key,
    }
    return build_jsonrpc_request(QUERY_METHOD, params, request_id)


def latest_block_query(finality: str = 'final', request_id: int = 1) -> Dict[str, Any]:
    return build_jsonrpc_request(BLOCK_METHOD, {'finality': finality}, request_id)


def send_tx_request(signed_tx_base64: str, wait_until: str, request_id: int = 1) -> Dict[str, Any]:
    params = {
        'signed_tx_base64': signed_tx_base64,
        'wait_until': wait_until,
    }
    return build_jsonrpc_request(SEND_TX_METHOD, params, request_id)


def parse_access_key(result: Dict[str, Any]) -> AccessKeyView:
    return AccessKeyView.model_validate(result)


def parse_block_reference(result: Dict[str, Any]) -> BlockReference:
    header = result['header']
    return BlockReference(block_hash=header['hash'], block_height=header['height'])


def encode_transaction_payload(
    signer_id: str,
    public_key: str,
    nonce: int,
    receiver_id: str,
    block_hash: str,
    actions: List[Dict[str, Any]],
) -> bytes:
    """
    Serializes the nonce-bound transaction that gets signed.

    Canonical JSON (sorted keys, no whitespace) so the same transaction always
    produces the same bytes and hash.
    """
    transaction = {
        'signer_id': signer_id,
        'public_key': public_key,
        'nonce': nonce,
        'receiver_id': receiver_id,
        'block_hash': block_hash,
        'actions': actions,
    }
    return json.dumps(transaction, sort_keys=True, separators=(',', ':')).encode('utf-8')


def encode_signed_transaction(payload: bytes, signature: bytes) -> str:
    envelope = {
        'transaction': base64.b64encode(payload).decode('ascii'),
        'signature': '0x' + bytes(HexBytes(signature)).hex(),
    }
    return base64.b64encode(
        json.dumps(envelope, sort_keys=True, separators=(',', ':')).encode('utf-8'),
    ).decode('ascii')


def transaction_hash(payload: bytes) -> str:
    return '0x' + keccak(payload).hex()


def extract_result(request: Dict[str, Any], response: Any) -> Any:
    """Returns the `result` member of a single JSON-RPC response."""
    if isinstance(response, dict) and 'result' in response:
        return response['result']
    raise CriticalRPCError(
        request=request,
        response=response,
        underlying_exception=None,
        extra_info='RPC_RESPONSE_ERROR: response has no result',
    )
