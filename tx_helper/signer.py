"""
Signer capability consumed by the transaction submitter.

The submitter only needs `sign(payload_bytes, public_key) -> signature`, sync or
async. `LocalKeySigner` backs that with an eth-account secret key, and
`KeychainSigner` pools several signers so each pooled key signs its own
transactions.
"""
import inspect
from typing import Awaitable, Dict, List, Protocol, Union

from eth_account import Account
from eth_account.messages import encode_defunct
from hexbytes import HexBytes

from tx_helper.utils.default_logger import get_logger
from tx_helper.utils.exceptions import SigningUnavailable


logger = get_logger('Signer')


class Signer(Protocol):

    def sign(self, payload: bytes, public_key: str) -> Union[bytes, Awaitable[bytes]]:
        ...


async def sign_payload(signer: Signer, payload: bytes, public_key: str) -> HexBytes:
    """Calls a sync or async signer and normalizes the signature to HexBytes."""
    signature = signer.sign(payload, public_key)
    if inspect.isawaitable(signature):
        signature = await signature
    return HexBytes(signature)


class LocalKeySigner(object):
    """Signs with an in-memory secret key. The public key is the key's checksum address."""

    def __init__(self, secret_key):
        self._account = Account.from_key(secret_key)

    @property
    def public_key(self) -> str:
        return self._account.address

    def sign(self, payload: bytes, public_key: str) -> HexBytes:
        if public_key != self.public_key:
            raise SigningUnavailable(f'local key {self.public_key} cannot sign for {public_key}')
        return self._account.sign_message(encode_defunct(primitive=payload)).signature


class KeychainSigner(object):
    """A pool of signers, each answering for its own public key."""

    def __init__(self, *signers):
        self._signers: Dict[str, Signer] = {}
        for signer in signers:
            self.add_signer(signer)

    def add_signer(self, signer: Signer, public_key: str = None) -> str:
        public_key = public_key or signer.public_key
        self._signers[public_key] = signer
        logger.debug('Added signer for key {} to keychain', public_key)
        return public_key

    def add_secret_key(self, secret_key) -> str:
        return self.add_signer(LocalKeySigner(secret_key))

    def public_keys(self) -> List[str]:
        return list(self._signers)

    async def sign(self, payload: bytes, public_key: str) -> HexBytes:
        try:
            signer = self._signers[public_key]
        except KeyError:
            raise SigningUnavailable(f'no signer for key {public_key} in keychain') from None
        return await sign_payload(signer, payload, public_key)
