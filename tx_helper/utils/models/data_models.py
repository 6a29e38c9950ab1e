from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel
from pydantic import Field


class TransactionRequest(BaseModel):
    """A transaction as handed over by account/contract builders, before nonce binding."""

    signer_id: str
    receiver_id: str
    actions: List[Dict[str, Any]] = Field(min_length=1)
    block_hash: Optional[str] = None
    wait_until: Optional[str] = None


class TransactionOutcome(BaseModel):
    """Confirmed result of a submitted transaction."""

    tx_hash: str
    signer_id: str
    public_key: str
    nonce: int
    result: Any = None


class AccessKeyView(BaseModel):
    """Authoritative on-chain record for one access key."""

    nonce: int
    permission: Union[str, Dict[str, Any]] = 'FullAccess'
    block_hash: Optional[str] = None
    block_height: Optional[int] = None


class BlockReference(BaseModel):
    block_hash: str
    block_height: int
