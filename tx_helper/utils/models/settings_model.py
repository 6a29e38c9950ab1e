from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import model_validator


class EndpointRole(str, Enum):
    PRIMARY = 'primary'
    BACKUP = 'backup'


class EndpointConfig(BaseModel):
    """RPC endpoint configuration model."""

    url: str
    role: EndpointRole = EndpointRole.PRIMARY
    api_key: Optional[str] = None


class ConnectionLimits(BaseModel):
    """Connection limits configuration model."""

    max_connections: int = 100
    max_keepalive_connections: int = 50
    keepalive_expiry: int = 300


class ClassificationRules(BaseModel):
    """Rules deciding whether an RPC failure is worth retrying."""

    model_config = ConfigDict(frozen=True)

    transient_http_statuses: List[int] = [408, 429, 500, 502, 503, 504]
    # matched against the error's `cause.name` and `name` fields
    transient_rpc_errors: List[str] = [
        'TIMEOUT_ERROR',
        'REQUEST_ROUTED',
        'NO_SYNCED_BLOCKS',
        'NOT_SYNCED_YET',
        'UNAVAILABLE_SHARD',
        'UNKNOWN_BLOCK',
        'INTERNAL_ERROR',
    ]
    critical_rpc_errors: List[str] = [
        'INVALID_TRANSACTION',
        'UNKNOWN_TRANSACTION',
        'DOES_NOT_TRACK_SHARD',
        'INVALID_ACCOUNT',
        'UNKNOWN_ACCOUNT',
        'UNKNOWN_ACCESS_KEY',
        'NO_CONTRACT_CODE',
        'CONTRACT_EXECUTION_ERROR',
        'TOO_LARGE_CONTRACT_STATE',
        'GARBAGE_COLLECTED_BLOCK',
        'PARSE_ERROR',
        'REQUEST_VALIDATION_ERROR',
    ]
    critical_rpc_codes: List[int] = [-32700, -32600, -32601, -32602]
    unknown_rpc_error_is_critical: bool = False


class RetryPolicy(BaseModel):
    """Immutable retry configuration consumed per logical call."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=5, ge=1)
    base_backoff: float = Field(default=0.5, gt=0)
    max_backoff: float = Field(default=10.0, gt=0)
    classification_rules: ClassificationRules = ClassificationRules()

    @model_validator(mode='after')
    def check_backoff_bounds(self):
        if self.max_backoff < self.base_backoff:
            raise ValueError('max_backoff must be greater than or equal to base_backoff')
        return self


class RotationPolicy(str, Enum):
    ROUND_ROBIN = 'round_robin'
    LEAST_RECENTLY_USED = 'least_recently_used'


class KeyPoolSettings(BaseModel):
    """Key pool behaviour configuration model."""

    rotation_policy: RotationPolicy = RotationPolicy.ROUND_ROBIN
    block_when_exhausted: bool = False
    # seconds, None waits forever when blocking
    reserve_timeout: Optional[float] = Field(default=None, gt=0)


class RPCConfigBase(BaseModel):
    """Base RPC configuration model."""

    endpoints: List[EndpointConfig]
    retry: RetryPolicy = RetryPolicy()
    request_time_out: int = 15
    connection_limits: ConnectionLimits = ConnectionLimits()

    @model_validator(mode='after')
    def check_endpoints(self):
        if not self.endpoints:
            raise ValueError('at least one endpoint must be configured')
        seen_backup = False
        for endpoint in self.endpoints:
            if endpoint.role == EndpointRole.BACKUP:
                seen_backup = True
            elif seen_backup:
                raise ValueError('primary endpoints must be listed before backup endpoints')
        return self


class TxHelperSettings(RPCConfigBase):
    """Full client configuration model."""

    key_pool: KeyPoolSettings = KeyPoolSettings()
    wait_until: str = 'EXECUTED_OPTIMISTIC'
    finality: str = 'final'


class LoggingConfig(BaseModel):
    """Library-scoped logging configuration model."""

    log_dir: Optional[str] = None
    file_levels: Dict[str, bool] = {
        'INFO': True,
        'WARNING': True,
        'ERROR': True,
        'CRITICAL': True,
    }
    console_levels: Dict[str, str] = {}
    enable_console_logging: bool = False
    format: str = '{time:MMMM D, YYYY > HH:mm:ss!UTC} | {level} | {extra[module]} | {message}'
    rotation: str = '100 MB'
    retention: str = '7 days'
    compression: str = 'zip'
