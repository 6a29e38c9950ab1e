import json


class TxHelperError(Exception):
    """Base class for every error raised by tx_helper."""


class RPCException(TxHelperError):
    """
    Structured error raised by the RPC transport.

    Args:
        request: The JSON-RPC request (or batch) that failed.
        response: The raw response, if one was received.
        underlying_exception: The exception or RPC error object behind this failure.
        extra_info: Free-form context used in log lines and messages.
    """

    def __init__(self, request, response, underlying_exception, extra_info):
        self.request = request
        self.response = response
        self.underlying_exception = underlying_exception
        self.extra_info = extra_info
        super().__init__(str(extra_info))

    def to_dict(self):
        return {
            'request': self.request,
            'response': self.response,
            'extra_info': self.extra_info,
            'exception': str(self.underlying_exception),
        }

    def __str__(self):
        return json.dumps(self.to_dict(), default=str)

    def __repr__(self):
        return f'{type(self).__name__}({self.extra_info!r})'


class TransientRPCError(RPCException):
    """Infrastructure-level failure worth retrying (timeouts, 5xx, node not synced)."""


class CriticalRPCError(RPCException):
    """
    Application or protocol-level rejection. Retrying cannot help.

    `dispatched` is True when an earlier attempt of the same call may have
    reached a server before this one was rejected.
    """

    dispatched = False


class EndpointDownError(RPCException):
    """The current endpoint could not be reached at all (connection refused, DNS failure)."""


class RetriesExhausted(RPCException):
    """
    Raised when a logical call used up its attempt budget.

    `dispatched` is False only when no attempt ever reached a server, which
    lets callers tell "never sent" apart from "maybe sent".
    """

    def __init__(self, request, last_error, attempts, dispatched):
        self.last_error = last_error
        self.attempts = attempts
        self.dispatched = dispatched
        super().__init__(
            request=request,
            response=getattr(last_error, 'response', None),
            underlying_exception=last_error,
            extra_info=f'RPC_RETRIES_EXHAUSTED after {attempts} attempts: {last_error!r}',
        )


class MalformedBatchResponse(RPCException):
    """The composite response cannot be matched to its requests by position."""


class KeyPoolError(TxHelperError):
    pass


class DuplicateKey(KeyPoolError):
    pass


class NoAvailableKey(KeyPoolError):
    pass


class UnknownKey(KeyPoolError):
    pass


class SlotStateError(KeyPoolError):
    """Misuse of the pool, e.g. committing a slot that is not reserved."""


class SignerError(TxHelperError):
    pass


class SigningUnavailable(SignerError):
    pass


class UserRejected(SignerError):
    pass


class SubmitError(TxHelperError):
    """Terminal failure of a transaction submission."""

    def __init__(self, message, public_key=None, nonce=None, cause=None):
        self.public_key = public_key
        self.nonce = nonce
        self.cause = cause
        super().__init__(message)


class SigningFailed(SubmitError):
    pass


class TransactionRejected(SubmitError):
    """The network definitively refused the transaction; its nonce was not consumed."""


class TransactionNotSent(SubmitError):
    """Every attempt failed before reaching an endpoint; its nonce was not consumed."""


class OutcomeUnknown(SubmitError):
    """
    The transaction may or may not have been accepted.

    The caller must poll chain state to resolve it; the key stays out of
    rotation until its nonce is reconciled with the network.
    """
