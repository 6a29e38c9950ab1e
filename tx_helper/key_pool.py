"""
Access key pool with per-key nonce tracking.

Signing several transactions at once from one account races on the account's
nonce. The pool spreads concurrent submissions over multiple keys of the same
account and is the only place nonces are handed out: every key is exclusively
reserved by at most one in-flight transaction, and a key whose last submission
ended in an unknown state is kept out of rotation until its nonce has been
re-read from the network.
"""
import asyncio
import itertools
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from tx_helper.utils.default_logger import get_logger
from tx_helper.utils.exceptions import DuplicateKey
from tx_helper.utils.exceptions import NoAvailableKey
from tx_helper.utils.exceptions import SlotStateError
from tx_helper.utils.exceptions import UnknownKey
from tx_helper.utils.models.settings_model import KeyPoolSettings
from tx_helper.utils.models.settings_model import RotationPolicy


logger = get_logger('KeyPool')

NonceFetcher = Callable[[str, str], Awaitable[int]]


class SlotState(str, Enum):
    FREE = 'free'
    RESERVED = 'reserved'
    PENDING_CONFIRM = 'pending_confirm'


@dataclass
class AccountKeySlot:
    public_key: str
    account_id: str
    # None until the nonce has been read from the network
    last_known_nonce: Optional[int]
    reservation_state: SlotState = SlotState.FREE
    last_used: int = 0
    # bumped on every state change
    generation: int = 0

    def set_state(self, state: SlotState):
        self.reservation_state = state
        self.generation += 1


class KeyReservation:
    """
    One reserved key+nonce pair, finalized exactly once.

    Returned by `KeyPool.reserved()`; leaving the `async with` block without
    calling one of the terminal methods releases the key.
    """

    def __init__(self, pool: 'KeyPool', account_id: str, public_key: str, nonce: int):
        self._pool = pool
        self.account_id = account_id
        self.public_key = public_key
        self.nonce = nonce
        self.finalized = False

    def _finalize(self):
        if self.finalized:
            raise SlotStateError(f'reservation of {self.public_key} nonce {self.nonce} already finalized')
        self.finalized = True

    def commit(self, confirmed_nonce: Optional[int] = None):
        self._finalize()
        self._pool.commit(self.public_key, self.nonce if confirmed_nonce is None else confirmed_nonce)

    def release(self):
        self._finalize()
        self._pool.release(self.public_key)

    def release_uncertain(self):
        self._finalize()
        self._pool.release_uncertain(self.public_key)

    def __repr__(self):
        return f'KeyReservation(account_id={self.account_id!r}, public_key={self.public_key!r}, nonce={self.nonce})'


class KeyPool:

    def __init__(self, settings: Optional[KeyPoolSettings] = None, nonce_fetcher: Optional[NonceFetcher] = None):
        """
        Args:
            settings (KeyPoolSettings, optional): Rotation and blocking behaviour.
            nonce_fetcher (callable, optional): `async (account_id, public_key) -> int` reading
                the authoritative nonce from the network. Needed to bring PendingConfirm keys
                back into rotation.
        """
        self._settings = settings or KeyPoolSettings()
        self._nonce_fetcher = nonce_fetcher
        self._accounts: Dict[str, List[AccountKeySlot]] = {}
        self._slots: Dict[str, AccountKeySlot] = {}
        self._cursors: Dict[str, int] = {}
        self._waiters: Dict[str, List[asyncio.Future]] = {}
        self._reconciling = set()
        self._use_counter = itertools.count(1)
        self._logger = logger

    @property
    def settings(self) -> KeyPoolSettings:
        return self._settings

    def set_nonce_fetcher(self, nonce_fetcher: NonceFetcher):
        self._nonce_fetcher = nonce_fetcher

    def register(self, account_id: str, public_key: str, initial_nonce: Optional[int] = None):
        """
        Adds a key to the pool.

        Without `initial_nonce` the key starts in PendingConfirm and joins the
        rotation once its nonce has been read from the network.

        Raises:
            DuplicateKey: If the key is already registered.
        """
        if public_key in self._slots:
            existing = self._slots[public_key]
            raise DuplicateKey(
                f'key {public_key} already registered for account {existing.account_id}',
            )
        if initial_nonce is not None and initial_nonce < 0:
            raise ValueError('initial_nonce must be non-negative')

        state = SlotState.FREE if initial_nonce is not None else SlotState.PENDING_CONFIRM
        slot = AccountKeySlot(
            public_key=public_key,
            account_id=account_id,
            last_known_nonce=initial_nonce,
            reservation_state=state,
        )
        self._slots[public_key] = slot
        self._accounts.setdefault(account_id, []).append(slot)
        self._logger.debug('Registered key {} for account {} in state {}', public_key, account_id, state.value)
        if state == SlotState.FREE:
            self._wake_waiters(account_id)

    def deregister(self, public_key: str):
        slot = self._get_slot(public_key)
        if slot.reservation_state != SlotState.FREE:
            raise SlotStateError(
                f'cannot deregister key {public_key} while {slot.reservation_state.value}',
            )
        del self._slots[public_key]
        slots = self._accounts[slot.account_id]
        slots.remove(slot)
        if not slots:
            del self._accounts[slot.account_id]
            self._cursors.pop(slot.account_id, None)
        self._logger.debug('Deregistered key {} of account {}', public_key, slot.account_id)

    def slot(self, public_key: str) -> AccountKeySlot:
        return self._get_slot(public_key)

    def slots(self, account_id: str) -> List[AccountKeySlot]:
        return list(self._accounts.get(account_id, []))

    def free_count(self, account_id: str) -> int:
        return sum(1 for slot in self._accounts.get(account_id, []) if slot.reservation_state == SlotState.FREE)

    def _get_slot(self, public_key: str) -> AccountKeySlot:
        try:
            return self._slots[public_key]
        except KeyError:
            raise UnknownKey(f'key {public_key} is not registered') from None

    def _select_free_slot(self, account_id: str) -> Optional[AccountKeySlot]:
        slots = self._accounts.get(account_id)
        if not slots:
            raise NoAvailableKey(f'no keys registered for account {account_id}')

        if self._settings.rotation_policy == RotationPolicy.LEAST_RECENTLY_USED:
            free = [slot for slot in slots if slot.reservation_state == SlotState.FREE]
            if not free:
                return None
            return min(free, key=lambda slot: slot.last_used)

        start = self._cursors.get(account_id, 0)
        for offset in range(len(slots)):
            idx = (start + offset) % len(slots)
            if slots[idx].reservation_state == SlotState.FREE:
                self._cursors[account_id] = (idx + 1) % len(slots)
                return slots[idx]
        return None

    def _mark_reserved(self, slot: AccountKeySlot) -> Tuple[str, int]:
        slot.set_state(SlotState.RESERVED)
        slot.last_used = next(self._use_counter)
        nonce = slot.last_known_nonce + 1
        self._logger.debug('Reserved key {} of account {} with nonce {}', slot.public_key, slot.account_id, nonce)
        return slot.public_key, nonce

    def _has_pending(self, account_id: str) -> bool:
        return any(
            slot.reservation_state == SlotState.PENDING_CONFIRM and slot.public_key not in self._reconciling
            for slot in self._accounts.get(account_id, [])
        )

    async def reserve(self, account_id: str) -> Tuple[str, int]:
        """
        Reserves a free key of the account and returns it with the nonce to sign with.

        The returned nonce is `last_known_nonce + 1`; the slot's nonce only moves on `commit`.

        Returns:
            tuple: (public_key, nonce)

        Raises:
            NoAvailableKey: If no key is free and the pool does not block, or the wait timed out.
        """
        loop = asyncio.get_running_loop()
        timeout = self._settings.reserve_timeout
        deadline = None if timeout is None else loop.time() + timeout

        while True:
            slot = self._select_free_slot(account_id)
            if slot is not None:
                return self._mark_reserved(slot)

            reconcile_error = None
            if self._nonce_fetcher is not None and self._has_pending(account_id):
                try:
                    await self.reconcile_pending(account_id)
                except Exception as e:
                    reconcile_error = e
                    self._logger.warning(
                        'Could not reconcile pending keys of account {}: {}', account_id, e,
                    )
                else:
                    continue

            if not self._settings.block_when_exhausted:
                raise NoAvailableKey(
                    f'all {len(self._accounts[account_id])} keys of account {account_id} are in use',
                ) from reconcile_error

            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                raise NoAvailableKey(
                    f'timed out after {timeout}s waiting for a free key of account {account_id}',
                ) from reconcile_error

            waiter = loop.create_future()
            self._waiters.setdefault(account_id, []).append(waiter)
            self._logger.trace('Waiting for a free key of account {}', account_id)
            try:
                await asyncio.wait_for(waiter, timeout=remaining)
            except asyncio.TimeoutError:
                raise NoAvailableKey(
                    f'timed out after {timeout}s waiting for a free key of account {account_id}',
                ) from reconcile_error
            finally:
                waiters = self._waiters.get(account_id)
                if waiters and waiter in waiters:
                    waiters.remove(waiter)

    def _wake_waiters(self, account_id: str):
        for waiter in self._waiters.pop(account_id, []):
            if not waiter.done():
                waiter.set_result(None)

    def commit(self, public_key: str, confirmed_nonce: int):
        """
        Records a confirmed transaction and frees the key.

        Raises:
            SlotStateError: If the key is not in flight or the nonce does not move forward.
        """
        slot = self._get_slot(public_key)
        if slot.reservation_state == SlotState.FREE:
            self._logger.error('Commit of key {} that is not reserved', public_key)
            raise SlotStateError(f'key {public_key} is not reserved')
        if slot.last_known_nonce is not None and confirmed_nonce <= slot.last_known_nonce:
            raise SlotStateError(
                f'confirmed nonce {confirmed_nonce} for key {public_key} is not above '
                f'last known nonce {slot.last_known_nonce}',
            )
        slot.last_known_nonce = confirmed_nonce
        slot.set_state(SlotState.FREE)
        self._logger.debug('Committed nonce {} for key {}', confirmed_nonce, public_key)
        self._wake_waiters(slot.account_id)

    def release(self, public_key: str):
        """Frees a reserved key without consuming its nonce."""
        slot = self._get_slot(public_key)
        if slot.reservation_state != SlotState.RESERVED:
            self._logger.error('Release of key {} in state {}', public_key, slot.reservation_state.value)
            raise SlotStateError(f'key {public_key} is not reserved')
        slot.set_state(SlotState.FREE)
        self._logger.debug('Released key {} at nonce {}', public_key, slot.last_known_nonce)
        self._wake_waiters(slot.account_id)

    def release_uncertain(self, public_key: str):
        """Parks a reserved key until its nonce is re-read from the network."""
        slot = self._get_slot(public_key)
        if slot.reservation_state != SlotState.RESERVED:
            self._logger.error('Uncertain release of key {} in state {}', public_key, slot.reservation_state.value)
            raise SlotStateError(f'key {public_key} is not reserved')
        slot.set_state(SlotState.PENDING_CONFIRM)
        self._logger.warning('Key {} parked pending nonce reconciliation', public_key)

    async def reconcile(self, public_key: str) -> int:
        """
        Re-reads the key's nonce from the network and returns the key to rotation.

        The local nonce never moves backwards. A failed query leaves the key parked. A result
        read while the slot changed state underneath it is discarded.

        Returns:
            int: The nonce the key now carries.
        """
        slot = self._get_slot(public_key)
        if slot.reservation_state != SlotState.PENDING_CONFIRM:
            raise SlotStateError(f'key {public_key} is not pending confirmation')
        if self._nonce_fetcher is None:
            raise SlotStateError('no nonce fetcher configured for reconciliation')
        if public_key in self._reconciling:
            raise SlotStateError(f'key {public_key} is already being reconciled')

        generation = slot.generation
        self._reconciling.add(public_key)
        try:
            remote_nonce = await self._nonce_fetcher(slot.account_id, public_key)
        finally:
            self._reconciling.discard(public_key)

        if slot.generation != generation:
            # the slot changed hands while the query was in flight
            self._logger.debug('Discarding stale nonce {} read for key {}', remote_nonce, public_key)
            return slot.last_known_nonce
        if slot.last_known_nonce is None:
            slot.last_known_nonce = remote_nonce
        else:
            slot.last_known_nonce = max(slot.last_known_nonce, remote_nonce)
        slot.set_state(SlotState.FREE)
        self._logger.info('Reconciled key {} at nonce {}', public_key, slot.last_known_nonce)
        self._wake_waiters(slot.account_id)
        return slot.last_known_nonce

    async def reconcile_pending(self, account_id: Optional[str] = None) -> int:
        """
        Reconciles every parked key, optionally for one account only.

        Returns:
            int: Number of keys returned to rotation.

        Raises:
            Exception: The first fetch failure, after all keys were attempted.
        """
        if account_id is None:
            slots = list(self._slots.values())
        else:
            slots = self.slots(account_id)
        pending = [
            slot.public_key for slot in slots
            if slot.reservation_state == SlotState.PENDING_CONFIRM and slot.public_key not in self._reconciling
        ]
        if not pending:
            return 0

        results = await asyncio.gather(
            *(self.reconcile(public_key) for public_key in pending),
            return_exceptions=True,
        )
        errors = [result for result in results if isinstance(result, BaseException)]
        if errors:
            raise errors[0]
        return len(pending)

    @asynccontextmanager
    async def reserved(self, account_id: str):
        """
        Scoped reservation; the key is released unless finalized inside the block.

        Usage:
            async with pool.reserved('alice.near') as reservation:
                ...
                reservation.commit()
        """
        public_key, nonce = await self.reserve(account_id)
        reservation = KeyReservation(self, account_id, public_key, nonce)
        try:
            yield reservation
        finally:
            if not reservation.finalized:
                self._logger.debug('Reservation of key {} left without outcome, releasing', public_key)
                reservation.release()
