import asyncio
import enum
import logging

from errors import ChainReadError, ConflictError, DecodeError, NotFoundError, ReorgDetected, StoreError
from planner import plan_next_range

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (ChainReadError, StoreError, ConflictError)


class WorkerState(enum.Enum):
    IDLE = 'idle'
    PLANNING = 'planning'
    FETCHING = 'fetching'
    PERSISTING = 'persisting'
    ADVANCING = 'advancing'
    BACKOFF = 'backoff'
    STOPPED = 'stopped'


class SyncWorker:
    """Control loop advancing one listener's sync height.

    Each pass of step() plans a range, fetches and decodes its logs, commits
    them together with the new height and returns to idle. Read and store
    failures are retried with capped exponential backoff from the same
    range. A decode failure stops the worker and is kept in `fault`.
    """

    def __init__(self, listener_id, chain, contracts, listeners, processor, policy):
        self.listener_id = listener_id
        self.chain = chain
        self.contracts = contracts
        self.listeners = listeners
        self.processor = processor
        self.policy = policy

        self.state = WorkerState.IDLE
        self.sync_height = None
        self.chain_head = None
        self.fault = None
        self.failures = 0
        self._retry_range = None
        self._stopping = False
        self._wake = asyncio.Event()

    @property
    def stopping(self):
        return self._stopping

    def stop(self):
        self._stopping = True
        self._wake.set()

    def check_now(self):
        self._wake.set()

    def backoff_delay(self):
        return min(self.policy.backoff_base * 2 ** max(self.failures - 1, 0), self.policy.backoff_max)

    async def run(self):
        logger.info("Starting sync worker for listener %s", self.listener_id)
        try:
            while not self._stopping:
                try:
                    more = await self.step()
                except DecodeError as exc:
                    self.fault = exc
                    logger.error("Listener %s halted at height %s: %s", self.listener_id, self.sync_height, exc)
                    break
                except NotFoundError:
                    logger.info("Listener %s no longer exists", self.listener_id)
                    break
                except RETRYABLE_ERRORS as exc:
                    self.failures += 1
                    delay = self.backoff_delay()
                    self.state = WorkerState.BACKOFF
                    logger.warning("Listener %s failed (attempt %d), retrying in %.1fs: %s",
                                   self.listener_id, self.failures, delay, exc)
                    await self._sleep(delay)
                    continue

                self.failures = 0
                if not more and not self._stopping:
                    self.state = WorkerState.IDLE
                    await self._sleep(self.policy.poll_interval)
        finally:
            self.state = WorkerState.STOPPED
            logger.info("Sync worker for listener %s stopped", self.listener_id)

    async def step(self):
        """Run one planning to advancing pass. Returns True when more safe blocks remain."""
        self.state = WorkerState.PLANNING
        listener = self.listeners.get(self.listener_id)
        contract = self.contracts.get(listener.contract_id)
        self.sync_height = listener.sync_height

        try:
            await self._check_reorg(listener, contract)
        except ReorgDetected as exc:
            logger.warning("Listener %s: %s", listener.id, exc)
            deleted = self.listeners.rollback_to(listener.id, exc.rollback_to)
            logger.warning("Listener %s rolled back to %d, %d records removed", listener.id, exc.rollback_to, deleted)
            listener.sync_height = self.sync_height = exc.rollback_to
            self._retry_range = None

        self.chain_head = await self.chain.current_height(contract.network)
        block_range = plan_next_range(
            listener, contract, self.chain_head, self.policy.confirmations, self.policy.chunk_size)
        if block_range is None:
            logger.debug("Listener %s is caught up at %d (head %d)", listener.id, listener.sync_height, self.chain_head)
            return False
        if self._retry_range is not None and self._retry_range.start == block_range.start:
            block_range = self._retry_range
        self._retry_range = block_range

        if self._stopping:
            return False
        self.state = WorkerState.FETCHING
        records, block_hash = await self.processor.fetch(listener, contract, block_range)

        if self._stopping:
            return False
        self.state = WorkerState.PERSISTING
        self.processor.persist(listener, records, block_range, block_hash)
        self._retry_range = None

        self.state = WorkerState.ADVANCING
        self.sync_height = block_range.end
        logger.info("Listener %s (%s) synced %s with %d events, head %d",
                    listener.id, listener.name, block_range, len(records), self.chain_head)
        self.listeners.prune_checkpoints(listener.id, self.policy.checkpoint_retention)
        return block_range.end < self.chain_head - self.policy.confirmations

    async def _check_reorg(self, listener, contract):
        checkpoints = self.listeners.checkpoints(listener.id)
        if not checkpoints:
            return
        height, block_hash = checkpoints[0]
        if await self.chain.is_still_canonical(contract.network, height, block_hash):
            return

        rollback_to = contract.start_height
        for older_height, older_hash in checkpoints[1:]:
            if await self.chain.is_still_canonical(contract.network, older_height, older_hash):
                rollback_to = older_height
                break
        raise ReorgDetected(height, max(rollback_to, contract.start_height))

    async def _sleep(self, delay):
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()
