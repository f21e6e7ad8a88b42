import asyncio
import logging

from config import policy_for
from errors import BrokerFault, StoreError
from processor import EventProcessor
from worker import SyncWorker

logger = logging.getLogger(__name__)


def compute_progress(sync_height, start_height, current_height):
    """Percentage of the contract's history a listener has covered, in [0, 100]."""
    if current_height == start_height:
        return 0.0
    progress = (sync_height - start_height) / (current_height - start_height) * 100
    return min(max(progress, 0.0), 100.0)


class Broker:
    """Runs one sync worker task per event listener."""

    def __init__(self, chain, contracts, listeners, cfg):
        self.chain = chain
        self.contracts = contracts
        self.listeners = listeners
        self.cfg = cfg
        self.processor = EventProcessor(chain, listeners)
        self.workers = {}
        self._tasks = {}
        self._lock = asyncio.Lock()
        self.running = False

    async def start(self):
        async with self._lock:
            spawned = []
            try:
                for listener in self.listeners.list():
                    # workers halted on a fault are kept until add_listener replaces them
                    if listener.id in self.workers:
                        continue
                    self._spawn(listener)
                    spawned.append(listener.id)
            except StoreError as exc:
                await self._halt(spawned)
                raise BrokerFault(f"cannot load listeners: {exc}") from exc
            self.running = True
        logger.info("Broker started with %d listeners", len(self._tasks))

    async def _halt(self, listener_ids):
        tasks = []
        for listener_id in listener_ids:
            self.workers.pop(listener_id).stop()
            tasks.append(self._tasks.pop(listener_id))
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def stop(self):
        async with self._lock:
            for worker in self.workers.values():
                worker.stop()
            if self._tasks:
                await asyncio.gather(*self._tasks.values(), return_exceptions=True)
            self.workers.clear()
            self._tasks.clear()
            self.running = False
        logger.info("Broker stopped")

    async def add_listener(self, listener_id):
        async with self._lock:
            try:
                listener = self.listeners.get(listener_id)
                self._spawn(listener)
            except StoreError as exc:
                raise BrokerFault(f"cannot add listener {listener_id}: {exc}") from exc

    async def remove_listener(self, listener_id):
        async with self._lock:
            worker = self.workers.pop(listener_id, None)
            task = self._tasks.pop(listener_id, None)
            if worker is None:
                return
            worker.stop()
            await asyncio.gather(task, return_exceptions=True)
        logger.info("Removed worker for listener %s", listener_id)

    def _spawn(self, listener):
        task = self._tasks.get(listener.id)
        if task is not None and not task.done():
            return self.workers[listener.id]

        contract = self.contracts.get(listener.contract_id)
        worker = SyncWorker(
            listener.id, self.chain, self.contracts, self.listeners, self.processor,
            policy_for(self.cfg, contract.network),
        )
        self.workers[listener.id] = worker
        self._tasks[listener.id] = asyncio.create_task(worker.run(), name=f"sync-{listener.id}")
        return worker

    def check_now(self, listener_id):
        worker = self.workers.get(listener_id)
        if worker is not None:
            worker.check_now()

    def faults(self):
        """Listener ids mapped to the error that halted their worker."""
        return {listener_id: worker.fault for listener_id, worker in self.workers.items() if worker.fault}

    def get_sync_height(self, listener_id):
        return self.listeners.get_sync_height(listener_id)

    async def get_current_height(self, network):
        return await self.chain.current_height(network)

    async def get_progress(self, listener_id):
        listener = self.listeners.get(listener_id)
        contract = self.contracts.get(listener.contract_id)
        current_height = await self.get_current_height(contract.network)
        return compute_progress(listener.sync_height, contract.start_height, current_height)
