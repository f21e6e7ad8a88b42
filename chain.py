import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor

import requests
from web3 import Web3, HTTPProvider
from web3.exceptions import Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware

from config import get_chain, get_rpc
from errors import ChainReadError

logger = logging.getLogger(__name__)

READ_ERRORS = (Web3Exception, requests.RequestException, OSError, ValueError)


class ChainReader:
    """What the sync engine needs from a blockchain node.

    Implementations must raise ChainReadError for any failure to serve a
    request so callers can retry it.
    """

    async def current_height(self, network):
        raise NotImplementedError

    async def get_logs(self, network, address, topics, from_height, to_height):
        raise NotImplementedError

    async def get_block_hash(self, network, height):
        raise NotImplementedError

    async def is_still_canonical(self, network, height, observed_hash):
        """Whether the block at height still has the hash seen earlier."""
        return (await self.get_block_hash(network, height)) == observed_hash


class Web3ChainReader(ChainReader):
    """Chain reader over web3 HTTP providers, one per configured chain."""

    def __init__(self, cfg, max_workers=10):
        self.cfg = cfg
        self.executor = ThreadPoolExecutor(max_workers=max_workers)
        self._web3 = {}

    def web3(self, network):
        if network not in self._web3:
            rpc = get_rpc(self.cfg, network)
            if rpc is None:
                raise ChainReadError(f"no rpc_url configured for network {network}")
            w3 = Web3(HTTPProvider(rpc))
            chain = get_chain(self.cfg, network)
            # Required for PoA chains whose extraData exceeds 32 bytes
            if chain.get('poa', False):
                w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
            self._web3[network] = w3
        return self._web3[network]

    async def _call(self, network, description, fn):
        loop = asyncio.get_running_loop()
        w3 = self.web3(network)
        try:
            return await loop.run_in_executor(self.executor, lambda: fn(w3))
        except READ_ERRORS as exc:
            logger.debug("Chain read failed on network %s (%s): %s", network, description, exc)
            raise ChainReadError(f"{description} on network {network} failed: {exc}") from exc

    async def current_height(self, network):
        return await self._call(network, "block_number", lambda w3: w3.eth.block_number)

    async def get_logs(self, network, address, topics, from_height, to_height):
        filter_params = {
            "fromBlock": from_height,
            "toBlock": to_height,
            "address": Web3.to_checksum_address(address),
            "topics": topics,
        }
        return await self._call(
            network, f"get_logs {from_height}-{to_height}", lambda w3: w3.eth.get_logs(filter_params))

    async def get_block_hash(self, network, height):
        block = await self._call(network, f"get_block {height}", lambda w3: w3.eth.get_block(height))
        return Web3.to_hex(block['hash'])

    def close(self):
        self.executor.shutdown(wait=False)
