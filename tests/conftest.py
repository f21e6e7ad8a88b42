import asyncio
import json
import os
import sys

import pytest
from eth_abi import encode
from hexbytes import HexBytes
from web3 import Web3
from web3.datastructures import AttributeDict

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, ROOT)

from chain import ChainReader
from config import SyncPolicy
from database import init_db
from errors import ChainReadError
from store import ContractRegistry, ListenerStore

with open(os.path.join(ROOT, "erc20.abi.json")) as f:
    ERC20_ABI = json.load(f)

TOKEN = Web3.to_checksum_address("0x" + "11" * 20)
ALICE = Web3.to_checksum_address("0x" + "aa" * 20)
BOB = Web3.to_checksum_address("0x" + "bb" * 20)
TRANSFER_TOPIC = Web3.to_hex(Web3.keccak(text="Transfer(address,address,uint256)"))
APPROVAL_TOPIC = Web3.to_hex(Web3.keccak(text="Approval(address,address,uint256)"))


def make_log(block, log_index, value=1, topic=TRANSFER_TOPIC, address=TOKEN, data=None, tx=None):
    tx = tx or Web3.keccak(text=f"tx-{block}-{log_index}")
    return AttributeDict({
        "address": address,
        "topics": [
            HexBytes(topic),
            HexBytes(encode(["address"], [ALICE])),
            HexBytes(encode(["address"], [BOB])),
        ],
        "data": HexBytes(encode(["uint256"], [value]) if data is None else data),
        "blockNumber": block,
        "blockHash": Web3.keccak(text=f"block-{block}"),
        "transactionHash": HexBytes(tx),
        "transactionIndex": 0,
        "logIndex": log_index,
        "removed": False,
    })


class FakeChain(ChainReader):
    """Scripted chain: a head height, a set of logs and forkable block hashes."""

    def __init__(self, head=250):
        self.head = head
        self.logs = []
        self.fork_from = None
        self.fork = 0
        self.log_failures = 0
        self.log_calls = []
        self.unstable = False
        self.hash_reads = 0

    def reorg(self, from_height):
        self.fork_from = from_height
        self.fork += 1

    async def current_height(self, network):
        return self.head

    async def get_logs(self, network, address, topics, from_height, to_height):
        self.log_calls.append((from_height, to_height))
        if self.log_failures:
            self.log_failures -= 1
            raise ChainReadError("connection reset")
        return [
            log for log in self.logs
            if log["address"].lower() == address.lower()
            and Web3.to_hex(log["topics"][0]) == topics[0]
            and from_height <= log["blockNumber"] <= to_height
        ]

    async def get_block_hash(self, network, height):
        self.hash_reads += 1
        if self.unstable:
            # every read sees a different block, as if the chain kept reorganising
            return Web3.to_hex(Web3.keccak(text=f"{network}:{height}:read-{self.hash_reads}"))
        fork = self.fork if self.fork_from is not None and height >= self.fork_from else 0
        return Web3.to_hex(Web3.keccak(text=f"{network}:{height}:{fork}"))


async def wait_until(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def Session(tmp_path):
    return init_db(f"sqlite:///{tmp_path / 'events.db'}")


@pytest.fixture
def contracts(Session):
    return ContractRegistry(Session)


@pytest.fixture
def listeners(Session):
    return ListenerStore(Session)


@pytest.fixture
def contract(contracts):
    return contracts.create(TOKEN, 1, "Token", 100, abi=ERC20_ABI)


@pytest.fixture
def chain():
    return FakeChain(head=250)


@pytest.fixture
def policy():
    return SyncPolicy(confirmations=10, chunk_size=50, poll_interval=0.05,
                      backoff_base=0.01, backoff_max=0.05, checkpoint_retention=64)


@pytest.fixture
def cfg():
    return {
        "sync": {"confirmations": 10, "chunk_size": 50, "poll_interval": 0.05,
                 "backoff_base": 0.01, "backoff_max": 0.05},
        "chains": [{"id": 1, "name": "testnet", "rpc_url": "http://localhost:8545"}],
    }
