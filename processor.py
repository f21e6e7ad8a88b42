import json
import logging
from typing import NamedTuple

from eth_abi.exceptions import DecodingError
from eth_utils import event_abi_to_log_topic
from hexbytes import HexBytes
from web3 import Web3
from web3.datastructures import AttributeDict
from web3.exceptions import Web3Exception

from errors import ChainReadError, DecodeError

logger = logging.getLogger(__name__)

DECODE_ERRORS = (Web3Exception, DecodingError, KeyError, TypeError, ValueError)


class EventSignature(NamedTuple):
    name: str
    topic: str
    abi: dict


class ContractEvents:
    """Event signatures of one contract ABI, keyed by event name."""

    def __init__(self, abi):
        self.abi = abi or []
        self.signatures = {}
        for entry in self.abi:
            if entry.get('type') != 'event' or entry['name'] in self.signatures:
                continue
            topic = Web3.to_hex(event_abi_to_log_topic(entry))
            self.signatures[entry['name']] = EventSignature(entry['name'], topic, entry)
        self._contract = Web3().eth.contract(abi=self.abi)

    def __contains__(self, name):
        return name in self.signatures

    def signature(self, name):
        try:
            return self.signatures[name]
        except KeyError:
            raise DecodeError(f"event {name!r} is not in the contract ABI") from None

    def decode(self, name, log):
        return getattr(self._contract.events, name)().process_log(log)


def to_json_value(value):
    if isinstance(value, (bytes, bytearray, HexBytes)):
        return Web3.to_hex(value)
    if isinstance(value, (AttributeDict, dict)):
        return {key: to_json_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json_value(item) for item in value]
    return value


class EventProcessor:
    """Fetches a listener's logs for a block range and stores them."""

    def __init__(self, chain, listeners):
        self.chain = chain
        self.listeners = listeners
        self._events = {}

    def events_for(self, contract):
        key = (contract.id, json.dumps(contract.abi, sort_keys=True))
        if key not in self._events:
            self._events[key] = ContractEvents(contract.abi)
        return self._events[key]

    async def fetch(self, listener, contract, block_range):
        """Decoded records and the upper block hash for block_range."""
        events = self.events_for(contract)
        signature = events.signature(listener.name)

        block_hash = await self.chain.get_block_hash(contract.network, block_range.end)
        logs = await self.chain.get_logs(
            contract.network, contract.address, [signature.topic], block_range.start, block_range.end)
        # The upper block must not have been replaced while the logs were read
        if not await self.chain.is_still_canonical(contract.network, block_range.end, block_hash):
            raise ChainReadError(f"block {block_range.end} changed while reading {block_range}")

        records = []
        for log in logs:
            if log.get('removed'):
                raise ChainReadError(f"node returned a removed log in {block_range}")
            try:
                entry = events.decode(listener.name, log)
            except DECODE_ERRORS as exc:
                raise DecodeError(
                    f"cannot decode {listener.name} log at block {log.get('blockNumber')} "
                    f"index {log.get('logIndex')} for {contract.address}: {exc}"
                ) from exc
            records.append({
                'block_height': entry['blockNumber'],
                'transaction_hash': Web3.to_hex(entry['transactionHash']),
                'log_index': entry['logIndex'],
                'decoded_args': to_json_value(entry['args']),
            })
        return records, block_hash

    def persist(self, listener, records, block_range, block_hash=None):
        inserted = self.listeners.commit_range(listener.id, records, block_range.end, block_hash)
        logger.debug("Listener %s stored %d new of %d records in %s",
                     listener.id, inserted, len(records), block_range)
        return inserted

    async def process(self, listener, contract, block_range):
        records, block_hash = await self.fetch(listener, contract, block_range)
        self.persist(listener, records, block_range, block_hash)
        return len(records), block_range.end
