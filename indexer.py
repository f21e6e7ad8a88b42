import asyncio
import json
import logging

from broker import Broker
from chain import Web3ChainReader
from config import load_config
from database import init_db
from store import ContractRegistry, ListenerStore

logger = logging.getLogger(__name__)

DEFAULT_ABI_PATH = 'erc20.abi.json'


def load_abi(path):
    try:
        with open(path) as f:
            return json.load(f)
    except FileNotFoundError:
        raise Exception(f'ABI file not found: {path}')


def setup_chain(chain_cfg, contracts, listeners):
    """Register the contracts and listeners declared for a chain in config.yml."""
    for contract_cfg in chain_cfg.get('contracts', []):
        abi = load_abi(contract_cfg.get('abi', DEFAULT_ABI_PATH))
        contract = contracts.find(contract_cfg['address'], chain_cfg['id'])
        if contract is None:
            logger.info("Adding new contract %s", contract_cfg['address'])
            contract = contracts.create(
                address=contract_cfg['address'],
                network=chain_cfg['id'],
                name=contract_cfg.get('name') or contract_cfg['address'],
                start_height=contract_cfg.get('startblock', 0),
                abi=abi,
            )
        else:
            logger.info("Found existing contract %s", contract.address)
            if contract.abi != abi:
                contract = contracts.update(contract.id, abi=abi)

        existing = {listener.name for listener in listeners.list(contract_id=contract.id)}
        for event_name in contract_cfg.get('listeners', []):
            if event_name not in existing:
                listeners.create(contract.id, event_name)


async def index(cfg):
    Session = init_db(cfg.get('database_url', 'sqlite:///events.db'))
    contracts = ContractRegistry(Session)
    listeners = ListenerStore(Session)
    for chain_cfg in cfg.get('chains', []):
        setup_chain(chain_cfg, contracts, listeners)

    chain = Web3ChainReader(cfg)
    broker = Broker(chain, contracts, listeners, cfg)
    await broker.start()
    try:
        await asyncio.Event().wait()
    finally:
        await broker.stop()
        chain.close()


def main():
    cfg = load_config()
    logging.basicConfig(
        level=getattr(logging, str(cfg.get('log_level', 'INFO')).upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    try:
        asyncio.run(index(cfg))
    except KeyboardInterrupt:
        logger.info("Exiting gracefully...")


if __name__ == "__main__":
    main()
