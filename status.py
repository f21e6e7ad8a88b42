import asyncio

from tqdm import tqdm

from broker import compute_progress
from chain import Web3ChainReader
from config import load_config
from database import init_db
from errors import ChainReadError
from store import ContractRegistry, ListenerStore


async def collect_status(chain, contracts, listeners):
    """One row per listener: contract, listener, current height and progress."""
    heights = {}
    rows = []
    for contract in contracts.list():
        if contract.network not in heights:
            try:
                heights[contract.network] = await chain.current_height(contract.network)
            except ChainReadError as exc:
                print(f"Cannot read height of network {contract.network}: {exc}")
                heights[contract.network] = None
        current_height = heights[contract.network]

        for listener in listeners.list(contract_id=contract.id):
            progress = None
            if current_height is not None:
                progress = compute_progress(listener.sync_height, contract.start_height, current_height)
            rows.append((contract, listener, current_height, progress))
    return rows


def print_status(rows):
    for contract, listener, current_height, progress in rows:
        label = f"{contract.name}.{listener.name} ({contract.network})"
        if progress is None:
            print(f"{label}: {listener.sync_height}/?")
            continue
        with tqdm(total=100, desc=label, bar_format='{desc}: {bar} {n:.0f}% {postfix}') as bar:
            bar.set_postfix_str(f"{listener.sync_height}/{current_height}")
            bar.update(progress)


if __name__ == "__main__":
    cfg = load_config()
    Session = init_db(cfg.get('database_url', 'sqlite:///events.db'))
    chain = Web3ChainReader(cfg)
    try:
        print_status(asyncio.run(collect_status(chain, ContractRegistry(Session), ListenerStore(Session))))
    finally:
        chain.close()
