import os
from typing import NamedTuple

import yaml
from dotenv import load_dotenv

DEFAULT_CONFIG_PATH = "config.yml"

SYNC_DEFAULTS = {
    'confirmations': 12,
    'chunk_size': 1000,
    'poll_interval': 15.0,
    'backoff_base': 1.0,
    'backoff_max': 60.0,
    'checkpoint_retention': 64,
}


class SyncPolicy(NamedTuple):
    confirmations: int
    chunk_size: int
    poll_interval: float
    backoff_base: float
    backoff_max: float
    checkpoint_retention: int


def load_config(path=None):
    load_dotenv()
    path = path or os.getenv("INDEXER_CONFIG", DEFAULT_CONFIG_PATH)
    with open(path, 'r') as ymlfile:
        # ${VAR} references are filled from the environment
        return yaml.safe_load(os.path.expandvars(ymlfile.read())) or {}


def get_chain(cfg, chain_id):
    for chain in cfg.get('chains', []):
        if chain['id'] == chain_id:
            return chain
    return None


def get_rpc(cfg, chain_id):
    chain = get_chain(cfg, chain_id)
    if chain is None:
        return None
    return chain['rpc_url']


def policy_for(cfg, chain_id):
    """Sync defaults merged with the per-chain overrides for chain_id."""
    merged = dict(SYNC_DEFAULTS)
    merged.update(cfg.get('sync') or {})
    chain = get_chain(cfg, chain_id) or {}
    merged.update({key: chain[key] for key in SYNC_DEFAULTS if key in chain})

    policy = SyncPolicy(
        confirmations=int(merged['confirmations']),
        chunk_size=int(merged['chunk_size']),
        poll_interval=float(merged['poll_interval']),
        backoff_base=float(merged['backoff_base']),
        backoff_max=float(merged['backoff_max']),
        checkpoint_retention=int(merged['checkpoint_retention']),
    )
    if policy.chunk_size < 1:
        raise ValueError(f"chunk_size must be positive for chain {chain_id}")
    if policy.confirmations < 0:
        raise ValueError(f"confirmations must not be negative for chain {chain_id}")
    return policy
