from typing import NamedTuple


class BlockRange(NamedTuple):
    start: int
    end: int

    def __len__(self):
        return self.end - self.start + 1

    def __str__(self):
        return f"[{self.start}, {self.end}]"


def plan_next_range(listener, contract, chain_head, confirmation_depth, max_batch_size):
    """Next block range for listener, or None when there is nothing safe to scan.

    Only blocks at least confirmation_depth below chain_head are scanned and
    a range never spans more than max_batch_size blocks. A listener whose
    height sits below the contract's start height starts at the start height.
    """
    if max_batch_size < 1:
        raise ValueError("max_batch_size must be positive")

    synced = max(listener.sync_height, contract.start_height - 1)
    safe_head = chain_head - confirmation_depth
    if safe_head <= synced:
        return None

    return BlockRange(synced + 1, min(safe_head, synced + max_batch_size))
