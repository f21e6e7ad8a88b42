class IndexerError(Exception):
    pass


class ChainReadError(IndexerError):
    """The chain reader could not serve a request. Transient."""


class DecodeError(IndexerError):
    """A matching log could not be decoded against the stored ABI."""


class StoreError(IndexerError):
    """The persistence layer failed. Transient."""


class ReorgDetected(IndexerError):
    def __init__(self, height, rollback_to):
        super().__init__(f"block at height {height} is no longer canonical, rolling back to {rollback_to}")
        self.height = height
        self.rollback_to = rollback_to


class BrokerFault(IndexerError):
    """The broker could not keep its worker set in line with the store."""


class NotFoundError(IndexerError):
    pass


class ValidationError(IndexerError, ValueError):
    pass


class ConflictError(IndexerError):
    pass
