"""Contract registry and listener store on top of the SQLAlchemy models.

Every public method runs in its own transaction. Objects handed back are
detached from their session; only their column attributes are loaded.
"""
import logging
from contextlib import contextmanager

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from web3 import Web3

from database import Contract, EventListener, EventRecord, SyncCheckpoint
from errors import ConflictError, NotFoundError, StoreError, ValidationError

logger = logging.getLogger(__name__)


def event_names(abi):
    return [entry['name'] for entry in abi or [] if entry.get('type') == 'event']


class _Repository:
    def __init__(self, Session):
        self.Session = Session

    @contextmanager
    def transaction(self):
        try:
            with self.Session.begin() as session:
                yield session
        except IntegrityError as exc:
            raise ConflictError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            raise StoreError(str(exc)) from exc

    @staticmethod
    def _get(session, model, ident):
        obj = session.get(model, ident)
        if obj is None:
            raise NotFoundError(f"{model.__name__} {ident} not found")
        return obj


class ContractRegistry(_Repository):

    @staticmethod
    def _checksum(address):
        try:
            return Web3.to_checksum_address(address)
        except ValueError as exc:
            raise ValidationError(f"invalid contract address {address!r}") from exc

    def create(self, address, network, name, start_height, abi=None):
        address = self._checksum(address)
        if start_height < 0:
            raise ValidationError("start height must not be negative")

        with self.transaction() as session:
            contract = Contract(address=address, network=network, name=name, abi=abi, start_height=start_height)
            session.add(contract)
        logger.info("Registered contract %s on network %s", address, network)
        return contract

    def get(self, contract_id):
        with self.transaction() as session:
            return self._get(session, Contract, contract_id)

    def find(self, address, network):
        with self.transaction() as session:
            return session.query(Contract).filter_by(
                address=self._checksum(address), network=network
            ).first()

    def list(self):
        with self.transaction() as session:
            return session.query(Contract).order_by(Contract.created_at).all()

    def update(self, contract_id, name=None, abi=None):
        with self.transaction() as session:
            contract = self._get(session, Contract, contract_id)
            if name is not None:
                contract.name = name
            if abi is not None:
                contract.abi = abi
        return contract

    def delete(self, contract_id):
        with self.transaction() as session:
            session.delete(self._get(session, Contract, contract_id))


class ListenerStore(_Repository):

    def create(self, contract_id, name, sync_height=None):
        with self.transaction() as session:
            contract = self._get(session, Contract, contract_id)
            if name not in event_names(contract.abi):
                raise ValidationError(f"contract {contract.address} has no event named {name!r}")
            if sync_height is None:
                sync_height = contract.start_height
            elif sync_height < contract.start_height:
                raise ValidationError(
                    f"sync height {sync_height} is below contract start height {contract.start_height}")
            listener = EventListener(contract_id=contract_id, name=name, sync_height=sync_height)
            session.add(listener)
        logger.info("Created listener %s for %s from height %s", listener.id, name, sync_height)
        return listener

    def get(self, listener_id):
        with self.transaction() as session:
            return self._get(session, EventListener, listener_id)

    def get_sync_height(self, listener_id):
        return self.get(listener_id).sync_height

    def list(self, contract_id=None, offset=0, limit=None):
        with self.transaction() as session:
            query = session.query(EventListener)
            if contract_id is not None:
                query = query.filter_by(contract_id=contract_id)
            query = query.order_by(EventListener.created_at, EventListener.id).offset(offset)
            if limit is not None:
                query = query.limit(limit)
            return query.all()

    def count(self, contract_id=None):
        with self.transaction() as session:
            query = session.query(func.count(EventListener.id))
            if contract_id is not None:
                query = query.filter(EventListener.contract_id == contract_id)
            return query.scalar()

    def update(self, listener_id, name=None, sync_height=None):
        """Rename a listener or reset its height.

        Lowering the height drops the records and checkpoints above it so
        the worker rebuilds them.
        """
        with self.transaction() as session:
            listener = self._get(session, EventListener, listener_id)
            contract = self._get(session, Contract, listener.contract_id)
            if name is not None:
                if name not in event_names(contract.abi):
                    raise ValidationError(f"contract {contract.address} has no event named {name!r}")
                listener.name = name
            if sync_height is not None:
                if sync_height < contract.start_height:
                    raise ValidationError(
                        f"sync height {sync_height} is below contract start height {contract.start_height}")
                if sync_height < listener.sync_height:
                    self._truncate(session, listener_id, sync_height)
                listener.sync_height = sync_height
        return listener

    def delete(self, listener_id):
        with self.transaction() as session:
            session.delete(self._get(session, EventListener, listener_id))

    def commit_range(self, listener_id, records, new_height, block_hash=None):
        """Store the records of a range and advance the listener to new_height.

        Records already stored under the same (transaction hash, log index)
        are skipped. Returns the number of rows inserted.
        """
        with self.transaction() as session:
            listener = self._get(session, EventListener, listener_id)
            hashes = {record['transaction_hash'] for record in records}
            seen = set()
            if hashes:
                seen = set(
                    session.query(EventRecord.transaction_hash, EventRecord.log_index)
                    .filter(EventRecord.listener_id == listener_id, EventRecord.transaction_hash.in_(hashes))
                    .all()
                )

            inserted = 0
            for record in records:
                key = (record['transaction_hash'], record['log_index'])
                if key in seen:
                    continue
                seen.add(key)
                session.add(EventRecord(listener_id=listener_id, **record))
                inserted += 1

            listener.sync_height = new_height
            if block_hash is not None:
                session.merge(SyncCheckpoint(listener_id=listener_id, height=new_height, block_hash=block_hash))
        return inserted

    def checkpoints(self, listener_id):
        """Checkpoints of a listener as (height, block_hash), newest first."""
        with self.transaction() as session:
            rows = (
                session.query(SyncCheckpoint.height, SyncCheckpoint.block_hash)
                .filter_by(listener_id=listener_id)
                .order_by(SyncCheckpoint.height.desc())
                .all()
            )
            return [tuple(row) for row in rows]

    def prune_checkpoints(self, listener_id, keep):
        with self.transaction() as session:
            stale = (
                session.query(SyncCheckpoint.height)
                .filter_by(listener_id=listener_id)
                .order_by(SyncCheckpoint.height.desc())
                .offset(keep)
                .all()
            )
            if stale:
                session.query(SyncCheckpoint).filter(
                    SyncCheckpoint.listener_id == listener_id,
                    SyncCheckpoint.height <= stale[0][0],
                ).delete(synchronize_session=False)
            return len(stale)

    def rollback_to(self, listener_id, height):
        """Reset a listener to height, deleting everything recorded above it."""
        with self.transaction() as session:
            listener = self._get(session, EventListener, listener_id)
            deleted = self._truncate(session, listener_id, height)
            listener.sync_height = height
        return deleted

    @staticmethod
    def _truncate(session, listener_id, height):
        deleted = session.query(EventRecord).filter(
            EventRecord.listener_id == listener_id, EventRecord.block_height > height
        ).delete(synchronize_session=False)
        session.query(SyncCheckpoint).filter(
            SyncCheckpoint.listener_id == listener_id, SyncCheckpoint.height > height
        ).delete(synchronize_session=False)
        return deleted

    def list_records(self, listener_id, offset=0, limit=None):
        with self.transaction() as session:
            query = (
                session.query(EventRecord)
                .filter_by(listener_id=listener_id)
                .order_by(EventRecord.block_height, EventRecord.log_index)
                .offset(offset)
            )
            if limit is not None:
                query = query.limit(limit)
            return query.all()

    def count_records(self, listener_id):
        with self.transaction() as session:
            return session.query(func.count(EventRecord.id)).filter_by(listener_id=listener_id).scalar()
