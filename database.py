import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    create_engine, event, Column, String, Integer, BigInteger, DateTime, JSON, ForeignKey,
    UniqueConstraint, Index,
)
from sqlalchemy.orm import sessionmaker, declarative_base, relationship

Base = declarative_base()


def _now():
    return datetime.now(timezone.utc)


def _uuid():
    return str(uuid.uuid4())


class Contract(Base):
    __tablename__ = 'contracts'
    __table_args__ = (UniqueConstraint('address', 'network', name='uq_contracts_address_network'),)

    id = Column(String(36), primary_key=True, default=_uuid)
    address = Column(String(42), nullable=False)
    network = Column(Integer, nullable=False)
    name = Column(String(512), nullable=False)
    abi = Column(JSON, nullable=True)
    start_height = Column(BigInteger, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    listeners = relationship('EventListener', back_populates='contract',
                             cascade='all, delete-orphan', passive_deletes=True)


class EventListener(Base):
    __tablename__ = 'event_listeners'

    id = Column(String(36), primary_key=True, default=_uuid)
    contract_id = Column(String(36), ForeignKey('contracts.id', ondelete='CASCADE'), nullable=False, index=True)
    name = Column(String(512), nullable=False)
    sync_height = Column(BigInteger, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    contract = relationship('Contract', back_populates='listeners')
    records = relationship('EventRecord', back_populates='listener',
                           cascade='all, delete-orphan', passive_deletes=True)
    checkpoints = relationship('SyncCheckpoint', cascade='all, delete-orphan', passive_deletes=True)


class EventRecord(Base):
    __tablename__ = 'event_records'
    __table_args__ = (
        UniqueConstraint('listener_id', 'transaction_hash', 'log_index', name='uq_event_records_log'),
        Index('ix_event_records_listener_height', 'listener_id', 'block_height'),
    )

    id = Column(Integer, primary_key=True)
    listener_id = Column(String(36), ForeignKey('event_listeners.id', ondelete='CASCADE'), nullable=False)
    block_height = Column(BigInteger, nullable=False)
    transaction_hash = Column(String(66), nullable=False)
    log_index = Column(Integer, nullable=False)
    decoded_args = Column(JSON, nullable=False)

    listener = relationship('EventListener', back_populates='records')


class SyncCheckpoint(Base):
    """Block hash observed at the upper bound of a committed range."""
    __tablename__ = 'sync_checkpoints'

    listener_id = Column(String(36), ForeignKey('event_listeners.id', ondelete='CASCADE'), primary_key=True)
    height = Column(BigInteger, primary_key=True)
    block_hash = Column(String(66), nullable=False)


def _enable_sqlite_fks(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute('PRAGMA foreign_keys=ON')
    cursor.close()


def init_db(url='sqlite:///events.db', **engine_kwargs):
    engine = create_engine(url, **engine_kwargs)
    if engine.dialect.name == 'sqlite':
        event.listen(engine, 'connect', _enable_sqlite_fks)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)
