# File: evpark/infrastructure/repositories.py
"""
Repository Pattern Implementation for the tabular charger store

The engine sees the store as a handful of logical tables, each an ordered
collection of records keyed by a stable id (append, update-by-id, full scan),
plus two flat key/value tables (config and properties).

Storage Implementations:
1. InMemoryTableStore - for tests and throwaway runs; hands out copies
2. SQLAlchemyTableStore - relational storage (SQLite by default)

Both hand out detached copies, so a mutation is only visible after it has
been saved back through the repository.
"""

from abc import ABC, abstractmethod
from typing import TypeVar, Generic, Optional, List, Dict, Type, Callable, Iterator
from datetime import datetime
from contextlib import contextmanager
from pathlib import Path
import copy
import logging

from sqlalchemy import create_engine, Column, Integer, String, Boolean, DateTime, Text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError, OperationalError, IntegrityError

from ..domain.errors import DataIntegrityError, TransientInfrastructureError
from ..domain.models import (
    Charger, ChargingSession, Reservation, Strike, Suspension,
    SessionStatus, ReservationStatus, StrikeType, StrikeSource
)

T = TypeVar('T')

TABLES = ("chargers", "sessions", "reservations", "strikes", "suspensions", "config", "properties")


# ============================================================================
# REPOSITORY INTERFACES
# ============================================================================

class Repository(ABC, Generic[T]):
    """Ordered table of records keyed by id"""

    @abstractmethod
    def add(self, entity: T) -> T:
        """Append a new record"""
        pass

    @abstractmethod
    def get(self, id: str) -> Optional[T]:
        """Get a copy of one record by id"""
        pass

    @abstractmethod
    def list(self) -> List[T]:
        """Full-table scan in insertion order"""
        pass

    @abstractmethod
    def update(self, entity: T) -> T:
        """Overwrite an existing record by id"""
        pass

    def save(self, entity: T) -> T:
        """Update when the id exists, append otherwise"""
        if self.get(getattr(entity, 'id')) is None:
            return self.add(entity)
        return self.update(entity)


class TableStore(ABC):
    """All logical tables the engine reads and writes"""

    chargers: Repository[Charger]
    sessions: Repository[ChargingSession]
    reservations: Repository[Reservation]
    strikes: Repository[Strike]
    suspensions: Repository[Suspension]

    @abstractmethod
    def initialize(self) -> None:
        """Create any missing tables"""
        pass

    @abstractmethod
    def get_config(self) -> Dict[str, str]:
        pass

    @abstractmethod
    def set_config(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def get_properties(self) -> Dict[str, str]:
        pass

    @abstractmethod
    def set_property(self, key: str, value: str) -> None:
        pass


# ============================================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================================

class InMemoryRepository(Repository[T]):
    """In-memory repository for testing"""

    def __init__(self, table: str):
        self.table = table
        self._storage: Dict[str, T] = {}
        self._logger = logging.getLogger(self.__class__.__name__)

    def add(self, entity: T) -> T:
        entity_id = getattr(entity, 'id')
        if entity_id in self._storage:
            raise DataIntegrityError(f"Duplicate id {entity_id} in {self.table}")
        self._storage[entity_id] = copy.deepcopy(entity)
        self._logger.debug(f"Added {self.table} row {entity_id}")
        return entity

    def get(self, id: str) -> Optional[T]:
        entity = self._storage.get(id)
        return copy.deepcopy(entity) if entity is not None else None

    def list(self) -> List[T]:
        return [copy.deepcopy(entity) for entity in self._storage.values()]

    def update(self, entity: T) -> T:
        entity_id = getattr(entity, 'id')
        if entity_id not in self._storage:
            raise DataIntegrityError(f"No row {entity_id} in {self.table}")
        self._storage[entity_id] = copy.deepcopy(entity)
        self._logger.debug(f"Updated {self.table} row {entity_id}")
        return entity


class InMemoryTableStore(TableStore):
    """Process-local store; nothing survives the process"""

    def __init__(self):
        self.chargers = InMemoryRepository[Charger]("chargers")
        self.sessions = InMemoryRepository[ChargingSession]("sessions")
        self.reservations = InMemoryRepository[Reservation]("reservations")
        self.strikes = InMemoryRepository[Strike]("strikes")
        self.suspensions = InMemoryRepository[Suspension]("suspensions")
        self._config: Dict[str, str] = {}
        self._properties: Dict[str, str] = {}

    def initialize(self) -> None:
        pass

    def get_config(self) -> Dict[str, str]:
        return dict(self._config)

    def set_config(self, key: str, value: str) -> None:
        self._config[key] = str(value)

    def get_properties(self) -> Dict[str, str]:
        return dict(self._properties)

    def set_property(self, key: str, value: str) -> None:
        self._properties[key] = str(value)


# ============================================================================
# SQLALCHEMY ORM MODELS
# ============================================================================

Base = declarative_base()


class ChargerModel(Base):
    """SQLAlchemy model for Charger"""
    __tablename__ = 'chargers'

    charger_id = Column(String(64), primary_key=True)
    name = Column(String(100), nullable=False)
    max_minutes = Column(Integer, nullable=False)
    slot_starts = Column(Text, default="")
    active_session_id = Column(String(36))


class SessionModel(Base):
    """SQLAlchemy model for ChargingSession"""
    __tablename__ = 'sessions'

    session_id = Column(String(36), primary_key=True)
    charger_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(200), nullable=False, index=True)
    user_name = Column(String(200))
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    status = Column(String(20))

    # Compatibility columns, derived from status on every save
    active = Column(Boolean, default=False)
    overdue = Column(Boolean, default=False)
    complete = Column(Boolean, default=False)

    reminder_10_sent = Column(Boolean, default=False)
    reminder_5_sent = Column(Boolean, default=False)
    reminder_0_sent = Column(Boolean, default=False)
    overdue_last_sent_at = Column(DateTime)
    grace_notified_at = Column(DateTime)
    late_strike_at = Column(DateTime)
    ended_at = Column(DateTime)
    row_order = Column(Integer, index=True)


class ReservationModel(Base):
    """SQLAlchemy model for Reservation"""
    __tablename__ = 'reservations'

    reservation_id = Column(String(36), primary_key=True)
    charger_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(200), nullable=False, index=True)
    user_name = Column(String(200))
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False)
    checked_in_at = Column(DateTime)
    no_show_at = Column(DateTime)
    no_show_strike_at = Column(DateTime)
    reminder_5_before_sent = Column(Boolean, default=False)
    reminder_5_after_sent = Column(Boolean, default=False)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
    canceled_at = Column(DateTime)
    row_order = Column(Integer, index=True)


class StrikeModel(Base):
    """SQLAlchemy model for Strike"""
    __tablename__ = 'strikes'

    strike_id = Column(String(36), primary_key=True)
    user_id = Column(String(200), nullable=False, index=True)
    user_name = Column(String(200))
    type = Column(String(20), nullable=False)
    source_type = Column(String(20))
    source_id = Column(String(36))
    reason = Column(Text)
    occurred_at = Column(DateTime, nullable=False)
    month_key = Column(String(7), index=True)
    row_order = Column(Integer, index=True)


class SuspensionModel(Base):
    """SQLAlchemy model for Suspension"""
    __tablename__ = 'suspensions'

    suspension_id = Column(String(36), primary_key=True)
    user_id = Column(String(200), nullable=False, index=True)
    user_name = Column(String(200))
    start_at = Column(DateTime, nullable=False)
    end_at = Column(DateTime, nullable=False)
    reason = Column(Text)
    active = Column(Boolean, default=True)
    created_at = Column(DateTime)
    row_order = Column(Integer, index=True)


class ConfigModel(Base):
    __tablename__ = 'config'

    key = Column(String(100), primary_key=True)
    value = Column(Text, default="")


class PropertyModel(Base):
    __tablename__ = 'properties'

    key = Column(String(100), primary_key=True)
    value = Column(Text, default="")


# ============================================================================
# DOMAIN <-> ORM MAPPERS
# ============================================================================

class Mapper:
    """Maps between domain records and ORM rows"""

    @staticmethod
    def charger_to_orm(charger: Charger) -> ChargerModel:
        return ChargerModel(
            charger_id=charger.id,
            name=charger.name,
            max_minutes=charger.max_minutes,
            slot_starts=charger.slot_starts_text,
            active_session_id=charger.active_session_id or None,
        )

    @staticmethod
    def charger_to_domain(model: ChargerModel) -> Charger:
        try:
            return Charger(
                id=model.charger_id,
                name=model.name,
                max_minutes=int(model.max_minutes),
                slot_starts=Charger.parse_slot_starts(model.slot_starts),
                active_session_id=model.active_session_id or None,
            )
        except (TypeError, ValueError) as e:
            raise DataIntegrityError(f"Charger row {model.charger_id} is malformed: {e}")

    @staticmethod
    def session_to_orm(session: ChargingSession) -> SessionModel:
        return SessionModel(
            session_id=session.id,
            charger_id=session.charger_id,
            user_id=session.user_id,
            user_name=session.user_name,
            start_time=session.start_time,
            end_time=session.end_time,
            status=session.status.value,
            active=session.is_active,
            overdue=session.is_active and session.overdue_last_sent_at is not None,
            complete=session.is_complete,
            reminder_10_sent=session.reminder_10_sent,
            reminder_5_sent=session.reminder_5_sent,
            reminder_0_sent=session.reminder_0_sent,
            overdue_last_sent_at=session.overdue_last_sent_at,
            grace_notified_at=session.grace_notified_at,
            late_strike_at=session.late_strike_at,
            ended_at=session.ended_at,
        )

    @staticmethod
    def session_to_domain(model: SessionModel) -> ChargingSession:
        # Older rows carry only the boolean flags
        if model.status:
            try:
                status = SessionStatus(model.status)
            except ValueError:
                raise DataIntegrityError(
                    f"Session row {model.session_id} has unknown status {model.status!r}"
                )
        else:
            status = SessionStatus.COMPLETE if model.complete else SessionStatus.ACTIVE
        return ChargingSession(
            id=model.session_id,
            charger_id=model.charger_id,
            user_id=model.user_id,
            user_name=model.user_name or "",
            start_time=model.start_time,
            end_time=model.end_time,
            status=status,
            reminder_10_sent=bool(model.reminder_10_sent),
            reminder_5_sent=bool(model.reminder_5_sent),
            reminder_0_sent=bool(model.reminder_0_sent),
            overdue_last_sent_at=model.overdue_last_sent_at,
            grace_notified_at=model.grace_notified_at,
            late_strike_at=model.late_strike_at,
            ended_at=model.ended_at,
        )

    @staticmethod
    def reservation_to_orm(reservation: Reservation) -> ReservationModel:
        return ReservationModel(
            reservation_id=reservation.id,
            charger_id=reservation.charger_id,
            user_id=reservation.user_id,
            user_name=reservation.user_name,
            start_time=reservation.start_time,
            end_time=reservation.end_time,
            status=reservation.status.value,
            checked_in_at=reservation.checked_in_at,
            no_show_at=reservation.no_show_at,
            no_show_strike_at=reservation.no_show_strike_at,
            reminder_5_before_sent=reservation.reminder_5_before_sent,
            reminder_5_after_sent=reservation.reminder_5_after_sent,
            created_at=reservation.created_at,
            updated_at=reservation.updated_at,
            canceled_at=reservation.canceled_at,
        )

    @staticmethod
    def reservation_to_domain(model: ReservationModel) -> Reservation:
        try:
            status = ReservationStatus(model.status)
        except ValueError:
            raise DataIntegrityError(
                f"Reservation row {model.reservation_id} has unknown status {model.status!r}"
            )
        return Reservation(
            id=model.reservation_id,
            charger_id=model.charger_id,
            user_id=model.user_id,
            user_name=model.user_name or "",
            start_time=model.start_time,
            end_time=model.end_time,
            status=status,
            checked_in_at=model.checked_in_at,
            no_show_at=model.no_show_at,
            no_show_strike_at=model.no_show_strike_at,
            reminder_5_before_sent=bool(model.reminder_5_before_sent),
            reminder_5_after_sent=bool(model.reminder_5_after_sent),
            created_at=model.created_at,
            updated_at=model.updated_at,
            canceled_at=model.canceled_at,
        )

    @staticmethod
    def strike_to_orm(strike: Strike) -> StrikeModel:
        return StrikeModel(
            strike_id=strike.id,
            user_id=strike.user_id,
            user_name=strike.user_name,
            type=strike.type.value,
            source_type=strike.source_type.value,
            source_id=strike.source_id,
            reason=strike.reason,
            occurred_at=strike.occurred_at,
            month_key=strike.month_key,
        )

    @staticmethod
    def strike_to_domain(model: StrikeModel) -> Strike:
        try:
            return Strike(
                id=model.strike_id,
                user_id=model.user_id,
                user_name=model.user_name or "",
                type=StrikeType(model.type),
                source_type=StrikeSource(model.source_type),
                source_id=model.source_id or "",
                reason=model.reason or "",
                occurred_at=model.occurred_at,
                month_key=model.month_key or "",
            )
        except ValueError as e:
            raise DataIntegrityError(f"Strike row {model.strike_id} is malformed: {e}")

    @staticmethod
    def suspension_to_orm(suspension: Suspension) -> SuspensionModel:
        return SuspensionModel(
            suspension_id=suspension.id,
            user_id=suspension.user_id,
            user_name=suspension.user_name,
            start_at=suspension.start_at,
            end_at=suspension.end_at,
            reason=suspension.reason,
            active=suspension.active,
            created_at=suspension.created_at,
        )

    @staticmethod
    def suspension_to_domain(model: SuspensionModel) -> Suspension:
        return Suspension(
            id=model.suspension_id,
            user_id=model.user_id,
            user_name=model.user_name or "",
            start_at=model.start_at,
            end_at=model.end_at,
            reason=model.reason or "",
            active=bool(model.active),
            created_at=model.created_at,
        )


# ============================================================================
# SQLALCHEMY IMPLEMENTATION
# ============================================================================

class SQLAlchemyTableStore(TableStore):
    """Relational store; one short transaction per repository call"""

    def __init__(self, url: str = "sqlite:///data/evpark.db", engine=None):
        self.url = url
        self._logger = logging.getLogger(self.__class__.__name__)
        if engine is None:
            _ensure_sqlite_directory(url)
            engine = create_engine(url)
        self.engine = engine
        self.session_factory = sessionmaker(bind=engine, expire_on_commit=False)

        self.chargers = SQLAlchemyRepository(
            self, ChargerModel, 'charger_id', Mapper.charger_to_domain, Mapper.charger_to_orm
        )
        self.sessions = SQLAlchemyRepository(
            self, SessionModel, 'session_id', Mapper.session_to_domain, Mapper.session_to_orm
        )
        self.reservations = SQLAlchemyRepository(
            self, ReservationModel, 'reservation_id',
            Mapper.reservation_to_domain, Mapper.reservation_to_orm
        )
        self.strikes = SQLAlchemyRepository(
            self, StrikeModel, 'strike_id', Mapper.strike_to_domain, Mapper.strike_to_orm
        )
        self.suspensions = SQLAlchemyRepository(
            self, SuspensionModel, 'suspension_id',
            Mapper.suspension_to_domain, Mapper.suspension_to_orm
        )

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Transaction around one store call"""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except OperationalError as e:
            session.rollback()
            self._logger.warning(f"Transient database error: {e}")
            raise TransientInfrastructureError(f"Database temporarily unavailable: {e.orig}") from e
        except IntegrityError as e:
            session.rollback()
            self._logger.error(f"Integrity error: {e.orig}")
            raise DataIntegrityError(f"Integrity error: {e.orig}") from e
        except SQLAlchemyError as e:
            session.rollback()
            self._logger.error(f"Database error: {e}")
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def initialize(self) -> None:
        try:
            Base.metadata.create_all(self.engine)
        except OperationalError as e:
            raise TransientInfrastructureError(f"Database temporarily unavailable: {e.orig}") from e
        self._logger.info(f"Initialized tables at {self.url}")

    def get_config(self) -> Dict[str, str]:
        return self._read_pairs(ConfigModel)

    def set_config(self, key: str, value: str) -> None:
        self._write_pair(ConfigModel, key, value)

    def get_properties(self) -> Dict[str, str]:
        return self._read_pairs(PropertyModel)

    def set_property(self, key: str, value: str) -> None:
        self._write_pair(PropertyModel, key, value)

    def _read_pairs(self, model_class) -> Dict[str, str]:
        with self.session_scope() as session:
            return {row.key: row.value or "" for row in session.query(model_class).all()}

    def _write_pair(self, model_class, key: str, value: str) -> None:
        with self.session_scope() as session:
            session.merge(model_class(key=key, value=str(value)))
        self._logger.debug(f"Set {model_class.__tablename__} {key}={value}")


class SQLAlchemyRepository(Repository[T]):
    """Generic repository over one ORM model"""

    def __init__(
        self,
        store: SQLAlchemyTableStore,
        model_class: Type,
        id_column: str,
        to_domain: Callable,
        to_orm: Callable
    ):
        self.store = store
        self.model_class = model_class
        self.id_column = id_column
        self.to_domain = to_domain
        self.to_orm = to_orm
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    def table(self) -> str:
        return self.model_class.__tablename__

    def _order_column(self):
        return getattr(self.model_class, 'row_order', None)

    def _sort_column(self):
        order = self._order_column()
        return order if order is not None else getattr(self.model_class, self.id_column)

    def add(self, entity: T) -> T:
        with self.store.session_scope() as session:
            model = self.to_orm(entity)
            order = self._order_column()
            if order is not None:
                model.row_order = session.query(self.model_class).count() + 1
            session.add(model)
        self._logger.debug(f"Added {self.table} row {entity.id}")
        return entity

    def get(self, id: str) -> Optional[T]:
        with self.store.session_scope() as session:
            model = session.get(self.model_class, id)
            return self.to_domain(model) if model else None

    def list(self) -> List[T]:
        with self.store.session_scope() as session:
            query = session.query(self.model_class).order_by(self._sort_column())
            return [self.to_domain(model) for model in query.all()]

    def update(self, entity: T) -> T:
        with self.store.session_scope() as session:
            model = session.get(self.model_class, entity.id)
            if model is None:
                raise DataIntegrityError(f"No row {entity.id} in {self.table}")
            updated = self.to_orm(entity)
            for column in self.model_class.__table__.columns:
                if column.name in (self.id_column, 'row_order'):
                    continue
                setattr(model, column.name, getattr(updated, column.name))
        self._logger.debug(f"Updated {self.table} row {entity.id}")
        return entity


def _ensure_sqlite_directory(url: str) -> None:
    parsed = make_url(url)
    if parsed.get_backend_name() == 'sqlite' and parsed.database and parsed.database != ':memory:':
        Path(parsed.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
