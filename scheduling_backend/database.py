from threading import Lock

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from scheduling_backend.core import config

WRITE_LOCK_OPTION = 'scheduling_write_lock'


def enable_sqlite_write_serialization(target: Engine) -> Engine:
    """Let SQLite writers serialize while readers stay concurrent.

    SQLite ignores ``SELECT ... FOR UPDATE``, so the row lock taken on the
    therapist before a booking would be a no-op there. Transactions opened
    through ``begin_write`` start with ``BEGIN IMMEDIATE`` and take the write
    lock up front; every other transaction is a plain deferred ``BEGIN``.
    File databases run in WAL mode so an open reader never blocks a writer.
    """
    if target.dialect.name != 'sqlite':
        return target

    @event.listens_for(target, 'connect')
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute('PRAGMA journal_mode=WAL')
        finally:
            cursor.close()

    @event.listens_for(target, 'begin')
    def _begin(connection):
        if connection.get_execution_options().get(WRITE_LOCK_OPTION):
            connection.exec_driver_sql('BEGIN IMMEDIATE')
        else:
            connection.exec_driver_sql('BEGIN')

    return target


def begin_write(db: Session) -> None:
    """Open a transaction on ``db`` that holds the write lock from its first statement.

    A transaction that is already open is committed first; on SQLite a
    deferred reader cannot safely upgrade to a writer once another writer
    holds the lock.
    """
    if db.in_transaction():
        db.commit()
    db.connection(execution_options={WRITE_LOCK_OPTION: True})


def build_engine(url: str, **kwargs) -> Engine:
    if url.startswith('sqlite'):
        kwargs.setdefault('connect_args', {'check_same_thread': False})
    return enable_sqlite_write_serialization(create_engine(url, **kwargs))


engine = build_engine(config.DATABASE_URL, echo=config.DATABASE_ECHO)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_scheduling_schema_checked = False

ACTIVE_SLOT_INDEX_STATEMENT = (
    'CREATE UNIQUE INDEX IF NOT EXISTS uq_appointments_active_therapist_start '
    "ON appointments(therapist_id, scheduled_at) WHERE status IN ('scheduled', 'confirmed')"
)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def ensure_scheduling_schema(bind: Engine | None = None) -> None:
    """Backfill indexes on databases created before they were declared."""
    global _scheduling_schema_checked

    if _scheduling_schema_checked:
        return

    target = bind or engine

    with _schema_lock:
        if _scheduling_schema_checked:
            return

        inspector = inspect(target)
        table_names = inspector.get_table_names()

        with target.begin() as connection:
            if 'appointments' in table_names:
                connection.execute(text(ACTIVE_SLOT_INDEX_STATEMENT))
                connection.execute(
                    text('CREATE INDEX IF NOT EXISTS idx_appointments_therapist_range '
                         'ON appointments(therapist_id, scheduled_at, ends_at)')
                )
            if 'therapist_availabilities' in table_names:
                connection.execute(
                    text('CREATE INDEX IF NOT EXISTS idx_availabilities_therapist_day '
                         'ON therapist_availabilities(therapist_id, day_of_week)')
                )
            if 'therapist_time_offs' in table_names:
                connection.execute(
                    text('CREATE INDEX IF NOT EXISTS idx_time_offs_therapist_range '
                         'ON therapist_time_offs(therapist_id, start_date, end_date)')
                )

        _scheduling_schema_checked = True
