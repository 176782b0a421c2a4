from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker

from petconsult.core import config


DATABASE_URL = config.DATABASE_URL

engine = create_engine(
    DATABASE_URL,
    connect_args={'check_same_thread': False} if DATABASE_URL.startswith('sqlite') else {},
)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_reservation_schema_checked = False
_message_schema_checked = False


def ensure_reservation_schema() -> None:
    global _reservation_schema_checked

    if _reservation_schema_checked:
        return

    with _schema_lock:
        if _reservation_schema_checked:
            return

        inspector = inspect(engine)

        if 'slot_reservations' not in inspector.get_table_names():
            _reservation_schema_checked = True
            return

        with engine.begin() as connection:
            connection.execute(
                text(
                    'CREATE UNIQUE INDEX IF NOT EXISTS uq_slot_reservation_key '
                    'ON slot_reservations(professional_id, slot_date, start_time, end_time)'
                )
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_slot_reservations_hold_expiry ON slot_reservations(status, hold_expires_at)')
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_slot_reservations_range ON slot_reservations(professional_id, slot_date)')
            )

        _reservation_schema_checked = True


def ensure_message_schema() -> None:
    global _message_schema_checked

    if _message_schema_checked:
        return

    with _schema_lock:
        if _message_schema_checked:
            return

        inspector = inspect(engine)

        if 'consultation_messages' not in inspector.get_table_names():
            _message_schema_checked = True
            return

        with engine.begin() as connection:
            connection.execute(
                text(
                    'CREATE UNIQUE INDEX IF NOT EXISTS uq_consultation_message_sequence '
                    'ON consultation_messages(appointment_id, sequence)'
                )
            )

        _message_schema_checked = True
