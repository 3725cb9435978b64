import logging
from datetime import timedelta

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base

from slotswap.config import DATABASE_URL, SEED_DEMO_DATA

logger = logging.getLogger(__name__)

Base = declarative_base()


def build_engine(url: str):
    """Create an engine; SQLite connections get foreign keys switched on."""
    if url.startswith("sqlite"):
        eng = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})

        @event.listens_for(eng, "connect")
        def _enable_foreign_keys(dbapi_connection, _record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return eng
    return create_engine(url, pool_pre_ping=True)


engine = build_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    # Import models here to create tables
    from slotswap.models import User, Slot, SlotStatus, utcnow

    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ready")

    if not SEED_DEMO_DATA:
        return

    db = SessionLocal()
    try:
        # Two demo users with one swappable slot each
        if not db.query(User).first():
            db.add_all([
                User(id="u-alice", name="Alice", email="alice@example.com"),
                User(id="u-bob", name="Bob", email="bob@example.com"),
            ])
            db.flush()
            start = utcnow().replace(minute=0, second=0, microsecond=0) + timedelta(days=1)
            db.add_all([
                Slot(id="s-1", owner_id="u-alice", title="Standup", start_time=start,
                     end_time=start + timedelta(minutes=30), status=SlotStatus.SWAPPABLE.value),
                Slot(id="s-2", owner_id="u-bob", title="Review", start_time=start + timedelta(hours=5),
                     end_time=start + timedelta(hours=5, minutes=30), status=SlotStatus.SWAPPABLE.value),
            ])
            logger.info("Seeded demo users and slots")
        db.commit()
    finally:
        db.close()
