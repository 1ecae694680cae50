"""Database base configuration"""
from sqlalchemy import create_engine
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker
from roombridge.config import settings

engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False} if "sqlite" in settings.database_url else {},
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """Get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _ensure_issue_connections_unique_index():
    """
    Best-effort schema hardening:
    Databases created before the (room_id, state_key) constraint existed may hold
    duplicate connection rows. Only one live connection per room/state key is valid.
    """
    with engine.begin() as conn:
        if engine.dialect.name == "sqlite":
            tables = {
                row[0]
                for row in conn.exec_driver_sql(
                    "SELECT name FROM sqlite_master WHERE type='table'"
                ).fetchall()
            }
            if "issue_connections" not in tables:
                return

        sql = (
            "CREATE UNIQUE INDEX IF NOT EXISTS uq_issue_connections_room_state_key "
            "ON issue_connections(room_id, state_key)"
        )
        try:
            conn.exec_driver_sql(sql)
        except Exception:
            # Some dialects may not support IF NOT EXISTS; try without it.
            try:
                conn.exec_driver_sql(sql.replace(" IF NOT EXISTS", ""))
            except Exception:
                # Best-effort only; do not block app startup.
                pass


def init_db():
    """Initialize database"""
    # Ensure all models are imported so SQLAlchemy metadata is populated.
    # (Without this, create_all() may create no tables in some import orders.)
    import roombridge.models  # noqa: F401  (import for side-effects)

    Base.metadata.create_all(bind=engine)
    _ensure_issue_connections_unique_index()
