from ntpof_auth.db.base import Base, UTCDateTime, utcnow
from ntpof_auth.db.session import create_engine_and_sessionmaker, init_db, sync_database_url

__all__ = ["Base", "UTCDateTime", "create_engine_and_sessionmaker", "init_db", "sync_database_url", "utcnow"]
