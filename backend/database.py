# database.py
import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

import config

logger = logging.getLogger(__name__)

# 1. Get the Database URL
SQLALCHEMY_DATABASE_URL = config.DATABASE_URL

# 2. SQLite needs cross-thread access for FastAPI's threadpool
connect_args = {"check_same_thread": False} if SQLALCHEMY_DATABASE_URL.startswith("sqlite") else {}

# 3. Create the Database Engine
# 'pool_pre_ping=True' helps prevent connection drops
engine = create_engine(SQLALCHEMY_DATABASE_URL, pool_pre_ping=True, connect_args=connect_args)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()
logger.info("✅ Database engine initialized.")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
