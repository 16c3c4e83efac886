import logging
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from ..config import DATABASE_URL, SQLALCHEMY_ECHO
from .schemas import Base

# --- Logging ---
logger = logging.getLogger(__name__)

# --- Database Configuration ---
_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

try:
    engine = create_engine(DATABASE_URL, echo=SQLALCHEMY_ECHO, connect_args=_connect_args)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    logger.info("Database engine and session created successfully.")
except Exception as e:
    logger.critical(f"Failed to create database engine: {e}")
    raise


def init_db(bind=None):
    """
    Creates the agent, decision and monitoring tables if they do not exist.
    """
    try:
        logger.info("Initializing database and creating tables...")
        Base.metadata.create_all(bind=bind or engine)
        logger.info("Database tables created successfully.")
    except Exception as e:
        logger.error(f"Error initializing database tables: {e}")
        raise

