from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import DATABASE_URL

connect_args = {}
if DATABASE_URL.startswith("sqlite"):
    # TestClient runs requests on a worker thread
    connect_args["check_same_thread"] = False

engine = create_engine(DATABASE_URL, connect_args=connect_args)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """
    Yield a SQLAlchemy database session for the Reservations service.

    Used as a FastAPI dependency: one session per HTTP request, always
    closed afterwards.

    Yields
    ------
    Session
        Active SQLAlchemy session bound to the reservations database engine.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session):
    """
    Commit everything done inside the block as one unit.

    Any exception, domain errors included, rolls the whole block back and
    releases the row locks taken inside it before propagating.
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
