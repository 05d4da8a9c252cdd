from contextlib import contextmanager

from flask_sqlalchemy import SQLAlchemy
from flask_jwt_extended import JWTManager

db = SQLAlchemy()
jwt = JWTManager()


@contextmanager
def rollback_on_error():
    """Roll back (releasing row locks) if the block raises, then re-raise."""
    try:
        yield db.session
    except Exception:
        db.session.rollback()
        raise
