from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session


def session(engine: Engine) -> Session:
    # Handlers read ORM fields after the session context closes.
    return Session(engine, expire_on_commit=False)
