from sqlalchemy.orm import Session

from tally.core.database import init_db
from tally.core.models import Base, Meta


SCHEMA_VERSION = 1


def ensure_seed(db_path: str):
    engine, _ = init_db(db_path)
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        if session.get(Meta, "schema_version") is None:
            session.add(Meta(key="schema_version", value=str(SCHEMA_VERSION)))
        session.commit()
