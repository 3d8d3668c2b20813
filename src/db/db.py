from pathlib import Path

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker

from db.models import Base


def init_db(
    echo: bool = False, *, db_file: str | Path = "salvage_ledger.db", reset: bool = False
) -> sessionmaker[Session]:
    path = Path(db_file)
    if reset and path.exists():
        path.unlink()

    return init_db_url(f"sqlite:///{path}", echo=echo)


def init_db_url(database_url: str, *, echo: bool = False) -> sessionmaker[Session]:
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    engine: Engine = create_engine(url, echo=echo)

    Base.metadata.create_all(engine)
    return sessionmaker(engine, expire_on_commit=False)
