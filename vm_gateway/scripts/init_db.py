import logging

from vm_gateway.db import configure_sqlite_runtime, engine
from vm_gateway.logging_config import configure_logging
from vm_gateway.models import Base


logger = logging.getLogger(__name__)


def create_tables() -> list[str]:
    configure_sqlite_runtime()
    Base.metadata.create_all(bind=engine)
    return sorted(Base.metadata.tables)


if __name__ == "__main__":
    configure_logging()
    tables = create_tables()
    logger.info("tables ready url=%s tables=%s", engine.url, ", ".join(tables))
