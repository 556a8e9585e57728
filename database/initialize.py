from __future__ import annotations

import argparse
from typing import Optional

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

# The models import registers the tables with SQLAlchemy's metadata.
from database import models  # noqa: F401
from database.session import Base, engine
from utils.logger import get_logger, setup_logger

logger = get_logger("database")


def init_database(*, drop_existing: bool = False) -> list[str]:
    """Create the ledger schema on the configured engine and return the table names."""
    try:
        if drop_existing:
            logger.warning("Dropping existing ledger tables before re-creating schema.")
            Base.metadata.drop_all(bind=engine)
        Base.metadata.create_all(bind=engine)
    except SQLAlchemyError as exc:
        logger.exception("Failed to initialise ledger schema: %s", exc)
        raise
    tables = sorted(inspect(engine).get_table_names())
    logger.info("Ledger schema ready: %s", ", ".join(tables))
    return tables


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Initialise the user, credit grant and billing event tables."
    )
    parser.add_argument(
        "--drop-existing",
        action="store_true",
        help="Drop existing tables before creating the schema.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    setup_logger()
    args = _parse_args(argv)
    init_database(drop_existing=args.drop_existing)


if __name__ == "__main__":
    main()
