"""
Create the Turion tables without going through Alembic.

Meant for local sqlite setups; deployed databases are migrated with
`alembic upgrade head`.

Usage:
    python -m app.db.init_db [--reset]
"""

import argparse
import asyncio

from app.config import settings
from app.db.database import init_db, drop_db, dispose_db
from app.db.models import Base


async def main(reset: bool = False):
    if reset:
        print(f"Dropping all tables in {settings.database_url} ...")
        await drop_db()
    print("Creating tables...")
    await init_db()
    print(f"Ready: {', '.join(sorted(Base.metadata.tables))}")
    await dispose_db()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--reset", action="store_true", help="drop every table before creating")
    args = parser.parse_args()
    asyncio.run(main(reset=args.reset))
