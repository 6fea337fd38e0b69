from __future__ import annotations

from pathlib import Path
import sys

from alembic import command
from alembic.config import Config

from tenantflow.core.logging import configure_logging


ROOT = Path(__file__).resolve().parents[1]


def alembic_config() -> Config:
    # Migrations read DATABASE_URL through settings unless alembic.ini pins a url.
    return Config(str(ROOT / "alembic.ini"))


def init_db(*, drop: bool = False) -> None:
    config = alembic_config()
    if drop:
        command.downgrade(config, "base")
        print("downgraded_to=base")
    command.upgrade(config, "head")
    print("upgraded_to=head")


if __name__ == "__main__":
    configure_logging()
    init_db(drop="--drop" in sys.argv[1:])
