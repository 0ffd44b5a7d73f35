from __future__ import annotations

import os

from alembic import command
from alembic.config import Config

ALEMBIC_CONFIG = os.getenv("ALEMBIC_CONFIG", "alembic.ini")
SEED_AFTER_MIGRATE = os.getenv("SEED_AFTER_MIGRATE", "true").lower() in {"1", "true", "yes", "on"}


def run_upgrade_head(config_path: str = ALEMBIC_CONFIG) -> None:
    command.upgrade(Config(config_path), "head")


def migrate_and_seed(config_path: str = ALEMBIC_CONFIG, *, seed: bool = SEED_AFTER_MIGRATE) -> None:
    run_upgrade_head(config_path)
    if seed:
        from eduauth.services.bootstrap_service import BootstrapService

        BootstrapService().seed()


if __name__ == "__main__":
    migrate_and_seed()
