import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        data_dir: Path,
        database_url: str,
        timezone: str,
        secret_key: str,
        items_per_page: int,
        admin_role: str,
    ) -> None:
        self.data_dir = data_dir
        self.database_url = database_url
        self.timezone = timezone
        self.secret_key = secret_key
        self.items_per_page = items_per_page
        self.admin_role = admin_role


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("HOMEACC_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "homeacc.db"
    database_url = os.getenv("HOMEACC_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("HOMEACC_TIMEZONE", "Europe/Moscow")
    secret_key = os.getenv(
        "HOMEACC_SECRET_KEY",
        "5f0c6a4e2d1b93e87a7c41f2b0d9e6a3c8f1d2e4b6a7c9d0e1f2a3b4c5d6e7f8",
    )
    items_per_page = int(os.getenv("HOMEACC_ITEMS_PER_PAGE", "10"))
    admin_role = os.getenv("HOMEACC_ADMIN_ROLE", "Administrators")
    return Settings(
        data_dir=data_dir,
        database_url=database_url,
        timezone=timezone,
        secret_key=secret_key,
        items_per_page=items_per_page,
        admin_role=admin_role,
    )
