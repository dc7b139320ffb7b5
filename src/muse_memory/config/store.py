import os
from pathlib import Path

from .loader import section

_DEFAULT_SQLITE_PATH = Path("data") / "memory.db"


class Store:
    def __init__(self, config: dict | None = None) -> None:
        store_cfg = section(config, "store")
        self.SQL_DB_PATH: str = str(store_cfg.get("sql_db_path", os.getenv("SQL_DB_PATH", str(_DEFAULT_SQLITE_PATH))))
