import os
from dataclasses import dataclass
from dotenv import load_dotenv

@dataclass(frozen=True)
class Settings:
    # Warehouse holding facts, governance tables, rules and the action queue
    db_path: str

    # Logging
    log_level: str
    log_dir: str

def get_settings() -> Settings:
    load_dotenv()  # reads .env if present

    return Settings(
        db_path=os.getenv("AUTORULES_DB_PATH", "./warehouse.duckdb"),
        log_level=os.getenv("AUTORULES_LOG_LEVEL", "INFO").strip().upper(),
        log_dir=os.getenv("AUTORULES_LOG_DIR", "logs"),
    )
