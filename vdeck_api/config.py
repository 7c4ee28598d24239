# config.py

import os
from dataclasses import dataclass
from typing import Optional

from pymongo.uri_parser import parse_uri

DEFAULT_MONGO_URI = "mongodb://localhost:27017/mydatabase"
FALLBACK_DATABASE_NAME = "vdeck"


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# Settings are read once from the environment when the app is created
@dataclass(frozen=True)
class Settings:
    mongo_uri: str = DEFAULT_MONGO_URI
    # None means: use the database named in the URI
    database_name: Optional[str] = None
    upload_dir: str = "uploads"
    # 0 means keep retrying until the database answers
    connect_attempts: int = 5
    connect_retry_delay: float = 5.0
    server_timeout_ms: int = 5000
    allow_oversell: bool = False
    cors_origins: tuple = ("*",)

    @classmethod
    def from_env(cls) -> "Settings":
        """ Build settings from environment variables, falling back to defaults. Nothing is resolved here. """
        origins = os.environ.get("CORS_ORIGINS", "*")
        return cls(
            mongo_uri=os.environ.get("MONGO_URI", DEFAULT_MONGO_URI),
            database_name=os.environ.get("MONGO_DB") or None,
            upload_dir=os.environ.get("UPLOAD_DIR", "uploads"),
            connect_attempts=int(os.environ.get("MONGO_CONNECT_ATTEMPTS", "5")),
            connect_retry_delay=float(os.environ.get("MONGO_RETRY_DELAY", "5")),
            server_timeout_ms=int(os.environ.get("MONGO_TIMEOUT_MS", "5000")),
            allow_oversell=_env_bool("ALLOW_OVERSELL", False),
            cors_origins=tuple(origin.strip() for origin in origins.split(",") if origin.strip()),
        )

    def resolve_database_name(self) -> str:
        """
        Name of the database to use. Parses the URI when no name was configured,
        which may do a DNS lookup for mongodb+srv URIs, so only call it at startup.
        """
        if self.database_name:
            return self.database_name
        return parse_uri(self.mongo_uri).get("database") or FALLBACK_DATABASE_NAME
