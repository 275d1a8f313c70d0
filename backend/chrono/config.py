"""Application settings and validation."""

import os
from pathlib import Path

BASE = Path(__file__).resolve().parent.parent

COMPLETION_STRATEGIES = ("local", "async", "both")


class Settings:
    ENV: str
    DATABASE_URL: str
    JWT_SECRET: str
    JWT_ALGORITHM: str
    JWT_EXPIRE_HOURS: int
    ALLOW_INSECURE_JWT: bool
    ALLOW_DEV_CORS: bool
    COMPLETION_STRATEGY: str
    CHRONO_SERVICE_URL: str
    CHRONO_AUTH_TOKEN: str
    DISPATCH_TIMEOUT_SECONDS: float
    DISPATCH_QUEUE_SIZE: int
    DISPATCH_MAX_JOBS: int
    LOG_LEVEL: str

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BASE / 'chrono.db'}")
        self.JWT_SECRET = os.getenv("JWT_SECRET", "change_me_for_prod")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "24"))
        self.ALLOW_INSECURE_JWT = os.getenv("ALLOW_INSECURE_JWT", "false").lower() == "true"
        self.ALLOW_DEV_CORS = os.getenv("ALLOW_DEV_CORS", "true").lower() == "true"
        self.COMPLETION_STRATEGY = os.getenv("COMPLETION_STRATEGY", "local").lower()
        self.CHRONO_SERVICE_URL = os.getenv("CHRONO_SERVICE_URL", "http://localhost:9001").rstrip("/")
        self.CHRONO_AUTH_TOKEN = os.getenv("CHRONO_AUTH_TOKEN", "change_me_shared_secret")
        self.DISPATCH_TIMEOUT_SECONDS = float(os.getenv("DISPATCH_TIMEOUT_SECONDS", "20"))
        self.DISPATCH_QUEUE_SIZE = int(os.getenv("DISPATCH_QUEUE_SIZE", "100"))
        self.DISPATCH_MAX_JOBS = int(os.getenv("DISPATCH_MAX_JOBS", "500"))
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self._validate()

    def _validate(self):
        if self.COMPLETION_STRATEGY not in COMPLETION_STRATEGIES:
            raise RuntimeError(
                f"COMPLETION_STRATEGY must be one of {', '.join(COMPLETION_STRATEGIES)}, got {self.COMPLETION_STRATEGY!r}"
            )
        if self.ENV != "dev" and not self.ALLOW_INSECURE_JWT:
            if self.JWT_SECRET == "change_me_for_prod":
                raise RuntimeError("JWT_SECRET must be set to a non-default value in non-dev environments")
            if self.CHRONO_AUTH_TOKEN == "change_me_shared_secret":
                raise RuntimeError("CHRONO_AUTH_TOKEN must be set to a non-default value in non-dev environments")


settings = Settings()
