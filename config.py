import os
from dataclasses import dataclass


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    jwt_secret: str = "dev-secret"
    jwt_algo: str = "HS256"
    token_expire_min: int = 60 * 24 * 7
    bcrypt_rounds: int = 12
    # "memory" or "mongo"
    storage_backend: str = "memory"
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "siren"
    allow_anonymous_requests: bool = True
    port: int = 8000


def load_settings() -> Settings:
    return Settings(
        jwt_secret=os.getenv("JWT_SECRET", "dev-secret"),
        jwt_algo=os.getenv("JWT_ALGO", "HS256"),
        token_expire_min=int(os.getenv("TOKEN_EXPIRE_MIN", 60 * 24 * 7)),
        bcrypt_rounds=int(os.getenv("BCRYPT_ROUNDS", 12)),
        storage_backend=os.getenv("STORAGE_BACKEND", "memory").strip().lower(),
        database_url=os.getenv("DATABASE_URL", "mongodb://localhost:27017"),
        database_name=os.getenv("DATABASE_NAME", "siren"),
        allow_anonymous_requests=_flag("ALLOW_ANONYMOUS_REQUESTS", "true"),
        port=int(os.getenv("PORT", 8000)),
    )
