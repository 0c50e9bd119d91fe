import os
from typing import List, Optional

from pydantic import BaseModel, Field

DEV_JWT_SECRET = "devsecret"


class Settings(BaseModel):
    environment: str = "development"
    jwt_secret: str = DEV_JWT_SECRET
    jwt_algo: str = "HS256"
    token_ttl_days: int = Field(30, ge=1)
    otp_ttl_minutes: int = Field(10, ge=1)
    otp_max_requests: int = Field(5, ge=1)
    otp_max_failures: int = Field(5, ge=1)
    database_url: Optional[str] = None
    database_name: str = "storefront"
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])
    port: int = 8000

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


def load_settings() -> Settings:
    environment = os.getenv("ENVIRONMENT", "development")
    jwt_secret = os.getenv("JWT_SECRET")
    if not jwt_secret:
        if environment == "production":
            raise RuntimeError("JWT_SECRET environment variable is required in production")
        jwt_secret = DEV_JWT_SECRET

    origins = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",") if o.strip()]

    return Settings(
        environment=environment,
        jwt_secret=jwt_secret,
        token_ttl_days=int(os.getenv("TOKEN_TTL_DAYS", 30)),
        otp_ttl_minutes=int(os.getenv("OTP_TTL_MINUTES", 10)),
        otp_max_requests=int(os.getenv("OTP_MAX_REQUESTS", 5)),
        otp_max_failures=int(os.getenv("OTP_MAX_FAILURES", 5)),
        database_url=os.getenv("DATABASE_URL") or None,
        database_name=os.getenv("DATABASE_NAME", "storefront"),
        allowed_origins=origins or ["*"],
        port=int(os.getenv("PORT", 8000)),
    )
