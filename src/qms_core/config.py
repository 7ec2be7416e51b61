"""Configuration management using pydantic-settings."""
import logging
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .permissions import PermissionCatalog, default_catalog

logger = logging.getLogger("qms-core.config")


class Settings(BaseSettings):
    """Process settings, read from ``QMS_*`` environment variables or ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="QMS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str = "postgresql://localhost:5432/qms"

    # Role catalog (YAML). Built-in default roles when unset.
    role_catalog_path: Optional[str] = None

    # Delegation expiry. None = never expires / unbounded.
    delegation_default_expiry_days: Optional[int] = Field(None, ge=1)
    delegation_max_expiry_days: Optional[int] = Field(None, ge=1)

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


class DelegationPolicy(BaseModel):
    """Immutable delegation defaults handed to the authorization engine."""

    model_config = ConfigDict(frozen=True)

    default_expiry_days: Optional[int] = None
    max_expiry_days: Optional[int] = None
    # Rule: delegatee must be a (transitive) subordinate of the delegator
    require_subordinate: bool = True


def delegation_policy(settings: Settings) -> DelegationPolicy:
    return DelegationPolicy(
        default_expiry_days=settings.delegation_default_expiry_days,
        max_expiry_days=settings.delegation_max_expiry_days,
    )


def load_catalog(settings: Settings) -> PermissionCatalog:
    """Load the role catalog snapshot once at startup."""
    if settings.role_catalog_path:
        return PermissionCatalog.from_yaml(settings.role_catalog_path)
    logger.info("No role catalog configured, using built-in default roles")
    return default_catalog()


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
