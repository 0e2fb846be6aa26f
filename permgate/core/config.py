"""Application configuration from environment variables."""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings

from permgate.core.exceptions import ConfigurationError
from permgate.schemas.schemas import PermissionStrategy, RoleDefinition


class PermissionsSection(BaseModel):
    admin_role: str = "admin"
    public_routes: List[str] = Field(default_factory=lambda: ["/auth/login", "/auth/register"])
    permission_strategy: PermissionStrategy = PermissionStrategy.whitelist


class SecuritySection(BaseModel):
    enable_caching: bool = True
    cache_timeout: int = 3600  # seconds
    enable_audit_log: bool = True


class PermissionConfig(BaseModel):
    """In-memory configuration consumed by the authorization core."""

    permissions: PermissionsSection = Field(default_factory=PermissionsSection)
    security: SecuritySection = Field(default_factory=SecuritySection)
    role_hierarchy: Dict[str, RoleDefinition] = Field(default_factory=dict)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App
    APP_NAME: str = "PermGate"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "sqlite:///./permgate.db"

    # Redis
    REDIS_URL: str = "redis://localhost:6379/0"
    CACHE_BACKEND: str = "memory"  # memory | redis

    # Auth
    JWT_SECRET: str = "super-secret-jwt-key-change-in-production"
    JWT_ALGORITHM: str = "HS256"

    # Permissions
    ADMIN_ROLE: str = "admin"
    PUBLIC_ROUTES: List[str] = ["/auth/login", "/auth/register"]
    PERMISSION_STRATEGY: str = "whitelist"

    # Security
    ENABLE_CACHING: bool = True
    CACHE_TIMEOUT_SECONDS: int = 3600
    ENABLE_AUDIT_LOG: bool = True

    # Role hierarchy, inline JSON or from the config file
    ROLE_HIERARCHY: Dict[str, Any] = {}
    PERMGATE_CONFIG_FILE: Optional[str] = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True

    def permission_config(self) -> PermissionConfig:
        """Build the core configuration, applying the optional config file on top."""
        raw: Dict[str, Any] = {
            "permissions": {
                "admin_role": self.ADMIN_ROLE,
                "public_routes": list(self.PUBLIC_ROUTES),
                "permission_strategy": self.PERMISSION_STRATEGY,
            },
            "security": {
                "enable_caching": self.ENABLE_CACHING,
                "cache_timeout": self.CACHE_TIMEOUT_SECONDS,
                "enable_audit_log": self.ENABLE_AUDIT_LOG,
            },
            "role_hierarchy": dict(self.ROLE_HIERARCHY),
        }
        if self.PERMGATE_CONFIG_FILE:
            raw = merge_with_defaults(raw, load_config_file(self.PERMGATE_CONFIG_FILE))
        return build_permission_config(raw)


def load_config_file(path: str) -> Dict[str, Any]:
    """Read a JSON config file with optional permissions/security/role_hierarchy sections."""
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigurationError([f"Config file not found: {path}"])
    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError([f"Failed to load configuration from {path}: {e}"]) from e
    if not isinstance(data, dict):
        raise ConfigurationError([f"Config file {path} must contain a JSON object"])
    return data


def merge_with_defaults(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Merge section by section; a hierarchy in the overrides replaces the default one."""
    merged = {key: dict(value) for key, value in defaults.items()}
    for section in ("permissions", "security"):
        merged[section].update(overrides.get(section) or {})
    if overrides.get("role_hierarchy"):
        merged["role_hierarchy"] = dict(overrides["role_hierarchy"])
    return merged


def build_permission_config(raw: Dict[str, Any]) -> PermissionConfig:
    """Validate a raw mapping into a PermissionConfig, collecting every problem."""
    try:
        config = PermissionConfig.model_validate(raw)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
        raise ConfigurationError(errors) from e

    errors = []
    if config.security.cache_timeout <= 0:
        errors.append("security.cache_timeout: must be a positive number of seconds")
    if not config.permissions.admin_role:
        errors.append("permissions.admin_role: must not be empty")
    if errors:
        raise ConfigurationError(errors)
    return config


settings = Settings()
