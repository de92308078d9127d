"""
Configuration management for the Skymmich service.

Process-level settings come from the environment (and an optional ``.env``
file). Application settings edited through the admin API live in the
``admin_settings`` table and are merged over the defaults below.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process settings with validation."""

    # Storage
    database_url: str = Field(default="sqlite:///skymmich.db")
    xmp_sidecar_path: str = Field(default="./sidecars")

    # HTTP server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=5000, gt=0, lt=65536)

    # Bootstrap credentials, used only while the admin settings are empty
    immich_host: str = Field(default="")
    immich_api_key: str = Field(default="")
    astrometry_api_key: str = Field(default="")
    astrometry_base_url: str = Field(default="http://nova.astrometry.net")

    # Worker
    enable_plate_solving: bool = Field(default=True)
    plate_solve_max_wait: float = Field(default=300.0, gt=0.0)

    # HTTP behaviour
    max_retries: int = Field(default=3, gt=0)
    retry_delay: float = Field(default=1.0, gt=0.0)
    request_timeout: float = Field(default=30.0, gt=0.0)
    upload_timeout: float = Field(default=60.0, gt=0.0)

    # Housekeeping
    notification_retention_days: int = Field(default=30, gt=0)
    timezone: str = Field(default="UTC")

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    @field_validator("immich_host", "astrometry_base_url")
    @classmethod
    def validate_url(cls, v):
        """Ensure URLs are http(s) and carry no trailing slash."""
        if not v:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Ensure the log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of: {valid_levels}")
        return v.upper()


# Global settings instance
settings = Settings()


class _Section(BaseModel):
    """Admin settings section serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ImmichConfig(_Section):
    host: str = ""
    api_key: str = ""
    auto_sync: bool = False
    sync_frequency: str = "0 */4 * * *"
    sync_by_album: bool = False
    selected_album_ids: List[str] = Field(default_factory=list)
    metadata_sync_enabled: bool = False
    sync_description: bool = True
    sync_coordinates: bool = True
    sync_tags: bool = True

    @field_validator("host")
    @classmethod
    def strip_host(cls, v):
        return v.strip().rstrip("/") if v else ""


class AstrometryConfig(_Section):
    api_key: str = ""
    enabled: bool = False
    auto_enabled: bool = False
    check_interval: int = Field(default=30, ge=1)
    poll_interval: int = Field(default=5, ge=1)
    max_concurrent: int = Field(default=3, ge=1)
    auto_resubmit: bool = False
    max_attempts: int = Field(default=3, ge=1)


class SidecarConfig(_Section):
    enabled: bool = True
    output_path: str = ""
    organize_by_date: bool = False


class AppSection(_Section):
    debug_mode: bool = False


class AppConfig(_Section):
    """Merged application configuration."""

    immich: ImmichConfig = Field(default_factory=ImmichConfig)
    astrometry: AstrometryConfig = Field(default_factory=AstrometryConfig)
    sidecar: SidecarConfig = Field(default_factory=SidecarConfig)
    app: AppSection = Field(default_factory=AppSection)

    def to_public_dict(self) -> Dict[str, Any]:
        """Serialize for the admin API."""
        return self.model_dump(by_alias=True)


SECTION_MODELS = {
    "immich": ImmichConfig,
    "astrometry": AstrometryConfig,
    "sidecar": SidecarConfig,
    "app": AppSection,
}
SECTION_KEYS = tuple(SECTION_MODELS)


class ConfigService:
    """Loads, caches and persists the admin-editable configuration."""

    def __init__(self, storage, process_settings: Optional[Settings] = None):
        self.storage = storage
        self.settings = process_settings or settings
        self._config: Optional[AppConfig] = None

    def _defaults(self) -> AppConfig:
        """Defaults used while the database holds no admin settings."""
        config = AppConfig()
        config.immich.host = self.settings.immich_host
        config.immich.api_key = self.settings.immich_api_key
        config.astrometry.api_key = self.settings.astrometry_api_key
        config.sidecar.output_path = self.settings.xmp_sidecar_path
        return config

    def get_config(self) -> AppConfig:
        """Return the merged configuration, loading it on first use."""
        if self._config is not None:
            return self._config

        merged = self._defaults().model_dump()
        stored = self.storage.get_admin_settings()
        for key in SECTION_KEYS:
            section = stored.get(key)
            if not isinstance(section, dict):
                continue
            # Stored sections use camelCase keys; validate through the section model
            parsed = SECTION_MODELS[key].model_validate(section)
            for field_name in parsed.model_fields_set:
                value = getattr(parsed, field_name)
                # Empty strings never override bootstrap credentials
                if value == "" and merged[key].get(field_name):
                    continue
                merged[key][field_name] = value

        self._config = AppConfig.model_validate(merged)
        return self._config

    def update_config(self, new_config: Dict[str, Any]) -> AppConfig:
        """Persist a partial configuration and drop the cache.

        Only the sections present in ``new_config`` are written; within a
        section, supplied fields are merged over what is already stored.
        """
        stored = self.storage.get_admin_settings()
        updates: Dict[str, Any] = {}
        for key in SECTION_KEYS:
            if key not in new_config or not isinstance(new_config[key], dict):
                continue
            section_model = SECTION_MODELS[key]
            current = stored.get(key) if isinstance(stored.get(key), dict) else {}
            candidate = {**current, **new_config[key]}
            # Validation raises pydantic.ValidationError for bad values
            parsed = section_model.model_validate(candidate)
            updates[key] = parsed.model_dump(by_alias=True, include=parsed.model_fields_set)

        if updates:
            self.storage.update_admin_settings(updates)
        self.invalidate()
        return self.get_config()

    def invalidate(self) -> None:
        """Forget the cached configuration."""
        self._config = None

    def get_immich_config(self) -> ImmichConfig:
        return self.get_config().immich

    def get_astrometry_config(self) -> AstrometryConfig:
        return self.get_config().astrometry

    def get_sidecar_config(self) -> SidecarConfig:
        return self.get_config().sidecar

    def get_app_config(self) -> AppSection:
        return self.get_config().app
