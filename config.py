from typing import List, Optional
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings

APP_NAME = "Prompit"


class ConfigError(RuntimeError):
    pass


class Settings(BaseSettings):
    # Backend selection: "pocketbase" or "supabase"
    BACKEND: str = "pocketbase"

    # PocketBase
    POCKETBASE_URL: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("POCKETBASE_URL", "PB_URL")
    )
    POCKETBASE_SERVICE_TOKEN: Optional[str] = None

    # Supabase
    SUPABASE_URL: Optional[str] = None
    SUPABASE_KEY: Optional[str] = None

    # Auth
    COMPANY_DOMAIN: Optional[str] = None
    AUTH_MODE: str = "google"
    SESSION_SECRET: str = "super-secret-fallback"
    OIDC_DISCOVERY_URL: str = "https://accounts.google.com/.well-known/openid-configuration"
    OIDC_CLIENT_ID: Optional[str] = None
    OIDC_CLIENT_SECRET: Optional[str] = None

    # AI suggestions
    GEMINI_MODEL: str = "gemma-3-27b-it"

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "ignore"

    def model_post_init(self, __context):
        self.BACKEND = (self.BACKEND or "pocketbase").strip().lower()
        # anything but "email" falls back to the OAuth flow
        self.AUTH_MODE = "email" if (self.AUTH_MODE or "").strip().lower() == "email" else "google"
        if self.COMPANY_DOMAIN:
            self.COMPANY_DOMAIN = self.COMPANY_DOMAIN.strip().lstrip("@").lower()

    def missing_variables(self) -> List[str]:
        missing = []
        if self.BACKEND == "supabase":
            if not _present(self.SUPABASE_URL):
                missing.append("SUPABASE_URL")
            if not _present(self.SUPABASE_KEY):
                missing.append("SUPABASE_KEY")
        elif not _present(self.POCKETBASE_URL):
            missing.append("POCKETBASE_URL (or PB_URL)")
        if not _present(self.COMPANY_DOMAIN):
            missing.append("COMPANY_DOMAIN")
        return missing


def _present(value: Optional[str]) -> bool:
    return bool(value and value.strip())


def load_settings(**overrides) -> Settings:
    """Read settings from the environment and refuse to start without the required ones."""
    loaded = Settings(**overrides)
    if loaded.BACKEND not in ("pocketbase", "supabase"):
        raise ConfigError(f"Unsupported BACKEND '{loaded.BACKEND}'. Use 'pocketbase' or 'supabase'.")

    missing = loaded.missing_variables()
    if missing:
        raise ConfigError(
            f"Missing required environment variable(s): {', '.join(missing)}. "
            "Set them in .env and restart the server."
        )
    return loaded


settings = load_settings()
