"""
Configuración centralizada de la aplicación.
Lee todas las variables de entorno usando pydantic-settings.
NUNCA hardcodear valores sensibles aquí.
"""

from decimal import Decimal
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from services.conversion import MIN_DEPOSIT_CRYPTO, MIN_DEPOSIT_USD


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Base de datos -------------------------------------------------------
    # URL asíncrona (asyncpg) para el servidor FastAPI
    DATABASE_URL: str

    # URL síncrona (psycopg2) usada exclusivamente por Alembic para migraciones
    DATABASE_SYNC_URL: str = ""

    # --- Seguridad -----------------------------------------------------------
    # Clave compartida con el proveedor de autenticación para verificar los JWT.
    SECRET_KEY: str

    # --- Aplicación ----------------------------------------------------------
    APP_ENV: str = "production"
    LOG_LEVEL: str = "INFO"

    # Orígenes CORS permitidos (cadena separada por comas)
    CORS_ORIGINS: str = "http://localhost:3000"

    # --- Precios de mercado --------------------------------------------------
    COINGECKO_API_URL: str = "https://api.coingecko.com/api/v3"
    PRICE_CACHE_TTL_SECONDS: int = 30

    # --- Depósitos -----------------------------------------------------------
    # Mínimos en USD; fiat y cripto tienen umbrales distintos
    MIN_DEPOSIT_USD: Decimal = MIN_DEPOSIT_USD
    MIN_DEPOSIT_CRYPTO: Decimal = MIN_DEPOSIT_CRYPTO

    # --- Email ---------------------------------------------------------------
    # Vacío = sin envío de emails (solo notificaciones in-app)
    RESEND_API_KEY: str = ""
    EMAIL_FROM: str = "CryptoVault <noreply@cryptovault.com>"

    # --- Propiedades calculadas ----------------------------------------------
    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @field_validator("PRICE_CACHE_TTL_SECONDS")
    @classmethod
    def validate_cache_ttl(cls, v: int) -> int:
        if v < 1:
            raise ValueError("PRICE_CACHE_TTL_SECONDS debe ser >= 1")
        return v

    @field_validator("MIN_DEPOSIT_USD", "MIN_DEPOSIT_CRYPTO")
    @classmethod
    def validate_minimums(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("Los mínimos de depósito no pueden ser negativos")
        return v

    @field_validator("APP_ENV")
    @classmethod
    def validate_app_env(cls, v: str) -> str:
        allowed = {"development", "production", "test"}
        if v not in allowed:
            raise ValueError(f"APP_ENV debe ser uno de: {allowed}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"LOG_LEVEL debe ser uno de: {allowed}")
        return v.upper()


@lru_cache
def get_settings() -> Settings:
    """Instancia singleton de Settings, cacheada para evitar re-lecturas del .env."""
    return Settings()
