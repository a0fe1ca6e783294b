"""Application configuration."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    app_name: str = "Forge Navigator"
    debug: bool = False

    # Database
    database_url: str = "postgresql+asyncpg://localhost/navigator"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Forge (Stable Diffusion WebUI) backend
    forge_api_url: str = "http://localhost:7860/sdapi/v1"
    forge_request_timeout_seconds: int = 30

    # Queue worker
    worker_enabled: bool = True
    job_progress_check_interval_ms: int = 2500
    queue_idle_delay_ms: int = 100

    # Admission limits
    image_pixel_limit: int = 3686400
    allow_legacy_bot_endpoints: bool = True

    # Automation (0 disables automatic checkpoint unloading)
    checkpoint_unload_interval_minutes: int = 0

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
