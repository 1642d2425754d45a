"""Game Store backend configuration."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Environment-driven settings for the Game Store API."""

    mongo_uri: str = "mongodb://localhost:27017"
    database_name: str = "gamestore"

    jwt_secret: str = "dev-secret-key"
    jwt_ttl_hours: int = 24

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""

    # SMTP transport for transactional email
    smtp_host: str = ""
    smtp_port: int = 587
    email_user: str = ""
    email_password: str = ""

    client_origin: str = "http://localhost:3000"
    port: int = 5000

    # per-IP budget applied to every route except the Stripe webhook
    rate_limit: str = "100/15minutes"

    # Uploads: local static dir unless a remote image host is configured
    upload_dir: str = "uploads"
    image_host_url: str = ""
    image_host_preset: str = ""

    model_config = {"env_file": ".env", "extra": "ignore"}


settings = Settings()
