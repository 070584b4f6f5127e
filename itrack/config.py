"""Application configuration using Pydantic Settings."""
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # App
    app_name: str = "iTrack Attendance"
    debug: bool = False
    log_level: str = "INFO"

    # MongoDB (change streams and transactions need a replica set)
    mongodb_url: str = "mongodb://localhost:27017/?replicaSet=rs0"
    mongodb_db_name: str = "itrack"
    attendance_collection: str = "attendance"

    # JWT
    jwt_secret_key: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 60
    jwt_refresh_token_expire_days: int = 30

    # AWS S3 (second step of the photo fallback chain)
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    aws_region: str = "ap-south-1"
    s3_bucket_photos: str = ""

    # Firebase (FCM + Storage)
    firebase_credentials_path: str = ""
    firebase_storage_bucket: str = ""

    # Photo upload: comma-separated mirror endpoints, tried in order.
    # Prefix an endpoint with "raw:" to post the bytes as the request body
    # instead of multipart form data.
    photo_upload_endpoints: str = ""
    photo_upload_api_key: str = ""
    photo_upload_timeout_seconds: float = 15.0
    photo_compress_threshold_bytes: int = 500 * 1024
    photo_placeholder_url: str = ""

    # Seed supervisor
    seed_supervisor_email: str = "supervisor@itrack.local"
    seed_supervisor_password: str = ""

    # CORS (comma-separated origins)
    cors_origins: str = "http://localhost:5173"

    @model_validator(mode="after")
    def _validate_production_secrets(self):
        if not self.debug:
            if self.jwt_secret_key in ("change-me-in-production", ""):
                raise ValueError(
                    "JWT_SECRET_KEY must be set to a strong secret when DEBUG is not enabled. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
        return self

    @property
    def upload_endpoints(self) -> list[str]:
        return [e.strip() for e in self.photo_upload_endpoints.split(",") if e.strip()]


settings = Settings()
