from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    gcp_project_id: str
    gcs_bucket: str
    firebase_project_id: str
    firebase_api_key: str = ""

    gemini_api_key: str = ""
    gemini_model: str = "gemini-1.5-flash"

    signed_url_ttl_seconds: int = 900
    max_metadata_bytes: int = 5_000_000

    cors_origins: str = "http://localhost:9002,http://127.0.0.1:9002"
    log_level: str = "INFO"

    class Config:
        env_file = ".env"


settings = Settings()
