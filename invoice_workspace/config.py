"""Application configuration"""

import os
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings"""

    # Application
    APP_NAME: str = "InvoiceWorkspace"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = os.getenv("DEBUG", "False").lower() == "true"
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")

    # Database (record store)
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./invoice_workspace.db")

    # Object storage (local by default, Azure Blob Storage optional)
    USE_AZURE_STORAGE: bool = os.getenv("USE_AZURE_STORAGE", "False").lower() == "true"
    LOCAL_STORAGE_PATH: str = os.getenv("LOCAL_STORAGE_PATH", "./storage")
    AZURE_STORAGE_ACCOUNT_NAME: Optional[str] = os.getenv("AZURE_STORAGE_ACCOUNT_NAME")
    AZURE_STORAGE_CONNECTION_STRING: Optional[str] = os.getenv("AZURE_STORAGE_CONNECTION_STRING")
    AZURE_STORAGE_CONTAINER: str = os.getenv("AZURE_STORAGE_CONTAINER", "invoice-workspace")
    STORAGE_ROOT_PREFIX: str = os.getenv("STORAGE_ROOT_PREFIX", "user-files")

    # Ingestion
    INGESTION_BATCH_SIZE: int = int(os.getenv("INGESTION_BATCH_SIZE", "25"))
    PERSIST_INVALID_ROWS: bool = os.getenv("PERSIST_INVALID_ROWS", "True").lower() == "true"
    ERROR_SAMPLE_SIZE: int = int(os.getenv("ERROR_SAMPLE_SIZE", "3"))
    MAX_STORED_ROW_ERRORS: int = int(os.getenv("MAX_STORED_ROW_ERRORS", "100"))

    # File Processing
    MAX_FILE_SIZE_MB: int = int(os.getenv("MAX_FILE_SIZE_MB", "50"))
    UPLOAD_CHUNK_SIZE: int = int(os.getenv("UPLOAD_CHUNK_SIZE", str(256 * 1024)))
    PDF_URL_EXPIRY_SECONDS: int = int(os.getenv("PDF_URL_EXPIRY_SECONDS", "3600"))

    # Progress
    PROGRESS_RETAINED_FINISHED: int = int(os.getenv("PROGRESS_RETAINED_FINISHED", "50"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE: Optional[str] = os.getenv("LOG_FILE")

    class Config:
        env_file = ".env"
        case_sensitive = True


# Global settings instance
settings = Settings()
