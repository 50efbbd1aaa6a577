from pydantic_settings import BaseSettings
from typing import Optional

class Settings(BaseSettings):
    # Backend API
    api_base_url: str = "http://localhost:5000/api"
    api_token: Optional[str] = None

    # Object storage
    # 相对路径直接拼接在此前缀之后，必须与已存储的相对路径保持一致
    storage_base_url: str = "https://storage.googleapis.com/innu-videos/"

    # Upload
    max_upload_mb: int = 100
    default_content_type: str = "video/mp4"
    transfer_chunk_size: int = 1024 * 1024  # 1MB

    # 每个网络步骤的超时（秒）
    request_timeout_seconds: float = 30.0
    transfer_timeout_seconds: float = 600.0
    download_timeout_seconds: float = 600.0

    # Local files
    download_dir: str = "./downloads"
    temp_dir: Optional[str] = None

    # Logging
    log_level: str = "INFO"

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024

    class Config:
        env_file = ".env"
        env_prefix = "SHOPVIDEO_"
        case_sensitive = False
        extra = "allow"

settings = Settings()
