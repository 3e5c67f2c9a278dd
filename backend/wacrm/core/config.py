import os
import secrets
from typing import List, Union
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator


def generate_secret_key() -> str:
    """生成安全的 SECRET_KEY，优先从环境变量读取"""
    env_key = os.environ.get("SECRET_KEY")
    if env_key and len(env_key) >= 32:
        return env_key
    new_key = secrets.token_hex(32)
    print(f"⚠️ WARNING: SECRET_KEY not set in environment! Using generated key.")
    print(f"⚠️ For production, set SECRET_KEY={new_key} in .env file")
    return new_key


class Settings(BaseSettings):
    PROJECT_NAME: str = "WhatsApp CRM"
    API_V1_STR: str = "/api/v1"

    # 安全配置
    SECRET_KEY: str = Field(default_factory=generate_secret_key)
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7  # 7 days

    # Admin User - 生产环境必须修改
    ADMIN_USERNAME: str = "admin"
    ADMIN_PASSWORD: str = Field(default="")

    # 安全模式 - 生产环境设为 True
    SECURITY_ENABLED: bool = Field(default=True)

    # Database
    DATABASE_URL: str = "sqlite:///./wacrm.db"

    # CORS - 支持字符串或列表
    BACKEND_CORS_ORIGINS: Union[List[str], str] = ["http://localhost:3000", "http://localhost:8000", "http://127.0.0.1:3000"]

    # Redis
    REDIS_URL: str = "redis://localhost:6379/0"

    # Celery
    CELERY_BROKER_URL: str = ""
    CELERY_RESULT_BACKEND: str = ""

    # WhatsApp 网关 (Baileys sidecar)
    WA_GATEWAY_URL: str = "http://localhost:3001"
    WA_GATEWAY_API_KEY: str = ""
    WA_GATEWAY_TIMEOUT: int = 30
    # 网关回调 webhook 的共享密钥，为空时不校验
    WEBHOOK_SECRET: str = ""
    # 网关回调本服务的地址前缀，例如 http://backend:8000
    WEBHOOK_BASE_URL: str = "http://localhost:8000"

    # 会话
    DEFAULT_SESSION_ID: str = "default"
    AUTO_START_DEFAULT_SESSION: bool = Field(default=True)
    RECONNECT_DELAY_SECONDS: float = 2.0

    # 本地持久化目录
    AUTH_DIR: str = "./auth"
    JOBS_DIR: str = "./jobs"
    MEDIA_DIR: str = "./media"

    # 群组元数据刷新间隔 (秒)
    GROUP_REFRESH_INTERVAL: int = 600

    # 媒体下载失败多少次后补偿任务放弃 (媒体过期)
    MEDIA_MAX_ATTEMPTS: int = 5

    # 群发任务每处理多少个号码写一次 checkpoint
    BROADCAST_CHECKPOINT_EVERY: int = 5

    # 日志
    LOG_LEVEL: str = "INFO"
    LOG_TO_FILE: bool = True
    JSON_LOGS: bool = False
    LOG_DIR: str = "logs"

    # Session 云端备份
    SESSION_BACKUP_ENABLED: bool = Field(default=True)
    SESSION_ENCRYPTION_KEY: str = Field(default="")

    @field_validator("ADMIN_PASSWORD", mode="before")
    @classmethod
    def validate_admin_password(cls, v: str) -> str:
        """验证管理员密码安全性"""
        if not v or v in ["", "admin123", "password", "123456"]:
            new_password = secrets.token_urlsafe(16)
            print(f"⚠️ WARNING: ADMIN_PASSWORD not set or too weak!")
            print(f"⚠️ Generated secure password: {new_password}")
            print(f"⚠️ Set ADMIN_PASSWORD={new_password} in .env file")
            return new_password
        if len(v) < 12:
            print(f"⚠️ WARNING: ADMIN_PASSWORD should be at least 12 characters!")
        return v

    @field_validator("SESSION_ENCRYPTION_KEY", mode="before")
    @classmethod
    def validate_session_key(cls, v: str) -> str:
        """确保 Session 备份加密密钥存在"""
        if not v or len(v) < 32:
            new_key = secrets.token_hex(16)
            print(f"⚠️ WARNING: SESSION_ENCRYPTION_KEY not set!")
            print(f"⚠️ Set SESSION_ENCRYPTION_KEY={new_key} in .env file")
            return new_key
        return v

    @property
    def cors_origins(self) -> List[str]:
        if isinstance(self.BACKEND_CORS_ORIGINS, str):
            return [origin.strip() for origin in self.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]
        return [str(origin) for origin in self.BACKEND_CORS_ORIGINS]

    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True, extra="ignore")


settings = Settings()
