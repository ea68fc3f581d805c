from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # MySQL配置
    mysql_host: str = "127.0.0.1"
    mysql_port: int = 3306
    mysql_database: str = "billsync"
    mysql_user: str = "billsync"
    mysql_password: str = ""
    # 直接指定连接串时优先使用（测试中使用sqlite+aiosqlite）
    database_url: Optional[str] = None

    # 账单后端API配置
    backend_base_url: str = "http://127.0.0.1:8000/api/v1"
    request_timeout: float = 15.0

    # LLM配置
    llm_api_key: str = "sk-"
    llm_base_url: str = "https://api.openai.com/v1"
    llm_model: str = "gpt-4o-mini"
    llm_max_body_length: int = 8000

    # 同步层配置
    auto_accept_threshold: float = 0.85
    undo_window_seconds: float = 10.0
    toast_duration_seconds: float = 5.0
    stale_after_seconds: float = 300.0
    urgent_days: int = 3
    forgot_window_days: int = 7
    state_dir: str = ".billsync"
    # 邮箱来源实现，格式 模块:类名，为空表示未连接邮箱
    mailbox_source: Optional[str] = None
    default_user_id: str = "local"

    # 扫描参数上限
    scan_max_results: int = 500
    scan_max_days_back: int = 180

    # 应用配置
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    debug: bool = False
    log_level: str = "INFO"

    class Config:
        env_file = ".env"

    @property
    def sqlalchemy_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"mysql+aiomysql://{self.mysql_user}:{self.mysql_password}"
            f"@{self.mysql_host}:{self.mysql_port}/{self.mysql_database}"
        )


settings = Settings()
