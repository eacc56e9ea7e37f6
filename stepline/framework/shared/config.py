"""
配置管理

基于 pydantic-settings 实现：
- 环境变量与 .env 支持
- 配置验证
- 类型安全
- 默认值管理

设计原则：
- 单一职责
- 环境隔离
- 易于测试（get_settings 可被 cache_clear）
"""

from functools import lru_cache
from urllib.parse import urlparse

from arq.connections import RedisSettings
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from stepline.framework.shared.exceptions import ConfigurationError
from stepline.framework.shared.secrets import SecretCipher


class Settings(BaseSettings):
    """应用配置类"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # 通用配置
    ENVIRONMENT: str = Field(default="development", description="运行环境")
    DEBUG: bool = Field(default=False, description="调试模式")
    LOG_LEVEL: str = Field(default="INFO", description="日志级别")
    LOG_FORMAT: str = Field(default="console", description="日志格式 (console, json)")

    # 数据库配置
    DATABASE_URL: str = Field(
        default="sqlite:///./data/stepline.db", description="数据库连接地址"
    )
    DATABASE_ECHO: bool = Field(default=False, description="数据库调试输出")

    # Arq 配置
    ARQ_REDIS_URL: str = Field(
        default="redis://localhost:6379/0", description="Arq Redis 连接地址"
    )
    ARQ_QUEUE_NAME: str = Field(default="stepline:pipeline-runs", description="Arq 队列名称")
    WORKER_MAX_JOBS: int = Field(default=5, description="每个工作进程的并发运行数")
    WORKER_JOB_TIMEOUT: int = Field(default=3600, description="单个运行任务超时（秒）")
    QUEUE_KEEP_COMPLETED: int = Field(default=1000, description="保留的已完成任务数")
    QUEUE_KEEP_FAILED: int = Field(default=5000, description="保留的失败任务数")

    # 调度器配置
    SCHEDULER_POLL_INTERVAL_SECONDS: int = Field(default=30, description="调度器轮询间隔（秒）")
    SCHEDULER_BATCH_SIZE: int = Field(default=50, description="单次扫描的到期计划数")
    CATCH_UP_MAX_ITERATIONS: int = Field(default=10_000, description="追赶循环迭代上限")
    CONFLICT_RETRY_ATTEMPTS: int = Field(default=3, description="乐观更新冲突重试次数")

    # 计费配置
    MARKUP_PERCENTAGE: int = Field(default=25, description="模型成本加价百分比")
    TOKENS_PER_CREDIT: int = Field(default=1_000, description="每额度对应的令牌数")
    CREDIT_REFERENCE_PRICE_PER_MILLION: float = Field(
        default=10.0, description="额度换算参考价（美元/百万令牌）"
    )

    # 密钥配置
    SECRETS_ENCRYPTION_KEY: str = Field(
        default="", description="用户密钥加密主密钥（Fernet，urlsafe base64）"
    )

    # LLM 配置（用户密钥中的同名值优先）
    STEP_DEFAULT_MODEL: str = Field(default="gpt-4o-mini", description="步骤默认模型")
    OPENAI_API_BASE: str = Field(
        default="https://api.openai.com/v1", description="OpenAI 兼容 API 基础地址"
    )
    OPENAI_API_KEY: str = Field(default="", description="OpenAI API 密钥")
    ANTHROPIC_API_BASE: str = Field(
        default="https://api.anthropic.com/v1", description="Anthropic API 基础地址"
    )
    ANTHROPIC_API_KEY: str = Field(default="", description="Anthropic API 密钥")
    GOOGLE_API_BASE: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="Gemini API 基础地址",
    )
    GOOGLE_API_KEY: str = Field(default="", description="Gemini API 密钥")
    MISTRAL_API_BASE: str = Field(
        default="https://api.mistral.ai/v1", description="Mistral API 基础地址（OpenAI 兼容）"
    )
    MISTRAL_API_KEY: str = Field(default="", description="Mistral API 密钥")
    LLM_HTTP_TIMEOUT: float = Field(default=120.0, description="LLM HTTP 客户端超时（秒）")

    @property
    def is_development(self) -> bool:
        """是否为开发环境"""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """是否为生产环境"""
        return self.ENVIRONMENT == "production"

    @property
    def is_testing(self) -> bool:
        """是否为测试环境"""
        return self.ENVIRONMENT == "testing"

    def get_redis_settings(self) -> RedisSettings:
        """获取 Arq Redis 连接设置"""
        parsed = urlparse(self.ARQ_REDIS_URL)
        return RedisSettings(
            host=parsed.hostname or "localhost",
            port=parsed.port or 6379,
            database=int(parsed.path.lstrip("/") or 0),
            username=parsed.username,
            password=parsed.password,
            ssl=parsed.scheme == "rediss",
            conn_timeout=60,
            conn_retries=5,
            conn_retry_delay=1,
        )

    def scheduler_cron_seconds(self) -> set[int]:
        """调度器 cron 触发秒集合"""
        interval = self.SCHEDULER_POLL_INTERVAL_SECONDS
        return set(range(0, 60, interval))

    def validate_config(self) -> list[str]:
        """验证配置项"""
        errors = []

        if not self.DATABASE_URL:
            errors.append("DATABASE_URL 不能为空")

        if not self.ARQ_REDIS_URL:
            errors.append("ARQ_REDIS_URL 不能为空")

        if self.WORKER_MAX_JOBS < 1:
            errors.append("WORKER_MAX_JOBS 必须大于 0")

        interval = self.SCHEDULER_POLL_INTERVAL_SECONDS
        if interval < 1 or interval > 60 or 60 % interval != 0:
            errors.append("SCHEDULER_POLL_INTERVAL_SECONDS 必须能整除 60")

        if self.TOKENS_PER_CREDIT < 1:
            errors.append("TOKENS_PER_CREDIT 必须大于 0")

        if self.CREDIT_REFERENCE_PRICE_PER_MILLION <= 0:
            errors.append("CREDIT_REFERENCE_PRICE_PER_MILLION 必须大于 0")

        if self.MARKUP_PERCENTAGE < 0:
            errors.append("MARKUP_PERCENTAGE 不能为负数")

        if self.CATCH_UP_MAX_ITERATIONS < 1:
            errors.append("CATCH_UP_MAX_ITERATIONS 必须大于 0")

        if self.SECRETS_ENCRYPTION_KEY:
            try:
                SecretCipher(self.SECRETS_ENCRYPTION_KEY)
            except ConfigurationError as e:
                errors.append(e.message)

        return errors

    def is_valid(self) -> bool:
        """检查配置是否有效"""
        return len(self.validate_config()) == 0


@lru_cache
def get_settings() -> Settings:
    """获取全局设置实例"""
    return Settings()
