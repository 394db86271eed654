"""
应用配置模块 (Application Configuration Module)

使用 Pydantic Settings 管理 RMM Autopilot 的所有配置项，支持从 .env 文件和环境变量读取。
提供数据库连接、Redis 队列、自动化引擎、升级调度、Webhook 签名等各模块的配置管理。

Uses Pydantic Settings to manage all configuration items for RMM Autopilot,
supporting reading from .env files and environment variables. Provides configuration
for database connections, the Redis queue, the automation engine, escalation
scheduling, and webhook signature verification.
"""
import logging

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    应用全局配置类 (Application Global Configuration Class)

    字段名自动映射同名环境变量（不区分大小写），支持 .env 文件加载。
    引擎本身不读取此全局实例，所有协作者都在 main.py 中显式注入。

    Field names map to same-named environment variables (case insensitive),
    with .env file support. The engine never reads this global instance itself;
    main.py wires every collaborator explicitly.
    """

    # 数据库配置 (Database Configuration)
    postgres_host: str = "localhost"  # PostgreSQL 主机地址 (PostgreSQL Host)
    postgres_port: int = 5432  # PostgreSQL 端口号 (PostgreSQL Port)
    postgres_db: str = "rmm_autopilot"  # 数据库名称 (Database Name)
    postgres_user: str = "rmm_autopilot"  # 数据库用户名 (Database Username)
    postgres_password: str = "rmm_autopilot_dev_password"  # 数据库密码 (Database Password)

    # Redis 配置 (Redis Configuration)
    redis_host: str = "localhost"  # Redis 主机地址 (Redis Host)
    redis_port: int = 6379  # Redis 端口号 (Redis Port)

    # 自动化引擎配置 (Automation Engine Configuration)
    automation_enabled: bool = True  # 是否在启动时运行工作池 (Start the worker pool on startup)
    automation_concurrency: int = 5  # 工作协程数量 (Worker pool size)
    automation_queue_size: int = 1000  # 进程内队列上限 (In-process queue bound)
    automation_queue_backend: str = "memory"  # 队列来源：memory/redis (Queue transport)
    automation_queue_key: str = "rmm:automation:events"  # Redis 列表键名 (Redis list key)
    automation_queue_poll_seconds: int = 5  # BRPOP 阻塞时间 (BRPOP block timeout)
    automation_store_retry_limit: int = 3  # 存储失败后的重投次数 (Re-deliveries after store failure)
    automation_store_retry_delay_seconds: int = 5  # 重投间隔 (Re-delivery delay)
    # ⚠️ dry-run 只记录动作，不调用外部系统 (Dry-run records actions without calling external systems)
    automation_dry_run: bool = False

    # 升级调度配置 (Escalation Scheduling Configuration)
    escalation_scan_interval_seconds: int = 60  # 升级扫描间隔 (Escalation scan interval)

    # Webhook 签名密钥，留空则不校验 (Webhook signature secrets, empty disables verification)
    connectwise_webhook_secret: str = ""
    nable_webhook_secret: str = ""
    generic_webhook_secret: str = ""

    # 通知配置 (Notification Configuration)
    notification_webhook_url: str = ""  # 默认通知 Webhook 地址 (Default notification webhook URL)
    notification_timeout_seconds: int = 10  # 通知请求超时 (Notification request timeout)

    environment: str = "development"  # 运行环境：development/production (Runtime Environment)

    @property
    def database_url(self) -> str:
        """
        构造 PostgreSQL 异步连接 URL (Build PostgreSQL Async Connection URL)

        Generates a connection string suitable for the asyncpg driver.
        """
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def redis_url(self) -> str:
        """构造 Redis 连接 URL (Build Redis Connection URL)"""
        return f"redis://{self.redis_host}:{self.redis_port}/0"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}  # Pydantic 配置：自动加载 .env 文件 (Pydantic Config: Auto-load .env file)


# 全局配置实例 (Global Configuration Instance)
settings = Settings()

if settings.automation_dry_run:
    logger.warning(
        "AUTOMATION_DRY_RUN 已开启，所有动作只记录不执行。"
        " | AUTOMATION_DRY_RUN is enabled, actions are recorded but never executed."
    )
