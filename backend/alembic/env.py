"""Alembic 数据库迁移环境配置。

迁移目标为自动化相关的六张表（告警事件、规则、执行账本、升级链、升级执行）。
连接地址默认取自 Settings.database_url，可用 ``alembic -x db_url=...`` 覆盖。
在线模式通过 asyncio 驱动 asyncpg 引擎。
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from app.core.config import settings
from app.core.database import Base
import app.models  # noqa: F401  注册 AlertEvent / AutomationRule / MappingExecution / ActionExecution / EscalationChain / EscalationExecution

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# 命令行 -x db_url=... 优先于环境配置
db_url = context.get_x_argument(as_dictionary=True).get("db_url") or settings.database_url
config.set_main_option("sqlalchemy.url", db_url)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """离线模式：只输出 SQL，不连接数据库。"""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    # JSON 列类型变化也要检测到
    context.configure(connection=connection, target_metadata=target_metadata, compare_type=True)
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)
    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
