"""
数据库连接模块 (Database Connection Module)

基于 SQLAlchemy 2.0 异步模式创建数据库引擎和会话管理，为 RMM Autopilot 提供数据持久化支持。
包含异步引擎创建、会话工厂配置和 ORM 基类定义。

Creates database engine and session management based on SQLAlchemy 2.0 async mode.
Includes async engine creation, session factory configuration, ORM base class
definition.
"""
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.core.config import settings

# 创建异步数据库引擎 (Create Async Database Engine)
engine = create_async_engine(
    settings.database_url,
    echo=False  # 生产环境关闭 SQL 日志输出 (Disable SQL logging in production)
)

# 创建异步会话工厂 (Create Async Session Factory)
# 自动化引擎通过注入此工厂访问存储，测试中替换为 SQLite 工厂
async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False  # 提交后不过期对象，便于访问已保存的数据 (Don't expire objects after commit)
)


class Base(DeclarativeBase):
    """
    ORM 模型基类 (ORM Model Base Class)

    SQLAlchemy 2.0 declarative base class that all data models inherit from.
    """
    pass

