"""
核心模块包 (Core Module Package)

RMM Autopilot 的基础设施组件：配置管理、数据库连接、Redis 队列连接、异常体系和依赖注入。

Infrastructure components for RMM Autopilot: configuration, database connections,
the Redis queue connection, the exception taxonomy, and dependency injection.
"""
