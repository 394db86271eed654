#!/usr/bin/env python3
"""
数据库迁移执行脚本 (Database Migration Execution Script)

不依赖 alembic.ini，直接以 backend/alembic 为脚本目录运行 Alembic 命令。
默认升级到最新版本，也可以指定目标版本或降级。

Runs Alembic against backend/alembic without an alembic.ini file.
Upgrades to head by default; a target revision or a downgrade can be given.

用法 (Usage):
    python run_migration.py                  # upgrade head
    python run_migration.py upgrade 001_automation
    python run_migration.py downgrade base
    python run_migration.py current
"""
import argparse
import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

from app.core.config import settings

logger = logging.getLogger("run_migration")

SCRIPT_LOCATION = Path(__file__).parent / "backend" / "alembic"


def alembic_config(db_url: str) -> Config:
    """构造内存中的 Alembic 配置 (Build in-memory Alembic config)"""
    cfg = Config()
    cfg.set_main_option("script_location", str(SCRIPT_LOCATION))
    cfg.set_main_option("sqlalchemy.url", db_url)
    # env.py 读取 -x db_url
    cfg.cmd_opts = argparse.Namespace(x=[f"db_url={db_url}"])
    return cfg


def main() -> None:
    parser = argparse.ArgumentParser(description="Run RMM Autopilot database migrations")
    parser.add_argument("action", nargs="?", default="upgrade", choices=["upgrade", "downgrade", "current", "history"])
    parser.add_argument("revision", nargs="?", default=None)
    parser.add_argument("--db-url", default=settings.database_url, help="override the configured database URL")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    cfg = alembic_config(args.db_url)

    if args.action == "upgrade":
        revision = args.revision or "head"
        logger.info("Upgrading database to %s", revision)
        command.upgrade(cfg, revision)
    elif args.action == "downgrade":
        if not args.revision:
            parser.error("downgrade needs a target revision, e.g. 'base'")
        logger.info("Downgrading database to %s", args.revision)
        command.downgrade(cfg, args.revision)
    elif args.action == "current":
        command.current(cfg, verbose=True)
    else:
        command.history(cfg)


if __name__ == "__main__":
    main()
