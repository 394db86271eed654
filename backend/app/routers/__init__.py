"""
RMM Autopilot 路由模块包 (RMM Autopilot Router Module Package)

本包包含 RMM Autopilot 后端 API 的所有路由模块，按功能域进行组织。
路由只做请求解析和响应组装，业务逻辑全部在 app.automation 中。

路由模块组织结构 (Router Module Organization):

=== 事件接收路由 (Ingestion Routes) ===
- webhooks.py: RMM/PSA Webhook 接收（原始载荷、签名校验、幂等保存）

=== 自动化路由 (Automation Routes) ===
- automation.py: 自动化规则管理（规则CRUD、克隆、测试触发、统计）、执行记录和告警事件查询

=== 升级路由 (Escalation Routes) ===
- escalation.py: 升级链管理、升级执行查询、手动推进和解决

路由注册:
所有路由模块在 main.py 中通过 app.include_router() 统一注册，
并按照 RESTful API 标准设置统一的前缀和标签。

API版本控制:
当前所有API使用 v1 版本前缀 (/api/v1/)，
为未来API版本升级预留扩展空间。

Author: RMM Autopilot Team
"""
