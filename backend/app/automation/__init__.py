"""
RMM Autopilot 告警到动作自动化引擎 (Alert-to-Action Automation Engine)

接收 RMM/PSA 平台的告警 Webhook，按可配置规则自动执行修复脚本、工单更新、
通知和升级。
Ingests alerts from RMM/PSA webhooks and runs remediation scripts, ticket updates,
notifications and escalations according to configurable rules.

## 处理流程 (Processing Flow)

```
Webhook 载荷 (Webhook Payload)
    ↓
事件规范化 (Event Normalizer)          normalizer.py
    ↓
规则选择 + 条件评估 (Rule Selector)    selector.py / conditions.py
    ↓
执行时间窗口 (Schedule Gate)           schedule.py
    ↓
动作流水线 (Action Pipeline)           executor.py
    ↓
连续失败升级 (Escalation Controller)   escalation.py
    ↓
执行账本 (Execution Ledger)            ledger.py
```

## 核心组件 (Core Components)

- **AutomationEngine**: 编排器，持有 worker 池与每规则锁
- **ActionPipelineExecutor / DryRunExecutor**: 动作执行（重试、超时、continue_on_error）
- **EscalationController**: 升级执行的创建、推进、解决
- **AutomationStore / ExecutionLedger**: 基于注入的 async_sessionmaker 的存储
- **RedisEventQueue**: 多进程共享的 Redis 列表队列

外部系统（脚本执行、工单、通知、升级）通过 capabilities.py 中的接口注入。
"""
