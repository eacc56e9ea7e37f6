"""
workers/ - Arq 异步任务层

- queue: 运行队列（arq）
- executor: 步骤执行器
- scheduler: 定时计划调度器
- settings: 工作者配置（WorkerSettings 需显式导入，导入时读取配置）
"""
