"""
domain/ - 领域层

流水线定义、输入校验、Cron 引擎与额度核算。
"""
