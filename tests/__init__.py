"""
tests/ - 测试目录

- unit/: 单元测试
- helpers.py: 测试用的内存队列、脚本化步骤操作与数据构造函数
"""
