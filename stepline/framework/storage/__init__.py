"""
storage/ - 存储层

- database: DatabaseManager（SQLModel + 线程池）
- pipeline_gateway: 流水线数据访问网关
"""

from .database import DatabaseManager, UTCDateTime, init_database

__all__ = ["DatabaseManager", "UTCDateTime", "init_database"]
