"""
共享测试装置

每个测试使用独立的 SQLite 文件数据库。
"""

import pytest

from stepline.framework.storage.database import DatabaseManager
from stepline.framework.storage.pipeline_gateway import PipelineGateway
from tests.helpers import FakeRunQueue


@pytest.fixture
def db_manager(tmp_path):
    """已建表的数据库管理器"""
    manager = DatabaseManager(f"sqlite:///{tmp_path / 'stepline.db'}")
    manager.create_tables()
    yield manager
    manager.engine.dispose()
    manager._executor.shutdown(wait=True)


@pytest.fixture
def gateway(db_manager):
    return PipelineGateway(db_manager)


@pytest.fixture
def fake_queue():
    return FakeRunQueue()
