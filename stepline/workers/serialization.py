"""
Arq 序列化配置

任务与结果使用 msgpack 编码，任务参数只包含 run_id 等基本类型。
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

import msgpack

from stepline.framework.shared.logging import get_logger

logger = get_logger(__name__)


class MsgpackSerializer:
    """Msgpack 序列化器"""

    @staticmethod
    def _default(obj: Any) -> Any:
        if isinstance(obj, datetime):
            return {"__datetime__": obj.isoformat()}
        if isinstance(obj, date):
            return {"__date__": obj.isoformat()}
        if isinstance(obj, Decimal):
            return {"__decimal__": str(obj)}
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, set):
            return {"__set__": list(obj)}
        if isinstance(obj, BaseException):
            # arq 会把任务异常写入结果
            return {"__exception__": type(obj).__name__, "message": str(obj)}
        raise TypeError(f"无法序列化类型: {type(obj)}")

    @staticmethod
    def _object_hook(obj: dict[str, Any]) -> Any:
        if "__datetime__" in obj:
            return datetime.fromisoformat(obj["__datetime__"])
        if "__date__" in obj:
            return date.fromisoformat(obj["__date__"])
        if "__decimal__" in obj:
            return Decimal(obj["__decimal__"])
        if "__set__" in obj:
            return set(obj["__set__"])
        return obj

    @classmethod
    def serialize(cls, data: Any) -> bytes:
        """
        序列化数据为 msgpack 格式

        Args:
            data: 要序列化的数据

        Returns:
            bytes: 序列化后的二进制数据
        """
        try:
            return msgpack.packb(data, default=cls._default, use_bin_type=True)
        except (TypeError, ValueError, OverflowError) as e:
            logger.error("Msgpack 序列化失败", error=str(e))
            raise

    @classmethod
    def deserialize(cls, data: bytes) -> Any:
        """
        从 msgpack 格式反序列化数据

        Args:
            data: msgpack 二进制数据

        Returns:
            Any: 反序列化后的数据
        """
        try:
            return msgpack.unpackb(data, object_hook=cls._object_hook, raw=False)
        except (ValueError, msgpack.UnpackException) as e:
            logger.error("Msgpack 反序列化失败", error=str(e))
            raise


# arq job_serializer / job_deserializer
job_serializer = MsgpackSerializer.serialize
job_deserializer = MsgpackSerializer.deserialize
