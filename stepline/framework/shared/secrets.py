"""
用户密钥加解密与脱敏

密钥以 Fernet 密文存储，主密钥来自 SECRETS_ENCRYPTION_KEY。
写入步骤记录或错误信息前，用 redact_secrets 把明文替换为 [REDACTED]。
"""

from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from stepline.framework.shared.exceptions import ConfigurationError

REDACTED = "[REDACTED]"

# 过短的值替换会误伤普通文本
MIN_REDACT_LENGTH = 4


class SecretCipher:
    """Fernet 密钥加解密"""

    def __init__(self, key: str | bytes):
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(
                "SECRETS_ENCRYPTION_KEY 不是有效的 Fernet 密钥", "SECRETS_ENCRYPTION_KEY"
            ) from e

    @classmethod
    def from_settings(cls, settings) -> "SecretCipher | None":
        """未配置主密钥时返回 None"""
        if not settings.SECRETS_ENCRYPTION_KEY:
            return None
        return cls(settings.SECRETS_ENCRYPTION_KEY)

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str, name: str | None = None) -> str:
        """
        Raises:
            ConfigurationError: 密文无法用当前主密钥解密
        """
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise ConfigurationError(
                f"密钥无法解密: {name or '未知'}", "SECRETS_ENCRYPTION_KEY"
            ) from e


def redact_secrets(value: Any, secret_values: list[str] | tuple[str, ...]) -> Any:
    """
    递归替换字符串、列表与字典中的密钥明文

    Args:
        value: 待脱敏的数据
        secret_values: 密钥明文（短于 4 个字符的忽略）

    Returns:
        Any: 脱敏后的副本
    """
    candidates = sorted(
        {secret for secret in secret_values if secret and len(secret) >= MIN_REDACT_LENGTH},
        key=len,
        reverse=True,
    )
    if not candidates:
        return value
    return _redact(value, candidates)


def _redact(value: Any, candidates: list[str]) -> Any:
    if isinstance(value, str):
        for secret in candidates:
            value = value.replace(secret, REDACTED)
        return value
    if isinstance(value, dict):
        return {key: _redact(item, candidates) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_redact(item, candidates) for item in value]
    return value
