"""
输入 Schema 校验

按流水线定义中声明的变量校验原始输入：
- 缺失或为 None 的变量使用默认值，否则按 required 报告问题
- 存在的变量按声明类型校验（string / number / integer / boolean）
- 未声明的字段原样透传

校验是纯函数，从不抛出异常；调用方需要同步失败时使用 raise_for_issues。
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

from stepline.framework.shared.exceptions import ValidationError


class InputType(str, Enum):
    """输入变量类型"""
    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"


class InputVariable(BaseModel):
    """输入变量声明"""

    model_config = ConfigDict(extra="forbid")

    type: InputType
    required: bool = False
    default: Any = None
    description: str | None = None


@dataclass
class InputValidationResult:
    """输入校验结果"""

    valid: bool
    data: dict[str, Any]
    issues: list[dict[str, str]] = field(default_factory=list)

    def raise_for_issues(self) -> dict[str, Any]:
        """
        校验失败时抛出 ValidationError

        Returns:
            dict[str, Any]: 校验通过时返回已应用默认值的数据

        Raises:
            ValidationError: 携带完整问题列表
        """
        if not self.valid:
            fields = ", ".join(issue["field"] for issue in self.issues)
            raise ValidationError(f"输入校验失败: {fields}", issues=list(self.issues))
        return self.data


def _is_number(value: Any) -> bool:
    # bool 是 int 的子类，但布尔值从不视为数字
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def matches_type(expected: InputType | str, value: Any) -> bool:
    """判断值是否符合声明类型"""
    if value is None:
        return False

    expected = InputType(expected)
    if expected is InputType.STRING:
        return isinstance(value, str)
    if expected is InputType.BOOLEAN:
        return isinstance(value, bool)
    if expected is InputType.NUMBER:
        return _is_number(value)
    if expected is InputType.INTEGER:
        if isinstance(value, float):
            return value.is_integer()
        return _is_number(value)
    return False


def _coerce_variable(variable: InputVariable | Mapping[str, Any]) -> InputVariable:
    if isinstance(variable, InputVariable):
        return variable
    return InputVariable.model_validate(variable)


def validate_input(
    schema: Mapping[str, InputVariable | Mapping[str, Any]] | None,
    raw_input: Mapping[str, Any] | None,
) -> InputValidationResult:
    """
    按 schema 校验原始输入

    Args:
        schema: 变量名 -> 变量声明（按声明顺序检查）
        raw_input: 原始输入

    Returns:
        InputValidationResult: data 始终已应用默认值，无论是否有效
    """
    data = dict(raw_input or {})
    issues: list[dict[str, str]] = []

    for name, declared in (schema or {}).items():
        variable = _coerce_variable(declared)
        value = data.get(name)

        if value is None:
            if variable.default is not None:
                data[name] = variable.default
                continue
            if variable.required:
                issues.append({"field": name, "message": f'字段 "{name}" 为必填项'})
            continue

        if not matches_type(variable.type, value):
            issues.append({
                "field": name,
                "message": f'字段 "{name}" 必须是 {variable.type.value} 类型',
            })

    return InputValidationResult(valid=not issues, data=data, issues=issues)
