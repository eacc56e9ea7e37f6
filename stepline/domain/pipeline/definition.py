"""
流水线定义模型

定义是不可变的版本化文档，步骤配置按 type 区分（llm / transform）。
模板使用 jinja2 语法，上下文为 {input, vars, steps, env}，步骤只能引用排在它之前的步骤；
env 为运行所属用户的密钥。
"""

import json
import re
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal

from jinja2 import ChainableUndefined, TemplateSyntaxError, nodes
from jinja2.sandbox import SandboxedEnvironment
from pydantic import BaseModel, ConfigDict, Field, model_validator

from stepline.domain.pipeline.input_schema import InputVariable

STEP_ID_PATTERN = r"^[a-z0-9_]+$"

# 匹配 steps.<id> 与 steps['<id>'] 两种引用
_STEP_REFERENCE = re.compile(r"""steps(?:\.([a-z0-9_]+)|\[\s*['"]([a-z0-9_]+)['"]\s*\])""")


def _finalize(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return "" if value is None else value


_template_env = SandboxedEnvironment(
    autoescape=False,
    finalize=_finalize,
    undefined=ChainableUndefined,
    keep_trailing_newline=True,
)


def render_template(template: str, context: dict[str, Any]) -> str:
    """渲染步骤模板（未定义变量渲染为空字符串，对象渲染为 JSON）"""
    return _template_env.from_string(template).render(**context)


def referenced_secrets(template: str) -> set[str]:
    """返回模板中以 env.<name> 或 env['<name>'] 引用的密钥名"""
    names: set[str] = set()
    for node in _template_env.parse(template).find_all((nodes.Getattr, nodes.Getitem)):
        if not (isinstance(node.node, nodes.Name) and node.node.name == "env"):
            continue
        if isinstance(node, nodes.Getattr):
            names.add(node.attr)
        elif isinstance(node.arg, nodes.Const) and isinstance(node.arg.value, str):
            names.add(node.arg.value)
    return names


class OutputFormat(str, Enum):
    """步骤输出格式"""
    TEXT = "text"
    JSON = "json"
    MARKDOWN = "markdown"


class RetryPolicy(BaseModel):
    """步骤重试策略"""

    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=1, ge=1, le=5)
    backoff_ms: int = Field(default=1000, ge=0)


class BaseStep(BaseModel):
    """步骤公共配置"""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(pattern=STEP_ID_PATTERN)
    name: str
    output_format: OutputFormat = OutputFormat.TEXT
    timeout_seconds: int = Field(default=60, ge=1, le=300)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    # 执行前要求的最低余额
    min_charge: ClassVar[int] = 0

    def templates(self) -> list[str]:
        """返回步骤中所有模板字符串"""
        return []

    def secret_names(self) -> set[str]:
        """步骤模板引用的密钥名"""
        names: set[str] = set()
        for template in self.templates():
            names |= referenced_secrets(template)
        return names


class LlmStep(BaseStep):
    """语言模型调用步骤"""

    type: Literal["llm"] = "llm"
    model: str
    prompt: str
    system_prompt: str | None = None
    temperature: float | None = Field(default=None, ge=0, le=2)
    max_tokens: int | None = Field(default=None, ge=1)
    min_charge: ClassVar[int] = 1

    def templates(self) -> list[str]:
        return [t for t in (self.prompt, self.system_prompt) if t]


class TransformStep(BaseStep):
    """模板转换步骤（不调用模型，零成本）"""

    type: Literal["transform"] = "transform"
    prompt: str

    def templates(self) -> list[str]:
        return [self.prompt]


StepConfig = Annotated[LlmStep | TransformStep, Field(discriminator="type")]


class InputSection(BaseModel):
    """输入声明"""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    schema_: dict[str, InputVariable] = Field(default_factory=dict, alias="schema")


class OutputSection(BaseModel):
    """输出声明"""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    from_: str | None = Field(default=None, alias="from")


class PipelineDefinition(BaseModel):
    """流水线定义"""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    version: int = Field(default=1, ge=1)
    description: str | None = None
    input: InputSection = Field(default_factory=InputSection)
    variables: dict[str, str | int | float | bool] = Field(default_factory=dict)
    steps: list[StepConfig] = Field(min_length=1)
    output: OutputSection = Field(default_factory=OutputSection)

    @model_validator(mode="after")
    def _check_steps(self) -> "PipelineDefinition":
        seen: set[str] = set()
        for step in self.steps:
            if step.id in seen:
                raise ValueError(f"步骤 ID 重复: {step.id}")

            for template in step.templates():
                try:
                    _template_env.parse(template)
                except TemplateSyntaxError as e:
                    raise ValueError(f"步骤 {step.id} 模板语法错误: {e.message}") from e

                for match in _STEP_REFERENCE.finditer(template):
                    referenced = match.group(1) or match.group(2)
                    if referenced not in seen:
                        raise ValueError(
                            f"步骤 {step.id} 引用了未在其之前定义的步骤: {referenced}"
                        )
            seen.add(step.id)

        if self.output.from_ is not None and self.output.from_ not in seen:
            raise ValueError(f"output.from 引用了不存在的步骤: {self.output.from_}")
        return self

    @property
    def input_schema(self) -> dict[str, InputVariable]:
        return self.input.schema_

    @property
    def output_step_id(self) -> str:
        """输出来源步骤（默认最后一步）"""
        return self.output.from_ or self.steps[-1].id

    def to_document(self) -> dict[str, Any]:
        """序列化为可持久化的 JSON 文档"""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def build_context(
    definition: PipelineDefinition,
    input_data: dict[str, Any],
    step_outputs: dict[str, Any],
    env: dict[str, str] | None = None,
) -> dict[str, Any]:
    """构建模板上下文 {input, vars, steps, env}"""
    return {
        "input": input_data,
        "vars": dict(definition.variables),
        "steps": {step_id: {"output": output} for step_id, output in step_outputs.items()},
        "env": dict(env or {}),
    }
