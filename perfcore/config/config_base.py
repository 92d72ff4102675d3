from typing import Any

from pydantic import BaseModel, ValidationError
from typing_extensions import Self


class ConfigError(ValueError):
    """配置文件内容无法通过校验"""


class ValidatedConfigBase(BaseModel):
    """带验证的配置基类，继承自Pydantic BaseModel"""

    model_config = {
        "extra": "allow",  # 允许额外字段
        "validate_assignment": True,  # 验证赋值
        "strict": True,  # 禁用隐式类型转换
    }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """从字典创建配置，校验失败时抛出带中文说明的 ConfigError"""
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(cls._create_enhanced_error_message(e)) from e

    def merged(self, changes: dict[str, Any]) -> Self:
        """返回合并了部分修改后重新校验的新配置，原对象不变"""
        data = self.model_dump()
        _deep_update(data, changes)
        return self.from_dict(data)

    @classmethod
    def _create_enhanced_error_message(cls, e: ValidationError) -> str:
        messages = []
        for error in e.errors():
            error_type = error.get("type", "")
            field_path_str = ".".join(str(p) for p in error.get("loc", ()))
            input_value = error.get("input")

            if error_type == "missing":
                messages.append(f"缺少必需字段: '{field_path_str}'")
            elif error_type.endswith("_type"):
                messages.append(
                    f"字段 '{field_path_str}' 类型错误: {error.get('msg', '')}，"
                    f"实际类型 {type(input_value).__name__} (值: {input_value})"
                )
            elif error_type in ("greater_than", "greater_than_equal", "less_than", "less_than_equal"):
                messages.append(f"字段 '{field_path_str}' 超出范围: {error.get('msg', '')} (值: {input_value})")
            else:
                messages.append(f"字段 '{field_path_str}': {error.get('msg', str(error))}")

        return "配置验证失败：\n" + "\n".join(f"  - {msg}" for msg in messages)


def _deep_update(target: dict[str, Any], changes: dict[str, Any]) -> None:
    for key, value in changes.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_update(target[key], value)
        else:
            target[key] = value
