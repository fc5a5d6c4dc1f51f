"""
사용자 정의 필드 스키마

이벤트/시설의 custom_fields를 테넌트가 정의한 PropertySchema로 검증한다.
검증은 첫 오류에서 멈추지 않고 모든 문제를 수집한다.
"""

import re
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, model_validator


EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PHONE_PATTERN = re.compile(r"^\+?[0-9\s\-()]{7,20}$")


class PropertyType(str, Enum):
    """필드 유형"""
    text = "text"
    number = "number"
    boolean = "boolean"
    select = "select"
    multi_select = "multi_select"
    date = "date"
    datetime = "datetime"
    time = "time"
    email = "email"
    phone = "phone"
    url = "url"
    text_area = "text_area"
    currency = "currency"


class PropertyDefinition(BaseModel):
    """필드 정의"""
    key: str = Field(..., min_length=1)
    label: str = ""
    type: PropertyType = PropertyType.text
    required: bool = False
    options: List[str] = Field(default_factory=list)
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    max_length: Optional[int] = Field(None, ge=1)
    default_value: Optional[Any] = None
    placeholder: Optional[str] = None
    help_text: Optional[str] = None

    @model_validator(mode="after")
    def validate_definition(self):
        if self.type in (PropertyType.select, PropertyType.multi_select) and not self.options:
            raise ValueError(f"선택형 필드 '{self.key}'에는 options가 필요합니다")
        if self.min_value is not None and self.max_value is not None and self.min_value > self.max_value:
            raise ValueError(f"필드 '{self.key}'의 min_value가 max_value보다 큽니다")
        return self


class PropertySchema(BaseModel):
    """필드 스키마"""
    properties: List[PropertyDefinition] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_unique_keys(self):
        keys = [p.key for p in self.properties]
        duplicates = sorted({k for k in keys if keys.count(k) > 1})
        if duplicates:
            raise ValueError(f"중복된 필드 키: {', '.join(duplicates)}")
        return self

    def get(self, key: str) -> Optional[PropertyDefinition]:
        for definition in self.properties:
            if definition.key == key:
                return definition
        return None


class PropertyIssue(BaseModel):
    """필드 검증 문제"""
    key: str
    message: str


class ValidationResult(BaseModel):
    """필드 검증 결과"""
    is_valid: bool = True
    issues: List[PropertyIssue] = Field(default_factory=list)

    def add(self, key: str, message: str) -> None:
        self.issues.append(PropertyIssue(key=key, message=message))
        self.is_valid = False

    @property
    def messages(self) -> List[str]:
        return [f"{issue.key}: {issue.message}" for issue in self.issues]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _parses(value: Any, parser) -> bool:
    if not isinstance(value, str):
        return False
    try:
        parser(value)
    except ValueError:
        return False
    return True


def _check_value(definition: PropertyDefinition, value: Any, result: ValidationResult) -> None:
    key = definition.key
    kind = definition.type

    if kind in (PropertyType.text, PropertyType.text_area, PropertyType.email, PropertyType.phone, PropertyType.url):
        if not isinstance(value, str):
            result.add(key, "must be a string")
            return
        if definition.max_length and len(value) > definition.max_length:
            result.add(key, f"must be at most {definition.max_length} characters")
        if kind == PropertyType.email and not EMAIL_PATTERN.match(value):
            result.add(key, "is not a valid email address")
        elif kind == PropertyType.phone and not PHONE_PATTERN.match(value):
            result.add(key, "is not a valid phone number")
        elif kind == PropertyType.url:
            parsed = urlparse(value)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                result.add(key, "is not a valid URL")

    elif kind in (PropertyType.number, PropertyType.currency):
        if not _is_number(value):
            result.add(key, "must be a number")
            return
        if definition.min_value is not None and value < definition.min_value:
            result.add(key, f"must be at least {definition.min_value:g}")
        if definition.max_value is not None and value > definition.max_value:
            result.add(key, f"must be at most {definition.max_value:g}")
        if kind == PropertyType.currency and round(value, 2) != value:
            result.add(key, "must have at most two decimal places")

    elif kind == PropertyType.boolean:
        if not isinstance(value, bool):
            result.add(key, "must be true or false")

    elif kind == PropertyType.select:
        if value not in definition.options:
            result.add(key, f"must be one of: {', '.join(definition.options)}")

    elif kind == PropertyType.multi_select:
        if not isinstance(value, list):
            result.add(key, "must be a list")
            return
        invalid = [v for v in value if v not in definition.options]
        if invalid:
            result.add(key, f"contains options not allowed: {', '.join(map(str, invalid))}")

    elif kind == PropertyType.date:
        if not isinstance(value, date) and not _parses(value, date.fromisoformat):
            result.add(key, "is not a valid date (YYYY-MM-DD)")

    elif kind == PropertyType.datetime:
        if not isinstance(value, datetime) and not _parses(value, datetime.fromisoformat):
            result.add(key, "is not a valid datetime (ISO 8601)")

    elif kind == PropertyType.time:
        if not isinstance(value, time) and not _parses(value, time.fromisoformat):
            result.add(key, "is not a valid time (HH:MM)")


def validate_properties(
    schema: PropertySchema,
    values: Dict[str, Any],
    allow_unknown: bool = False,
) -> ValidationResult:
    """
    custom_fields 검증

    Args:
        schema: 필드 스키마
        values: 검증할 값
        allow_unknown: 스키마에 없는 키 허용 여부
    """
    result = ValidationResult()

    for definition in schema.properties:
        value = values.get(definition.key)
        if value is None or value == "" or value == []:
            if definition.required:
                result.add(definition.key, "is required")
            continue
        _check_value(definition, value, result)

    if not allow_unknown:
        known = {p.key for p in schema.properties}
        for key in values:
            if key not in known:
                result.add(key, "is not defined in the schema")

    return result


def apply_defaults(schema: PropertySchema, values: Dict[str, Any]) -> Dict[str, Any]:
    """값이 없는 필드에 기본값 채우기 (원본은 변경하지 않음)"""
    merged = dict(values)
    for definition in schema.properties:
        if definition.default_value is not None and merged.get(definition.key) in (None, ""):
            merged[definition.key] = definition.default_value
    return merged
