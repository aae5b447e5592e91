"""
BaseIntake — 所有请求体 Intake 的抽象基类。

每个新接口只需：
1. 继承 BaseIntake
2. 实现 transform()，必要时 override validate()
3. 在 intake/__init__.py 导出

字段名同时接受 snake_case 和前端习惯的 camelCase（first_name / firstName），
取值统一走 _pick()。
"""

import re
from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime

from ..billing import to_decimal
from ..exceptions import ValidationError

# ── 共用校验正则（Intake 可直接复用） ──────────────────────────────────────
EMAIL_RE = re.compile(r"^[\w.+-]+@[\w-]+(\.[\w-]+)*\.\w{2,}$")
PHONE_RE = re.compile(r"^\+?[\d\s-]{10,}$")
CODE_RE = re.compile(r"^[A-Z0-9_-]{1,20}$")


def _camel(name: str) -> str:
    head, *rest = name.split('_')
    return head + ''.join(part.title() for part in rest)


class BaseIntake(ABC):
    """
    三步流水线：parse → transform → validate

    transform() 解析过程中发现的问题用 self._error() 记下，
    validate() 再补充业务层面的检查，最后 process() 一次性抛出全部错误。
    """

    def __init__(self, payload: Any):
        self._payload = payload
        self._parsed: dict = {}
        self._errors: list = []

    # ── 提供默认实现，子类可 override ──────────────────────────────────────

    def parse(self) -> dict:
        if not isinstance(self._payload, dict):
            raise ValidationError(
                message="Request body must be a JSON object.",
                code="MALFORMED_REQUEST",
            )
        self._parsed = self._payload
        return self._parsed

    @abstractmethod
    def transform(self) -> Any:
        """将 self._parsed 转换为 intake/types.py 里的 dataclass。"""

    def validate(self, data: Any) -> None:
        """子类追加业务校验，用 self._error() 记录。"""

    # ── 对外统一入口 ───────────────────────────────────────────────────────

    def process(self) -> Any:
        """parse → transform → validate，返回校验通过的 dataclass。"""
        self.parse()
        data = self.transform()
        self.validate(data)
        if self._errors:
            raise ValidationError(
                message="Request validation failed.",
                code="VALIDATION_ERROR",
                detail={"errors": self._errors},
            )
        return data

    # ── helpers ────────────────────────────────────────────────────────────

    def _error(self, field: str, message: str) -> None:
        self._errors.append({"field": field, "message": message})

    def _has(self, name: str) -> bool:
        return name in self._parsed or _camel(name) in self._parsed

    def _pick(self, name: str, default: Any = None) -> Any:
        if name in self._parsed:
            return self._parsed[name]
        return self._parsed.get(_camel(name), default)

    def _text(self, name: str, required: bool = False, default: str = "") -> str:
        value = self._pick(name)
        text = str(value).strip() if value is not None else ""
        if required and not text:
            self._error(name, "This field is required.")
        return text or default

    def _decimal(self, name: str, required: bool = False, minimum: Optional[Decimal] = None) -> Optional[Decimal]:
        value = self._pick(name)
        if value is None or value == "":
            if required:
                self._error(name, "This field is required.")
            return None
        try:
            number = to_decimal(value, name)
        except ValidationError as exc:
            errors = (exc.detail or {}).get("errors") or [{"field": name, "message": f"Invalid number: {value!r}."}]
            self._error(name, errors[0]["message"])
            return None
        if minimum is not None and number < minimum:
            self._error(name, f"Must be at least {minimum}.")
        return number

    def _date(self, name: str, required: bool = False) -> Optional[date]:
        value = self._pick(name)
        if not value:
            if required:
                self._error(name, "This field is required.")
            return None
        try:
            parsed = parse_date(str(value)[:10])
        except ValueError:
            # 格式对但日期不存在，例如 1990-02-30
            self._error(name, "Invalid date.")
            return None
        if parsed is None:
            self._error(name, "Invalid date format, expected YYYY-MM-DD.")
        return parsed

    def _datetime(self, name: str) -> Optional[datetime]:
        value = self._pick(name)
        if not value:
            return None
        text = str(value).strip()
        try:
            parsed = parse_datetime(text)
            if parsed is None:
                day = parse_date(text)
                parsed = datetime(day.year, day.month, day.day) if day else None
        except ValueError:
            self._error(name, "Invalid date.")
            return None
        if parsed is None:
            self._error(name, "Invalid date format.")
            return None
        if timezone.is_naive(parsed):
            parsed = timezone.make_aware(parsed)
        return parsed

    def _choice(self, name: str, choices, default: Optional[str] = None) -> Optional[str]:
        value = self._pick(name)
        if value is None or value == "":
            return default
        if value not in choices:
            self._error(name, f"Must be one of: {', '.join(choices)}.")
            return default
        return value

    def _id_list(self, name: str) -> list:
        value = self._pick(name) or []
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list):
            self._error(name, "Must be a list of ids.")
            return []
        return [str(v).strip() for v in value if str(v).strip()]
