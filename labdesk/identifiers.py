"""
人类可读编号生成。

  ORDER       ORD + YYYYMMDD + 4 位序号     按 UTC 自然日计数   ORD202401150001
  INVOICE     INV + YYYY + MM + 4 位序号    按自然月计数        INV2024010001
  PATIENT     PAT + 6 位序号                全局计数            PAT000006
  DOCTOR      DOC + 4 / 6 位序号            全局计数（宽度看创建路径）
  TECHNICIAN  TECH + 6 位序号               全局计数

generate() 是纯格式化：给定 scope 内已有数量，返回下一个编号。

next_identifier() 负责取数：identifier_sequences 表里每个 (kind, scope_key)
一行，事务内 select_for_update 加锁后自增，不会出现「先 count 再 insert」
两个请求拿到同一个序号的问题。取数失败时退化为时间戳编号，只记日志不报错。

save_with_identifier() 是写路径的入口：编号为空才分配，撞唯一约束就重新取号，
最多重试 LABDESK_IDENTIFIER_RETRIES 次。
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone as dt_timezone
from enum import Enum
from typing import Callable, Optional

from django.conf import settings
from django.db import DatabaseError, IntegrityError, transaction
from django.utils import timezone

from .exceptions import DuplicateIdentifierError, ValidationError
from .models import IdentifierSequence

logger = logging.getLogger(__name__)


class IdentifierKind(str, Enum):
    ORDER = 'ORDER'
    INVOICE = 'INVOICE'
    PATIENT = 'PATIENT'
    DOCTOR = 'DOCTOR'
    TECHNICIAN = 'TECHNICIAN'


@dataclass(frozen=True)
class IdentifierFormat:
    prefix: str
    width: int
    scope: str                 # 'day' / 'month' / 'global'


FORMATS = {
    IdentifierKind.ORDER:      IdentifierFormat('ORD', 4, 'day'),
    IdentifierKind.INVOICE:    IdentifierFormat('INV', 4, 'month'),
    IdentifierKind.PATIENT:    IdentifierFormat('PAT', 6, 'global'),
    IdentifierKind.DOCTOR:     IdentifierFormat('DOC', 4, 'global'),
    IdentifierKind.TECHNICIAN: IdentifierFormat('TECH', 6, 'global'),
}


def _utc(when: Optional[datetime]) -> datetime:
    if when is None:
        return timezone.now()
    if timezone.is_naive(when):
        return when.replace(tzinfo=dt_timezone.utc)
    return when.astimezone(dt_timezone.utc)


def scope_key(kind, when: Optional[datetime] = None) -> str:
    """计数窗口标识：订单 YYYYMMDD，发票 YYYYMM，其余为空串（全局）。"""
    fmt = FORMATS[IdentifierKind(kind)]
    if fmt.scope == 'global':
        return ''
    when = _utc(when)
    if fmt.scope == 'day':
        return when.strftime('%Y%m%d')
    return when.strftime('%Y%m')


def generate(kind, scope: Optional[datetime], existing_count_in_scope: int,
             width: Optional[int] = None) -> str:
    """scope 内已有 existing_count_in_scope 条记录时，下一条记录的编号。"""
    kind = IdentifierKind(kind)
    count = existing_count_in_scope
    if isinstance(count, bool) or not isinstance(count, int) or count < 0:
        raise ValidationError(
            message="existing_count_in_scope must be a non-negative integer.",
            detail={'value': repr(count)},
        )
    fmt = FORMATS[kind]
    width = width or fmt.width
    return f"{fmt.prefix}{scope_key(kind, scope)}{str(count + 1).zfill(width)}"


def fallback_identifier(kind, when: Optional[datetime] = None, width: Optional[int] = None) -> str:
    """取数失败时的兜底：用当前毫秒时间戳的低位当序号，接受极小的碰撞概率。"""
    kind = IdentifierKind(kind)
    fmt = FORMATS[kind]
    width = width or fmt.width
    seq = int(time.time() * 1000) % (10 ** width)
    return f"{fmt.prefix}{scope_key(kind, when)}{str(seq).zfill(width)}"


def _locked_sequence(kind: IdentifierKind, key: str, count_existing: Optional[Callable[[], int]]):
    seq = (
        IdentifierSequence.objects
        .select_for_update()
        .filter(kind=kind.value, scope_key=key)
        .first()
    )
    if seq is not None:
        return seq

    # 第一次用到这个 scope：用库里已有的记录数做起点，兼容老数据
    initial = count_existing() if count_existing else 0
    try:
        with transaction.atomic():
            return IdentifierSequence.objects.create(kind=kind.value, scope_key=key, last_value=initial)
    except IntegrityError:
        # 并发请求先建好了这一行
        return IdentifierSequence.objects.select_for_update().get(kind=kind.value, scope_key=key)


def next_identifier(kind, when: Optional[datetime] = None, width: Optional[int] = None,
                    count_existing: Optional[Callable[[], int]] = None) -> str:
    """原子地领取 scope 内的下一个序号并格式化。"""
    kind = IdentifierKind(kind)
    when = _utc(when)
    key = scope_key(kind, when)

    try:
        with transaction.atomic():
            seq = _locked_sequence(kind, key, count_existing)
            existing = seq.last_value
            seq.last_value = existing + 1
            seq.save(update_fields=['last_value', 'updated_at'])
    except DatabaseError:
        identifier = fallback_identifier(kind, when, width)
        logger.warning(
            "Sequence lookup failed for %s (scope=%s), using fallback identifier %s",
            kind.value, key or 'global', identifier, exc_info=True,
        )
        return identifier

    identifier = generate(kind, when, existing, width)
    logger.info("Issued %s identifier %s (scope=%s)", kind.value, identifier, key or 'global')
    return identifier


def save_with_identifier(instance, field: str, kind, when: Optional[datetime] = None,
                         width: Optional[int] = None, attempts: Optional[int] = None):
    """
    保存 instance，必要时为 field 分配编号。

    - field 已有值 → 直接保存，绝不重新分配
    - 撞上 field 的唯一约束 → 重新取号重试
    - 重试耗尽 → DuplicateIdentifierError (409)
    - 其他 IntegrityError 原样抛出
    """
    if getattr(instance, field):
        instance.save()
        return instance

    kind = IdentifierKind(kind)
    model = type(instance)
    when = _utc(when)
    attempts = attempts or getattr(settings, 'LABDESK_IDENTIFIER_RETRIES', 3)
    prefix = FORMATS[kind].prefix + scope_key(kind, when)

    def count_existing():
        return model.objects.filter(**{f'{field}__startswith': prefix}).count()

    for attempt in range(1, attempts + 1):
        identifier = next_identifier(kind, when, width, count_existing)
        setattr(instance, field, identifier)
        try:
            with transaction.atomic():
                instance.save()
            return instance
        except IntegrityError:
            collided = model.objects.filter(**{field: identifier}).exclude(pk=instance.pk).exists()
            setattr(instance, field, '')
            if not collided:
                raise
            logger.warning(
                "Identifier %s already taken (attempt %d/%d), issuing a new one",
                identifier, attempt, attempts,
            )

    raise DuplicateIdentifierError(
        message=f"Could not assign a unique {kind.value.lower()} identifier, please retry.",
        detail={'kind': kind.value, 'attempts': attempts},
    )
