"""
发票 / 订单的金额推导。

纯函数，不碰数据库也不碰 Django：输入明细、折扣/税率、已付金额、到期日和 now，
输出 subtotal / discount / tax / total / balance / payment_status 全套字段。

service 层在每条写路径上显式调用 recompute()，而不是挂在 model.save() 上，
这样同一组输入永远得到同一组输出，测试也不需要数据库。

金额统一用 Decimal；折扣和税额先四舍五入到分，再算 total，
所以 total == subtotal - discount + tax 在两位小数上严格成立。
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Optional

from .exceptions import ValidationError

CENT = Decimal('0.01')
ZERO = Decimal('0.00')
HUNDRED = Decimal('100')
# DecimalField(max_digits=12, decimal_places=2) 能存的最大值
MAX_AMOUNT = Decimal('9999999999.99')

INTEGER_RE = re.compile(r'[+-]?[0-9]+')

LINE_ITEM_KINDS = ('test', 'package')
REQUIRED_LINE_ITEM_FIELDS = ('kind', 'name', 'unit_price', 'quantity')

PENDING = 'pending'
PARTIAL = 'partial'
PAID = 'paid'
OVERDUE = 'overdue'


@dataclass(frozen=True)
class LineItem:
    kind: str
    name: str
    unit_price: Decimal
    quantity: int
    item: str = ''             # 对应 LabTest / TestPackage 的 id，可为空

    @property
    def total_price(self) -> Decimal:
        return money(self.unit_price * self.quantity)

    def to_dict(self) -> dict:
        """JSONField 存储格式，金额用字符串避免 float 误差。"""
        return {
            'kind': self.kind,
            'item': self.item,
            'name': self.name,
            'unit_price': str(money(self.unit_price)),
            'quantity': self.quantity,
            'total_price': str(self.total_price),
        }


@dataclass(frozen=True)
class FinancialState:
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    balance_amount: Decimal
    payment_status: str


# ── 基础转换 ────────────────────────────────────────────────────────────────

def money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_decimal(value: Any, field: str) -> Decimal:
    if isinstance(value, bool) or value is None or value == '':
        raise ValidationError(
            message=f"{field} must be a number.",
            detail={'errors': [{'field': field, 'message': 'Must be a number.'}]},
        )
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(
            message=f"{field} must be a number.",
            detail={'errors': [{'field': field, 'message': f'Invalid number: {value!r}.'}]},
        )
    if not result.is_finite():
        raise ValidationError(
            message=f"{field} must be a finite number.",
            detail={'errors': [{'field': field, 'message': 'Must be finite.'}]},
        )
    return check_amount_range(result, field)


def check_amount_range(value: Decimal, field: str) -> Decimal:
    if abs(value) > MAX_AMOUNT:
        raise ValidationError(
            message=f"{field} is too large.",
            code='AMOUNT_TOO_LARGE',
            detail={'errors': [{'field': field, 'message': f'Cannot exceed {MAX_AMOUNT}.'}]},
        )
    return value


def validate_percentage(name: str, value: Any) -> Decimal:
    pct = to_decimal(value, name)
    if pct < 0 or pct > HUNDRED:
        raise ValidationError(
            message=f"{name} must be between 0 and 100.",
            code='INVALID_PERCENTAGE',
            detail={'errors': [{'field': name, 'message': 'Must be between 0 and 100.'}]},
        )
    return pct


def validate_amount(name: str, value: Any) -> Decimal:
    amount = to_decimal(value, name)
    if amount < 0:
        raise ValidationError(
            message=f"{name} cannot be negative.",
            code='NEGATIVE_AMOUNT',
            detail={'errors': [{'field': name, 'message': 'Cannot be negative.'}]},
        )
    return amount


def _parse_quantity(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not INTEGER_RE.fullmatch(text):
            return None
        try:
            return int(text)
        except ValueError:
            return None
    if isinstance(value, (float, Decimal)):
        try:
            return int(value) if value == int(value) else None
        except (ValueError, OverflowError):
            return None
    return None


def validate_line_items(items: Iterable[Any]) -> list:
    """
    dict / LineItem 混合列表 → list[LineItem]。

    收集所有错误后一次性抛出，字段路径形如 items[1].quantity。
    """
    if items is None:
        raise ValidationError(message="At least one item is required.", code='NO_LINE_ITEMS')

    parsed = []
    errors = []

    for i, raw in enumerate(items):
        if isinstance(raw, LineItem):
            raw = {
                'kind': raw.kind, 'name': raw.name, 'item': raw.item,
                'unit_price': raw.unit_price, 'quantity': raw.quantity,
            }
        if not isinstance(raw, dict):
            errors.append({'field': f'items[{i}]', 'message': 'Must be an object.'})
            continue

        missing = [f for f in REQUIRED_LINE_ITEM_FIELDS if raw.get(f) in (None, '')]
        if missing:
            for f in missing:
                errors.append({'field': f'items[{i}].{f}', 'message': 'This field is required.'})
            continue

        kind = raw['kind']
        if kind not in LINE_ITEM_KINDS:
            errors.append({'field': f'items[{i}].kind', 'message': 'Must be "test" or "package".'})

        quantity = _parse_quantity(raw['quantity'])
        if quantity is None:
            errors.append({'field': f'items[{i}].quantity', 'message': 'Quantity must be a whole number.'})
        elif quantity < 1:
            errors.append({'field': f'items[{i}].quantity', 'message': 'Quantity must be at least 1.'})

        try:
            unit_price = to_decimal(raw['unit_price'], f'items[{i}].unit_price')
        except ValidationError as exc:
            errors.extend((exc.detail or {}).get('errors') or [
                {'field': f'items[{i}].unit_price', 'message': 'Unit price must be a number.'},
            ])
            continue
        if unit_price < 0:
            errors.append({'field': f'items[{i}].unit_price', 'message': 'Price cannot be negative.'})
        elif quantity is not None and unit_price * quantity > MAX_AMOUNT:
            errors.append({'field': f'items[{i}].quantity', 'message': f'Line total cannot exceed {MAX_AMOUNT}.'})
            continue

        if quantity is not None and quantity >= 1 and kind in LINE_ITEM_KINDS and unit_price >= 0:
            parsed.append(LineItem(
                kind=kind,
                name=str(raw['name']).strip(),
                unit_price=unit_price,
                quantity=quantity,
                item=str(raw.get('item') or ''),
            ))

    if errors:
        raise ValidationError(
            message="Invalid line items.",
            code='INVALID_LINE_ITEMS',
            detail={'errors': errors},
        )
    if not parsed:
        raise ValidationError(message="At least one item is required.", code='NO_LINE_ITEMS')

    return parsed


# ── 推导 ────────────────────────────────────────────────────────────────────

def payment_status_for(total_amount: Decimal, amount_paid: Decimal,
                       due_date: Optional[datetime] = None,
                       now: Optional[datetime] = None) -> str:
    """
    paid     → 已付 >= 总额
    overdue  → 一分没付且过了到期日
    partial  → 付了一部分
    pending  → 一分没付、未到期（或没有到期日，例如订单）
    """
    if amount_paid >= total_amount:
        return PAID
    if amount_paid == 0 and due_date is not None:
        if now is None:
            now = datetime.now(timezone.utc)
        if now > due_date:
            return OVERDUE
    if amount_paid > 0:
        return PARTIAL
    return PENDING


def recompute(line_items, discount_percentage=0, tax_percentage=0,
              explicit_discount=None, explicit_tax=None, amount_paid=0,
              due_date=None, now=None) -> FinancialState:
    """
    每次都从输入完整重算，不做增量修补。

    explicit_discount / explicit_tax 非 None 且非 0 时覆盖按百分比计算的结果。
    """
    items = validate_line_items(line_items)
    discount_pct = validate_percentage('discount_percentage', discount_percentage)
    tax_pct = validate_percentage('tax_percentage', tax_percentage)
    paid = validate_amount('amount_paid', amount_paid)

    subtotal = check_amount_range(sum((item.unit_price * item.quantity for item in items), ZERO), 'subtotal')
    subtotal = money(subtotal)

    if explicit_discount is not None and validate_amount('discount', explicit_discount) != 0:
        discount_amount = money(to_decimal(explicit_discount, 'discount'))
    else:
        discount_amount = money(subtotal * discount_pct / HUNDRED)

    taxable = subtotal - discount_amount
    if explicit_tax is not None and validate_amount('tax', explicit_tax) != 0:
        tax_amount = money(to_decimal(explicit_tax, 'tax'))
    else:
        tax_amount = money(taxable * tax_pct / HUNDRED)

    total_amount = subtotal - discount_amount + tax_amount
    if total_amount < 0:
        raise ValidationError(
            message="Discount cannot exceed the invoice amount.",
            code='NEGATIVE_TOTAL',
            detail={'subtotal': str(subtotal), 'discount': str(discount_amount), 'tax': str(tax_amount)},
        )
    check_amount_range(total_amount, 'total_amount')

    balance_amount = max(ZERO, total_amount - paid)

    return FinancialState(
        subtotal=subtotal,
        discount_amount=discount_amount,
        tax_amount=tax_amount,
        total_amount=total_amount,
        balance_amount=money(balance_amount),
        payment_status=payment_status_for(total_amount, paid, due_date, now),
    )


def order_payment_state(total_amount, amount_paid) -> FinancialState:
    """订单没有折扣、税和到期日，状态只有 pending / partial / paid。"""
    total = money(validate_amount('total_amount', total_amount))
    paid = validate_amount('paid_amount', amount_paid)
    return FinancialState(
        subtotal=total,
        discount_amount=ZERO,
        tax_amount=ZERO,
        total_amount=total,
        balance_amount=money(max(ZERO, total - paid)),
        payment_status=payment_status_for(total, paid),
    )


def default_due_date(issue_date: datetime, days: int = 30) -> datetime:
    return issue_date + timedelta(days=days)


def package_discount(original_price, package_price) -> int:
    """套餐相对单项原价的折扣百分比，四舍五入到整数。"""
    original = to_decimal(original_price, 'original_price')
    package = to_decimal(package_price, 'package_price')
    if original <= 0 or package <= 0:
        return 0
    pct = (original - package) / original * HUNDRED
    return int(pct.quantize(Decimal('1'), rounding=ROUND_HALF_UP))
