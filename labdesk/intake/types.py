"""
Intake dataclasses — 业务逻辑唯一认识的标准格式。

所有 Intake 的 transform() 必须返回这里的某个结构。
业务层（services.py）只消费这些结构，永远不碰原始 request.data。

更新类结构（*Update）里字段为 None 表示「请求里没带」，不是「清空」。
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional


@dataclass
class PatientData:
    first_name: str
    last_name: str
    email: str
    phone: str
    date_of_birth: Optional[date]
    gender: str
    address: dict = field(default_factory=dict)
    emergency_contact: dict = field(default_factory=dict)
    medical_history: list = field(default_factory=list)


@dataclass
class DoctorData:
    first_name: str
    last_name: str
    specialization: str
    phone: str
    email: str = ""
    clinic: str = ""


@dataclass
class TechnicianData:
    first_name: str
    last_name: str
    phone: str
    email: str = ""
    shift: str = "morning"
    specialization: list = field(default_factory=list)


@dataclass
class CategoryData:
    name: str
    description: str = ""
    is_active: bool = True


@dataclass
class LabTestData:
    code: str
    name: str
    price: Optional[Decimal]
    category: Optional[str] = None          # TestCategory.id
    sample_type: str = ""
    is_active: bool = True


@dataclass
class PackageData:
    package_code: str
    package_name: str
    tests: list
    original_price: Optional[Decimal]
    package_price: Optional[Decimal]
    description: str = ""


@dataclass
class OrderRequest:
    patient: str                              # Patient.id
    tests: list = field(default_factory=list)
    packages: list = field(default_factory=list)
    doctor: Optional[str] = None
    priority: str = "normal"
    payment_method: str = "cash"
    paid_amount: Decimal = Decimal("0")
    sample_collection_date: Optional[datetime] = None
    expected_report_date: Optional[datetime] = None
    notes: str = ""


@dataclass
class OrderUpdate:
    order_status: Optional[str] = None
    priority: Optional[str] = None
    payment_method: Optional[str] = None
    paid_amount: Optional[Decimal] = None
    sample_collection_date: Optional[datetime] = None
    expected_report_date: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass
class InvoiceRequest:
    """
    items        None 表示按订单里的检查项目 / 套餐自动生成明细。
    discount/tax 显式金额，非 0 时覆盖百分比计算。
    """

    order: str                                # Order.id
    items: Optional[list] = None              # list[billing.LineItem]
    discount_percentage: Decimal = Decimal("0")
    tax_percentage: Decimal = Decimal("0")
    discount: Optional[Decimal] = None
    tax: Optional[Decimal] = None
    paid_amount: Decimal = Decimal("0")
    due_date: Optional[datetime] = None
    payment_method: Optional[str] = None
    payment_reference: str = ""
    notes: str = ""


@dataclass
class InvoiceUpdate:
    items: Optional[list] = None
    discount_percentage: Optional[Decimal] = None
    tax_percentage: Optional[Decimal] = None
    discount: Optional[Decimal] = None
    tax: Optional[Decimal] = None
    paid_amount: Optional[Decimal] = None
    due_date: Optional[datetime] = None
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    notes: Optional[str] = None
    is_active: Optional[bool] = None

    def touches_amounts(self) -> bool:
        return any(v is not None for v in (
            self.items, self.discount_percentage, self.tax_percentage,
            self.discount, self.tax, self.paid_amount, self.due_date,
        ))


@dataclass
class ResultData:
    order: str
    test: str
    result_data: list
    overall_status: str = "normal"
    comments: str = ""


@dataclass
class UserData:
    email: str
    password: str
    first_name: str
    last_name: str
    role: str
    phone: str = ""
    # doctor → DoctorData，lab_tech → TechnicianData，patient → PatientData（可选）
    profile: Any = None
    raw_payload: Any = field(default=None, repr=False)


@dataclass
class Credentials:
    email: str
    password: str = field(repr=False, default="")
