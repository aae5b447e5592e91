"""
具体 Intake 实现，每个写接口一个。

  PatientIntake        POST /api/patients/
  PatientUpdateIntake  PATCH /api/patients/<id>/
  PatientProfileIntake PUT /api/patient/profile/
  DoctorIntake         POST /api/doctors/
  TechnicianIntake     POST /api/technicians/
  CategoryIntake       POST / PUT /api/test-categories/
  LabTestIntake        POST / PATCH /api/tests/
  PackageIntake        POST /api/packages/
  OrderIntake          POST /api/orders/
  OrderUpdateIntake    PATCH /api/orders/<id>/
  InvoiceIntake        POST /api/invoices/
  InvoiceUpdateIntake  PATCH /api/invoices/<id>/
  ResultIntake         POST /api/results/
  ResultUpdateIntake   PUT /api/results/<id>/
  UserIntake           POST /api/admin/users/, POST /api/auth/signup/
  LoginIntake          POST /api/auth/login/
"""

from decimal import Decimal

from ..billing import HUNDRED, validate_line_items
from ..exceptions import ValidationError
from ..models import Invoice, LabTechnician, Order, Patient, TestResult
from ..permissions import ROLES
from .base import CODE_RE, EMAIL_RE, PHONE_RE, BaseIntake
from .types import (
    CategoryData,
    Credentials,
    DoctorData,
    InvoiceRequest,
    InvoiceUpdate,
    LabTestData,
    OrderRequest,
    OrderUpdate,
    PackageData,
    PatientData,
    ResultData,
    TechnicianData,
    UserData,
)


def _values(choices):
    return [value for value, _ in choices]


class _ContactMixin:
    """email / phone 格式校验，Patient / Doctor / Technician / User 共用。"""

    def _check_contact(self, email, phone, email_required=True):
        if email and not EMAIL_RE.match(email):
            self._error("email", "Please enter a valid email.")
        elif email_required and not email:
            self._error("email", "This field is required.")
        if phone and not PHONE_RE.match(phone):
            self._error("phone", "Phone number must be at least 10 digits.")


# ── Patient ────────────────────────────────────────────────────────────────

class PatientIntake(_ContactMixin, BaseIntake):

    def transform(self) -> PatientData:
        return PatientData(
            first_name=self._text("first_name", required=True),
            last_name=self._text("last_name", required=True),
            email=self._text("email", required=True).lower(),
            phone=self._text("phone", required=True),
            date_of_birth=self._date("date_of_birth", required=True),
            gender=self._choice("gender", _values(Patient.GENDER_CHOICES)) or "",
            address=self._pick("address") or {},
            emergency_contact=self._pick("emergency_contact") or {},
            medical_history=self._pick("medical_history") or [],
        )

    def validate(self, data: PatientData) -> None:
        if not data.gender and not self._pick("gender"):
            self._error("gender", "This field is required.")
        self._check_contact(data.email, data.phone, email_required=False)
        if len(data.first_name) > 50 or len(data.last_name) > 50:
            self._error("first_name", "Name too long (max 50 characters).")
        if not isinstance(data.address, dict):
            self._error("address", "Must be an object.")
        if not isinstance(data.emergency_contact, dict):
            self._error("emergency_contact", "Must be an object.")
        if not isinstance(data.medical_history, list):
            self._error("medical_history", "Must be a list.")


class PatientUpdateIntake(_ContactMixin, BaseIntake):
    """只返回请求里出现的字段，dict 形式直接交给 services.update_patient()。"""

    FIELDS = ("first_name", "last_name", "email", "phone", "date_of_birth", "gender",
              "address", "emergency_contact", "medical_history")

    def transform(self) -> dict:
        changes = {}
        for name in self.FIELDS:
            if not self._has(name):
                continue
            if self._pick(name) is None:
                self._error(name, "This field may not be null.")
                continue
            if name == "date_of_birth":
                changes[name] = self._date(name, required=True)
            elif name == "gender":
                changes[name] = self._choice(name, _values(Patient.GENDER_CHOICES))
            elif name in ("address", "emergency_contact", "medical_history"):
                changes[name] = self._pick(name)
            else:
                changes[name] = self._text(name, required=True)
        if "email" in changes:
            changes["email"] = changes["email"].lower()
        return changes

    def validate(self, data: dict) -> None:
        self._check_contact(data.get("email", ""), data.get("phone", ""), email_required=False)
        for name in ("first_name", "last_name"):
            if len(data.get(name, "")) > 50:
                self._error(name, "Name too long (max 50 characters).")
        for name in ("address", "emergency_contact"):
            if name in data and not isinstance(data[name], dict):
                self._error(name, "Must be an object.")
        if "medical_history" in data and not isinstance(data["medical_history"], list):
            self._error("medical_history", "Must be a list.")


class PatientProfileIntake(PatientUpdateIntake):
    """患者自己改档案：邮箱、生日、性别只能由前台改，请求里带了也忽略。"""

    FIELDS = ("first_name", "last_name", "phone", "address", "emergency_contact", "medical_history")


# ── Staff ──────────────────────────────────────────────────────────────────

class DoctorIntake(_ContactMixin, BaseIntake):

    def transform(self) -> DoctorData:
        return DoctorData(
            first_name=self._text("first_name", required=True),
            last_name=self._text("last_name", required=True),
            specialization=self._text("specialization", required=True),
            phone=self._text("phone", required=True),
            email=self._text("email").lower(),
            clinic=self._text("clinic"),
        )

    def validate(self, data: DoctorData) -> None:
        self._check_contact(data.email, data.phone, email_required=False)


class TechnicianIntake(_ContactMixin, BaseIntake):

    def transform(self) -> TechnicianData:
        specialization = self._pick("specialization") or []
        if isinstance(specialization, str):
            specialization = [specialization] if specialization.strip() else []
        return TechnicianData(
            first_name=self._text("first_name", required=True),
            last_name=self._text("last_name", required=True),
            phone=self._text("phone", required=True),
            email=self._text("email").lower(),
            shift=self._choice("shift", _values(LabTechnician.SHIFT_CHOICES), default="morning"),
            specialization=[str(s).strip() for s in specialization if str(s).strip()],
        )

    def validate(self, data: TechnicianData) -> None:
        self._check_contact(data.email, data.phone, email_required=False)


# ── Catalogue ──────────────────────────────────────────────────────────────

class CategoryIntake(BaseIntake):

    def __init__(self, payload, partial=False):
        super().__init__(payload)
        self.partial = partial

    def transform(self):
        if self.partial:
            changes = {}
            if self._has("name"):
                changes["name"] = self._text("name", required=True)
            if self._has("description"):
                changes["description"] = self._text("description")
            if self._has("is_active"):
                changes["is_active"] = bool(self._pick("is_active"))
            return changes

        is_active = self._pick("is_active")
        return CategoryData(
            name=self._text("name", required=True),
            description=self._text("description"),
            is_active=True if is_active is None else bool(is_active),
        )

    def validate(self, data) -> None:
        name = data.get("name", "") if isinstance(data, dict) else data.name
        if len(name) > 100:
            self._error("name", "Category name too long (max 100 characters).")


class LabTestIntake(BaseIntake):

    def __init__(self, payload, partial=False):
        super().__init__(payload)
        self.partial = partial

    def transform(self):
        if self.partial:
            changes = {}
            for name in ("code", "name", "sample_type"):
                if self._has(name):
                    changes[name] = self._text(name, required=name in ("code", "name"))
            if self._has("category"):
                # 空值 → 取消分类
                changes["category"] = self._text("category") or None
            if self._has("price"):
                changes["price"] = self._decimal("price", required=True, minimum=Decimal("0"))
            if self._has("is_active"):
                changes["is_active"] = bool(self._pick("is_active"))
            if "code" in changes:
                changes["code"] = changes["code"].upper()
            return changes

        return LabTestData(
            code=self._text("code", required=True).upper(),
            name=self._text("name", required=True),
            price=self._decimal("price", required=True, minimum=Decimal("0")),
            category=self._text("category") or None,
            sample_type=self._text("sample_type"),
        )

    def validate(self, data) -> None:
        code = data.get("code") if isinstance(data, dict) else data.code
        if code and not CODE_RE.match(code):
            self._error("code", "Test code may only contain letters, digits, '-' and '_' (max 20).")


class PackageIntake(BaseIntake):

    def transform(self) -> PackageData:
        return PackageData(
            package_code=self._text("package_code", required=True).upper(),
            package_name=self._text("package_name", required=True),
            tests=self._id_list("tests"),
            original_price=self._decimal("original_price", required=True, minimum=Decimal("0")),
            package_price=self._decimal("package_price", required=True, minimum=Decimal("0")),
            description=self._text("description"),
        )

    def validate(self, data: PackageData) -> None:
        if data.package_code and not CODE_RE.match(data.package_code):
            self._error("package_code", "Package code may only contain letters, digits, '-' and '_' (max 20).")
        if not data.tests:
            self._error("tests", "A package must contain at least one test.")


# ── Orders ─────────────────────────────────────────────────────────────────

class OrderIntake(BaseIntake):

    def transform(self) -> OrderRequest:
        return OrderRequest(
            patient=self._text("patient", required=True),
            doctor=self._text("doctor") or None,
            tests=self._id_list("tests"),
            packages=self._id_list("packages"),
            priority=self._choice("priority", _values(Order.PRIORITY_CHOICES), default="normal"),
            payment_method=self._choice("payment_method", _values(Order.PAYMENT_METHOD_CHOICES), default="cash"),
            paid_amount=self._decimal("paid_amount", minimum=Decimal("0")) or Decimal("0"),
            sample_collection_date=self._datetime("sample_collection_date"),
            expected_report_date=self._datetime("expected_report_date"),
            notes=self._text("notes"),
        )

    def validate(self, data: OrderRequest) -> None:
        if not data.tests and not data.packages:
            self._error("tests", "At least one test or package must be selected.")
        if len(data.notes) > 1000:
            self._error("notes", "Notes too long (max 1000 characters).")


class OrderUpdateIntake(BaseIntake):
    """payment_status 不接受客户端传值，始终由已付金额推导。"""

    def transform(self) -> OrderUpdate:
        return OrderUpdate(
            order_status=self._choice("order_status", _values(Order.ORDER_STATUS_CHOICES)),
            priority=self._choice("priority", _values(Order.PRIORITY_CHOICES)),
            payment_method=self._choice("payment_method", _values(Order.PAYMENT_METHOD_CHOICES)),
            paid_amount=self._decimal("paid_amount", minimum=Decimal("0")),
            sample_collection_date=self._datetime("sample_collection_date"),
            expected_report_date=self._datetime("expected_report_date"),
            notes=self._text("notes") if self._has("notes") else None,
        )


# ── Invoices ───────────────────────────────────────────────────────────────

class _InvoiceFieldsMixin:

    def _line_items(self, name="items"):
        raw_items = self._pick(name)
        if raw_items is None:
            return None
        if not isinstance(raw_items, list) or not raw_items:
            self._error(name, "At least one item is required.")
            return None

        normalized = []
        for raw in raw_items:
            if not isinstance(raw, dict):
                normalized.append(raw)
                continue
            normalized.append({
                "kind": raw.get("kind") or raw.get("type"),
                "item": raw.get("item") or "",
                "name": raw.get("name"),
                "unit_price": raw.get("unit_price", raw.get("unitPrice")),
                "quantity": raw.get("quantity"),
            })

        try:
            return validate_line_items(normalized)
        except ValidationError as exc:
            errors = (exc.detail or {}).get("errors") or [{"field": name, "message": exc.message}]
            self._errors.extend(errors)
            return None

    def _percentage(self, name):
        value = self._decimal(name, minimum=Decimal("0"))
        if value is not None and value > HUNDRED:
            self._error(name, "Cannot exceed 100.")
        return value


class InvoiceIntake(_InvoiceFieldsMixin, BaseIntake):

    def transform(self) -> InvoiceRequest:
        order = self._text("order") or self._text("test_order")
        if not order:
            self._error("order", "This field is required.")
        return InvoiceRequest(
            order=order,
            items=self._line_items(),
            discount_percentage=self._percentage("discount_percentage") or Decimal("0"),
            tax_percentage=self._percentage("tax_percentage") or Decimal("0"),
            discount=self._decimal("discount", minimum=Decimal("0")),
            tax=self._decimal("tax", minimum=Decimal("0")),
            paid_amount=self._decimal("paid_amount", minimum=Decimal("0")) or Decimal("0"),
            due_date=self._datetime("due_date"),
            payment_method=self._choice("payment_method", _values(Invoice.PAYMENT_METHOD_CHOICES)),
            payment_reference=self._text("payment_reference"),
            notes=self._text("notes"),
        )


class InvoiceUpdateIntake(_InvoiceFieldsMixin, BaseIntake):

    def transform(self) -> InvoiceUpdate:
        is_active = self._pick("is_active")
        if is_active is not None and not isinstance(is_active, bool):
            self._error("is_active", "Must be true or false.")
            is_active = None
        return InvoiceUpdate(
            items=self._line_items(),
            discount_percentage=self._percentage("discount_percentage"),
            tax_percentage=self._percentage("tax_percentage"),
            discount=self._decimal("discount", minimum=Decimal("0")),
            tax=self._decimal("tax", minimum=Decimal("0")),
            paid_amount=self._decimal("paid_amount", minimum=Decimal("0")),
            due_date=self._datetime("due_date"),
            payment_method=self._choice("payment_method", _values(Invoice.PAYMENT_METHOD_CHOICES)),
            payment_reference=self._text("payment_reference") if self._has("payment_reference") else None,
            notes=self._text("notes") if self._has("notes") else None,
            is_active=is_active,
        )


# ── Results ────────────────────────────────────────────────────────────────

RESULT_FLAGS = ("normal", "high", "low", "critical")


class _ResultRowsMixin:

    def _result_rows(self):
        rows = self._pick("result_data") or []
        if not isinstance(rows, list):
            self._error("result_data", "Must be a list.")
            rows = []

        result_data = []
        for i, row in enumerate(rows):
            if not isinstance(row, dict):
                self._error(f"result_data[{i}]", "Must be an object.")
                continue
            parameter = str(row.get("parameter") or "").strip()
            value = str(row.get("value") if row.get("value") is not None else "").strip()
            flag = row.get("flag") or "normal"
            if not parameter:
                self._error(f"result_data[{i}].parameter", "Parameter name is required.")
            if not value:
                self._error(f"result_data[{i}].value", "Parameter value is required.")
            if flag not in RESULT_FLAGS:
                self._error(f"result_data[{i}].flag", f"Must be one of: {', '.join(RESULT_FLAGS)}.")
            result_data.append({
                "parameter": parameter,
                "value": value,
                "unit": str(row.get("unit") or "").strip(),
                "normal_range": str(row.get("normal_range") or row.get("normalRange") or "").strip(),
                "flag": flag,
            })
        return result_data


class ResultIntake(_ResultRowsMixin, BaseIntake):

    def transform(self) -> ResultData:
        return ResultData(
            order=self._text("order", required=True),
            test=self._text("test", required=True),
            result_data=self._result_rows(),
            overall_status=self._choice(
                "overall_status", _values(TestResult.OVERALL_STATUS_CHOICES), default="normal",
            ),
            comments=self._text("comments"),
        )

    def validate(self, data: ResultData) -> None:
        if not data.result_data:
            self._error("result_data", "At least one result parameter is required.")


class ResultUpdateIntake(_ResultRowsMixin, BaseIntake):
    """只返回请求里出现的字段；谁能改哪些字段由 services.update_result() 按角色判断。"""

    def transform(self) -> dict:
        changes = {}
        if self._has("result_data"):
            changes["result_data"] = self._result_rows()
            if not changes["result_data"]:
                self._error("result_data", "At least one result parameter is required.")
        if self._has("overall_status"):
            changes["overall_status"] = self._choice(
                "overall_status", _values(TestResult.OVERALL_STATUS_CHOICES),
            ) or "normal"
        if self._has("comments"):
            changes["comments"] = self._text("comments")
        if self._has("is_verified"):
            is_verified = self._pick("is_verified")
            if not isinstance(is_verified, bool):
                self._error("is_verified", "Must be true or false.")
            changes["is_verified"] = is_verified
        return changes


# ── Users ──────────────────────────────────────────────────────────────────

class UserIntake(_ContactMixin, BaseIntake):
    """
    账号 + 角色档案。

    role=doctor / lab_tech 时 profile 必填，用对应 Intake 校验；
    role=patient 时 profile 可选，带了就一起建患者档案。
    forced_role 用于自助注册（只能注册 patient）。
    """

    PROFILE_INTAKES = {
        "doctor": DoctorIntake,
        "lab_tech": TechnicianIntake,
        "patient": PatientIntake,
    }

    def __init__(self, payload, forced_role=None):
        super().__init__(payload)
        self.forced_role = forced_role

    def transform(self) -> UserData:
        role = self.forced_role or self._choice("role", ROLES) or ""
        return UserData(
            email=self._text("email", required=True).lower(),
            password=str(self._pick("password") or ""),
            first_name=self._text("first_name", required=True),
            last_name=self._text("last_name", required=True),
            role=role,
            phone=self._text("phone"),
            raw_payload=self._parsed,
        )

    def validate(self, data: UserData) -> None:
        self._check_contact(data.email, data.phone)
        if len(data.password) < 8:
            self._error("password", "Password must be at least 8 characters.")
        if not data.role and not self._pick("role"):
            self._error("role", "This field is required.")

        profile = self._pick("profile")
        intake_cls = self.PROFILE_INTAKES.get(data.role)
        if intake_cls is None:
            return
        if profile is None and data.role == "patient":
            return
        if not isinstance(profile, dict):
            self._error("profile", f"Profile details are required for role {data.role!r}.")
            return

        merged = {
            "first_name": data.first_name,
            "last_name": data.last_name,
            "email": data.email,
            "phone": data.phone,
            **profile,
        }
        try:
            data.profile = intake_cls(merged).process()
        except ValidationError as exc:
            for err in (exc.detail or {}).get("errors", []):
                self._error(f"profile.{err['field']}", err["message"])


class LoginIntake(BaseIntake):

    def transform(self) -> Credentials:
        return Credentials(
            email=self._text("email", required=True).lower(),
            password=str(self._pick("password") or ""),
        )

    def validate(self, data: Credentials) -> None:
        if not data.password:
            self._error("password", "This field is required.")
