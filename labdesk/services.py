import logging
import uuid
from decimal import Decimal

from django.conf import settings
from django.contrib.auth import get_user_model
from django.contrib.auth.models import Group
from django.db import transaction
from django.db.models import Q
from django.utils import timezone
from django.utils.dateparse import parse_date

from . import billing
from .exceptions import BlockError, PermissionDeniedError, ValidationError
from .identifiers import IdentifierKind, save_with_identifier
from .models import (
    Doctor,
    Invoice,
    LabTechnician,
    LabTest,
    Order,
    Patient,
    TestCategory,
    TestPackage,
    TestResult,
)
from .permissions import ADMIN, DOCTOR, LAB_TECH, PATIENT, get_role, has_role

logger = logging.getLogger(__name__)

# 当前状态 → 允许流转到的状态；completed / cancelled 是终态
ORDER_STATUS_TRANSITIONS = {
    'pending': ('confirmed', 'in_progress', 'cancelled'),
    'confirmed': ('in_progress', 'cancelled'),
    'in_progress': ('completed', 'cancelled'),
    'completed': (),
    'cancelled': (),
}

DELETABLE_ORDER_STATUSES = ('pending', 'cancelled')


# ── 通用 ────────────────────────────────────────────────────────────────────

def _not_found(label, code, pk):
    return BlockError(
        message=f'{label} not found',
        code=code,
        detail={'id': str(pk)},
        http_status=404,
    )


def _is_uuid(value):
    try:
        uuid.UUID(str(value))
    except (TypeError, ValueError):
        return False
    return True


def _date_filter(name, value):
    """查询参数里的日期：YYYY-MM-DD，格式或日期本身不对都报 400。"""
    try:
        parsed = parse_date(str(value))
    except ValueError:
        parsed = None
    if parsed is None:
        raise ValidationError(
            message=f"{name} must be a valid date (YYYY-MM-DD).",
            code='INVALID_DATE_FILTER',
            detail={'errors': [{'field': name, 'message': 'Invalid date.'}]},
        )
    return parsed


def _get_or_404(queryset, pk, label, code):
    """按主键取对象；主键格式不对也当作不存在。"""
    if not _is_uuid(pk):
        raise _not_found(label, code, pk)
    try:
        return queryset.get(pk=pk)
    except queryset.model.DoesNotExist:
        raise _not_found(label, code, pk)


def _resolve_many(model, ids, label, code):
    """
    一组 id → 对象列表（保持请求顺序，重复 id 只算一次）。
    任何一个不存在 → 404，detail 里列出缺失的 id。
    """
    unique_ids = list(dict.fromkeys(str(i) for i in ids))
    bad = [i for i in unique_ids if not _is_uuid(i)]
    found = {str(obj.pk): obj for obj in model.objects.filter(pk__in=[i for i in unique_ids if i not in bad])}
    missing = bad + [i for i in unique_ids if i not in bad and i not in found]
    if missing:
        raise BlockError(
            message=f'One or more {label} not found',
            code=code,
            detail={'missing': missing},
            http_status=404,
        )
    return [found[i] for i in unique_ids]


def paginate(queryset, page=1, limit=None):
    """
    返回 (当前页对象列表, pagination dict)。

    page 从 1 开始；limit 缺省取 LABDESK_PAGE_SIZE，上限 LABDESK_MAX_PAGE_SIZE。
    """
    default_size = getattr(settings, 'LABDESK_PAGE_SIZE', 10)
    max_size = getattr(settings, 'LABDESK_MAX_PAGE_SIZE', 100)
    try:
        page = max(1, int(page or 1))
        limit = int(limit or default_size)
    except (TypeError, ValueError):
        raise ValidationError(
            message='page and limit must be integers.',
            code='INVALID_PAGINATION',
            detail={'page': page, 'limit': limit},
        )
    limit = min(max(1, limit), max_size)

    total = queryset.count()
    offset = (page - 1) * limit
    items = list(queryset[offset:offset + limit])
    return items, {
        'page': page,
        'limit': limit,
        'total': total,
        'pages': (total + limit - 1) // limit,
    }


# ── Patients ────────────────────────────────────────────────────────────────

def create_patient(data, user=None):
    """
    患者建档。邮箱全库唯一 → 已存在时 409 PATIENT_EMAIL_EXISTS。
    """
    if Patient.objects.filter(email__iexact=data.email).exists():
        raise BlockError(
            message=f"A patient with email {data.email} already exists.",
            code='PATIENT_EMAIL_EXISTS',
            detail={'email': data.email},
        )

    patient = Patient(
        user=user,
        first_name=data.first_name,
        last_name=data.last_name,
        email=data.email,
        phone=data.phone,
        date_of_birth=data.date_of_birth,
        gender=data.gender,
        address=data.address,
        emergency_contact=data.emergency_contact,
        medical_history=data.medical_history,
    )
    save_with_identifier(patient, 'patient_id', IdentifierKind.PATIENT)
    logger.info("Patient registered: %s", patient.patient_id)
    return patient


def update_patient(patient, changes):
    email = changes.get('email')
    if email and Patient.objects.filter(email__iexact=email).exclude(pk=patient.pk).exists():
        raise BlockError(
            message=f"A patient with email {email} already exists.",
            code='PATIENT_EMAIL_EXISTS',
            detail={'email': email},
        )
    for name, value in changes.items():
        setattr(patient, name, value)
    patient.save()
    return patient


def get_patient(pk):
    return _get_or_404(Patient.objects.all(), pk, 'Patient', 'PATIENT_NOT_FOUND')


def delete_patient(patient):
    """有订单、发票或结果的患者不能删（外键是 PROTECT），返回 409 并列出数量。"""
    records = {
        'orders': patient.orders.count(),
        'invoices': patient.invoices.count(),
        'results': patient.results.count(),
    }
    if any(records.values()):
        raise BlockError(
            message=f"Patient {patient.patient_id} has orders, invoices or results and cannot be deleted.",
            code='PATIENT_HAS_RECORDS',
            detail=records,
        )
    logger.info("Patient %s deleted", patient.patient_id)
    patient.delete()


@transaction.atomic
def update_own_profile(user, changes):
    """患者改自己的档案，姓名同步写回登录账号。"""
    patient = update_patient(_patient_for(user), changes)
    user_fields = [name for name in ('first_name', 'last_name') if name in changes]
    if user_fields:
        for name in user_fields:
            setattr(user, name, changes[name])
        user.save(update_fields=user_fields)
    return patient


def search_patients(query=''):
    patients = Patient.objects.all()
    if query:
        patients = patients.filter(
            Q(first_name__icontains=query) |
            Q(last_name__icontains=query) |
            Q(email__icontains=query) |
            Q(phone__icontains=query) |
            Q(patient_id__icontains=query)
        )
    return patients.order_by('-created_at')


# ── Staff ───────────────────────────────────────────────────────────────────

def _create_doctor(data, user, width):
    doctor = Doctor(
        user=user,
        first_name=data.first_name,
        last_name=data.last_name,
        specialization=data.specialization,
        phone=data.phone,
        email=data.email,
        clinic=data.clinic,
    )
    save_with_identifier(doctor, 'doctor_id', IdentifierKind.DOCTOR, width=width)
    return doctor


def register_doctor(data):
    """管理端直接登记的医生（没有登录账号），编号宽度 LABDESK_DOCTOR_ID_WIDTH。"""
    return _create_doctor(data, None, settings.LABDESK_DOCTOR_ID_WIDTH)


def provision_doctor_profile(user, data):
    """随账号一起建的医生档案，编号宽度 LABDESK_DOCTOR_PROFILE_ID_WIDTH。"""
    return _create_doctor(data, user, settings.LABDESK_DOCTOR_PROFILE_ID_WIDTH)


def search_doctors(query='', is_active=None):
    doctors = Doctor.objects.all()
    if query:
        doctors = doctors.filter(
            Q(first_name__icontains=query) |
            Q(last_name__icontains=query) |
            Q(specialization__icontains=query) |
            Q(doctor_id__icontains=query)
        )
    if is_active is not None:
        doctors = doctors.filter(is_active=is_active)
    return doctors.order_by('first_name', 'last_name')


def register_technician(data, user=None):
    technician = LabTechnician(
        user=user,
        first_name=data.first_name,
        last_name=data.last_name,
        phone=data.phone,
        email=data.email,
        shift=data.shift,
        specialization=data.specialization,
    )
    save_with_identifier(technician, 'tech_id', IdentifierKind.TECHNICIAN)
    return technician


def list_technicians(query=''):
    technicians = LabTechnician.objects.all()
    if query:
        technicians = technicians.filter(
            Q(first_name__icontains=query) |
            Q(last_name__icontains=query) |
            Q(tech_id__icontains=query)
        )
    return technicians.order_by('first_name', 'last_name')


# ── Catalogue ───────────────────────────────────────────────────────────────

def _check_category_name(name, exclude_pk=None):
    existing = TestCategory.objects.filter(name__iexact=name)
    if exclude_pk is not None:
        existing = existing.exclude(pk=exclude_pk)
    if existing.exists():
        raise BlockError(
            message=f"Category {name} already exists.",
            code='CATEGORY_EXISTS',
            detail={'name': name},
        )


def create_category(data):
    _check_category_name(data.name)
    category = TestCategory.objects.create(
        name=data.name,
        description=data.description,
        is_active=data.is_active,
    )
    logger.info("Test category created: %s", category.name)
    return category


def get_category(pk):
    return _get_or_404(TestCategory.objects.all(), pk, 'Category', 'CATEGORY_NOT_FOUND')


def update_category(category, changes):
    if 'name' in changes:
        _check_category_name(changes['name'], exclude_pk=category.pk)
    for name, value in changes.items():
        setattr(category, name, value)
    category.save()
    return category


def delete_category(category):
    in_use = category.tests.count()
    if in_use:
        raise ValidationError(
            message=f"Cannot delete category. {in_use} test(s) are using this category.",
            code='CATEGORY_IN_USE',
            detail={'tests': in_use},
        )
    logger.info("Test category deleted: %s", category.name)
    category.delete()


def list_categories(query='', is_active=None):
    categories = TestCategory.objects.all()
    if query:
        categories = categories.filter(
            Q(name__icontains=query) |
            Q(description__icontains=query)
        )
    if is_active is not None:
        categories = categories.filter(is_active=is_active)
    return categories.order_by('name')


def _resolve_category(pk):
    if not pk:
        return None
    return get_category(pk)


def _check_test_code(code, exclude_pk=None):
    existing = LabTest.objects.filter(code=code)
    if exclude_pk is not None:
        existing = existing.exclude(pk=exclude_pk)
    if existing.exists():
        raise BlockError(
            message=f"Test code {code} is already in use.",
            code='TEST_CODE_EXISTS',
            detail={'code': code},
        )


def create_lab_test(data):
    _check_test_code(data.code)
    return LabTest.objects.create(
        code=data.code,
        name=data.name,
        category=_resolve_category(data.category),
        price=billing.money(data.price),
        sample_type=data.sample_type,
        is_active=data.is_active,
    )


def update_lab_test(lab_test, changes):
    if 'code' in changes:
        _check_test_code(changes['code'], exclude_pk=lab_test.pk)
    if 'category' in changes:
        changes = {**changes, 'category': _resolve_category(changes['category'])}
    for name, value in changes.items():
        setattr(lab_test, name, value)
    lab_test.save()
    return lab_test


def get_lab_test(pk):
    return _get_or_404(LabTest.objects.select_related('category'), pk, 'Test', 'TEST_NOT_FOUND')


def delete_lab_test(lab_test):
    """被订单、套餐或结果引用过的检查项目不能删，改用 is_active=false 下架。"""
    references = {
        'orders': lab_test.orders.count(),
        'packages': lab_test.packages.count(),
        'results': lab_test.results.count(),
    }
    if any(references.values()):
        raise BlockError(
            message=f"Test {lab_test.code} is referenced by orders, packages or results and cannot be deleted.",
            code='TEST_IN_USE',
            detail=references,
        )
    logger.info("Test %s deleted", lab_test.code)
    lab_test.delete()


def search_lab_tests(query='', category='', is_active=None):
    """category 可以是分类 id，也可以是分类名（不区分大小写）。"""
    tests = LabTest.objects.select_related('category')
    if query:
        tests = tests.filter(
            Q(name__icontains=query) |
            Q(code__icontains=query) |
            Q(category__name__icontains=query)
        )
    if category:
        if _is_uuid(category):
            tests = tests.filter(category_id=category)
        else:
            tests = tests.filter(category__name__iexact=category)
    if is_active is not None:
        tests = tests.filter(is_active=is_active)
    return tests.order_by('name')


@transaction.atomic
def create_package(data):
    if TestPackage.objects.filter(package_code=data.package_code).exists():
        raise BlockError(
            message=f"Package code {data.package_code} is already in use.",
            code='PACKAGE_CODE_EXISTS',
            detail={'package_code': data.package_code},
        )
    tests = _resolve_many(LabTest, data.tests, 'tests', 'TEST_NOT_FOUND')

    package = TestPackage.objects.create(
        package_code=data.package_code,
        package_name=data.package_name,
        original_price=billing.money(data.original_price),
        package_price=billing.money(data.package_price),
        discount=billing.package_discount(data.original_price, data.package_price),
        description=data.description,
    )
    package.tests.set(tests)
    return package


def list_packages(is_active=None):
    packages = TestPackage.objects.prefetch_related('tests__category')
    if is_active is not None:
        packages = packages.filter(is_active=is_active)
    return packages.order_by('package_name')


# ── Orders ──────────────────────────────────────────────────────────────────

def apply_order_financials(order):
    """按 total / paid 重算订单的 balance 和 payment_status，不保存。"""
    state = billing.order_payment_state(order.total_amount, order.paid_amount)
    order.total_amount = state.total_amount
    order.balance_amount = state.balance_amount
    order.payment_status = state.payment_status
    return state


def _clamp_paid(paid, total):
    return min(max(Decimal('0'), billing.money(paid)), total)


@transaction.atomic
def create_order(data, user=None):
    """
    下单。
    - 患者 / 医生 / 检查项目 / 套餐必须存在（404）
    - 总额 = 单项价格之和 + 套餐价格之和，不接受客户端传总额
    - 已付金额超出总额时按总额计
    """
    patient = _get_or_404(Patient.objects.all(), data.patient, 'Patient', 'PATIENT_NOT_FOUND')
    doctor = None
    if data.doctor:
        doctor = _get_or_404(Doctor.objects.all(), data.doctor, 'Doctor', 'DOCTOR_NOT_FOUND')
    tests = _resolve_many(LabTest, data.tests, 'tests', 'TEST_NOT_FOUND')
    packages = _resolve_many(TestPackage, data.packages, 'packages', 'PACKAGE_NOT_FOUND')

    if not tests and not packages:
        raise ValidationError(
            message='At least one test or package must be selected.',
            code='EMPTY_ORDER',
        )

    total = billing.money(
        sum((t.price for t in tests), Decimal('0')) +
        sum((p.package_price for p in packages), Decimal('0'))
    )

    order = Order(
        patient=patient,
        doctor=doctor,
        total_amount=total,
        paid_amount=_clamp_paid(data.paid_amount, total),
        payment_method=data.payment_method,
        priority=data.priority,
        sample_collection_date=data.sample_collection_date,
        expected_report_date=data.expected_report_date,
        notes=data.notes,
        created_by=user,
    )
    apply_order_financials(order)
    save_with_identifier(order, 'order_number', IdentifierKind.ORDER)
    order.tests.set(tests)
    order.packages.set(packages)

    logger.info(
        "Order %s created: total=%s paid=%s status=%s",
        order.order_number, order.total_amount, order.paid_amount, order.payment_status,
    )
    return order


def get_order(pk):
    queryset = Order.objects.select_related('patient', 'doctor').prefetch_related('tests', 'packages')
    return _get_or_404(queryset, pk, 'Test order', 'ORDER_NOT_FOUND')


def update_order(order, changes):
    """
    changes 是 intake.types.OrderUpdate，None 字段不动。

    状态只能按 ORDER_STATUS_TRANSITIONS 流转；已付金额夹在 [0, total] 之间，
    payment_status / balance 每次都重新推导。
    """
    new_status = changes.order_status
    if new_status and new_status != order.order_status:
        allowed = ORDER_STATUS_TRANSITIONS.get(order.order_status, ())
        if new_status not in allowed:
            raise ValidationError(
                message=f"Cannot change order status from {order.order_status} to {new_status}.",
                code='INVALID_STATUS_TRANSITION',
                detail={'current_status': order.order_status, 'requested_status': new_status,
                        'allowed': list(allowed)},
            )
        order.order_status = new_status

    for name in ('priority', 'payment_method', 'sample_collection_date', 'expected_report_date', 'notes'):
        value = getattr(changes, name)
        if value is not None:
            setattr(order, name, value)

    if changes.paid_amount is not None:
        previous = order.paid_amount
        order.paid_amount = _clamp_paid(changes.paid_amount, order.total_amount)
        if order.paid_amount != previous:
            logger.info("Payment recorded on order %s: %s → %s", order.order_number, previous, order.paid_amount)

    apply_order_financials(order)
    order.save()
    return order


def delete_order(order):
    if order.order_status not in DELETABLE_ORDER_STATUSES:
        raise ValidationError(
            message='Only pending or cancelled orders can be deleted.',
            code='ORDER_NOT_DELETABLE',
            detail={'order_status': order.order_status},
        )
    logger.info("Order %s deleted", order.order_number)
    order.delete()


def list_orders(filters=None):
    filters = filters or {}
    orders = (
        Order.objects
        .select_related('patient', 'doctor')
        .prefetch_related('tests', 'packages')
    )
    query = filters.get('search')
    if query:
        orders = orders.filter(
            Q(order_number__icontains=query) |
            Q(notes__icontains=query) |
            Q(patient__first_name__icontains=query) |
            Q(patient__last_name__icontains=query) |
            Q(patient__patient_id__icontains=query)
        )
    for name in ('order_status', 'payment_status', 'priority'):
        if filters.get(name):
            orders = orders.filter(**{name: filters[name]})
    if filters.get('patient'):
        if not _is_uuid(filters['patient']):
            return orders.none()
        orders = orders.filter(patient_id=filters['patient'])
    return orders.order_by('-created_at')


# ── Invoices ────────────────────────────────────────────────────────────────

def order_line_items(order):
    """订单里的检查项目和套餐 → 发票明细（数量都是 1）。"""
    items = [
        billing.LineItem(kind='test', name=test.name, unit_price=test.price, quantity=1, item=str(test.pk))
        for test in order.tests.all()
    ]
    items += [
        billing.LineItem(kind='package', name=package.package_name, unit_price=package.package_price,
                         quantity=1, item=str(package.pk))
        for package in order.packages.all()
    ]
    return items


def apply_financials(invoice, now=None):
    """
    从明细、百分比、显式折扣/税额、已付金额和到期日完整重算发票金额字段。
    只改内存里的 invoice，保存由调用方负责。
    """
    state = billing.recompute(
        invoice.line_items,
        discount_percentage=invoice.discount_percentage,
        tax_percentage=invoice.tax_percentage,
        explicit_discount=invoice.discount_override,
        explicit_tax=invoice.tax_override,
        amount_paid=invoice.paid_amount,
        due_date=invoice.due_date,
        now=now or timezone.now(),
    )
    invoice.subtotal = state.subtotal
    invoice.discount_amount = state.discount_amount
    invoice.tax_amount = state.tax_amount
    invoice.total_amount = state.total_amount
    invoice.balance_amount = state.balance_amount
    invoice.payment_status = state.payment_status
    return state


def _settle(invoice, paid, now):
    """先按新明细算出总额，再把已付金额夹到 [0, total] 重新推导。"""
    apply_financials(invoice, now)
    clamped = _clamp_paid(paid, invoice.total_amount)
    if clamped != invoice.paid_amount:
        invoice.paid_amount = clamped
        apply_financials(invoice, now)


def _check_single_active(order, exclude_pk=None):
    active = order.invoices.filter(is_active=True)
    if exclude_pk is not None:
        active = active.exclude(pk=exclude_pk)
    existing = active.first()
    if existing is not None:
        raise BlockError(
            message=f"Order {order.order_number} already has an active invoice {existing.invoice_number}.",
            code='ACTIVE_INVOICE_EXISTS',
            detail={'order': str(order.pk), 'invoice_id': str(existing.pk),
                    'invoice_number': existing.invoice_number},
        )


@transaction.atomic
def create_invoice(data, user=None, now=None):
    now = now or timezone.now()
    order = _get_or_404(Order.objects.select_related('patient'), data.order, 'Test order', 'ORDER_NOT_FOUND')
    _check_single_active(order)

    items = data.items if data.items is not None else order_line_items(order)
    items = billing.validate_line_items(items)

    invoice = Invoice(
        order=order,
        patient=order.patient,
        issue_date=now,
        due_date=data.due_date or billing.default_due_date(now, settings.LABDESK_INVOICE_DUE_DAYS),
        line_items=[item.to_dict() for item in items],
        discount_percentage=data.discount_percentage,
        tax_percentage=data.tax_percentage,
        discount_override=data.discount,
        tax_override=data.tax,
        payment_method=data.payment_method,
        payment_reference=data.payment_reference,
        notes=data.notes,
        created_by=user,
    )
    _settle(invoice, data.paid_amount, now)
    save_with_identifier(invoice, 'invoice_number', IdentifierKind.INVOICE, when=now)

    logger.info(
        "Invoice %s created for order %s: subtotal=%s total=%s status=%s",
        invoice.invoice_number, order.order_number, invoice.subtotal, invoice.total_amount,
        invoice.payment_status,
    )
    return invoice


def get_invoice(pk):
    queryset = Invoice.objects.select_related('order', 'patient')
    return _get_or_404(queryset, pk, 'Invoice', 'INVOICE_NOT_FOUND')


@transaction.atomic
def update_invoice(invoice, changes, now=None):
    """
    changes 是 intake.types.InvoiceUpdate。任何金额相关字段变化都会完整重算。

    显式 discount / tax（存为 discount_override / tax_override）：
      - 不传或传 null → 保持原来的覆盖值不变
      - 传 0         → 取消覆盖，回到按 discount_percentage / tax_percentage 计算
      - 传正数       → 用这个金额覆盖百分比结果
    """
    now = now or timezone.now()

    if changes.is_active and not invoice.is_active:
        _check_single_active(invoice.order, exclude_pk=invoice.pk)

    if changes.items is not None:
        invoice.line_items = [item.to_dict() for item in changes.items]
    for source, target in (
        ('discount_percentage', 'discount_percentage'),
        ('tax_percentage', 'tax_percentage'),
        ('discount', 'discount_override'),
        ('tax', 'tax_override'),
        ('due_date', 'due_date'),
        ('payment_method', 'payment_method'),
        ('payment_reference', 'payment_reference'),
        ('notes', 'notes'),
        ('is_active', 'is_active'),
    ):
        value = getattr(changes, source)
        if value is not None:
            setattr(invoice, target, value)

    previous_paid = invoice.paid_amount
    paid = changes.paid_amount if changes.paid_amount is not None else invoice.paid_amount
    _settle(invoice, paid, now)
    if invoice.paid_amount != previous_paid:
        logger.info(
            "Payment recorded on invoice %s: %s → %s (%s)",
            invoice.invoice_number, previous_paid, invoice.paid_amount, invoice.payment_status,
        )

    invoice.save()
    return invoice


def delete_invoice(invoice):
    if invoice.paid_amount > 0:
        raise ValidationError(
            message='Cannot delete an invoice with payments recorded.',
            code='INVOICE_HAS_PAYMENTS',
            detail={'paid_amount': str(invoice.paid_amount)},
        )
    logger.info("Invoice %s deleted", invoice.invoice_number)
    invoice.delete()


def list_invoices(filters=None):
    filters = filters or {}
    invoices = Invoice.objects.select_related('order', 'patient')
    query = filters.get('search')
    if query:
        invoices = invoices.filter(
            Q(invoice_number__icontains=query) |
            Q(notes__icontains=query) |
            Q(order__order_number__icontains=query) |
            Q(patient__first_name__icontains=query) |
            Q(patient__last_name__icontains=query)
        )
    if filters.get('payment_status'):
        invoices = invoices.filter(payment_status=filters['payment_status'])
    if filters.get('patient'):
        if not _is_uuid(filters['patient']):
            return invoices.none()
        invoices = invoices.filter(patient_id=filters['patient'])
    if filters.get('is_active') is not None:
        invoices = invoices.filter(is_active=filters['is_active'])
    if filters.get('date_from'):
        invoices = invoices.filter(issue_date__date__gte=_date_filter('date_from', filters['date_from']))
    if filters.get('date_to'):
        invoices = invoices.filter(issue_date__date__lte=_date_filter('date_to', filters['date_to']))
    return invoices.order_by('-issue_date')


def refresh_overdue_invoices(now=None):
    """
    把过了到期日、一分未付的有效发票重新推导一遍。
    返回状态发生变化的发票数量。
    """
    now = now or timezone.now()
    candidates = (
        Invoice.objects
        .filter(is_active=True, paid_amount=0, due_date__lt=now)
        .exclude(payment_status__in=(billing.OVERDUE, billing.PAID))
    )

    changed = 0
    for invoice in candidates:
        previous = invoice.payment_status
        apply_financials(invoice, now)
        if invoice.payment_status != previous:
            invoice.save(update_fields=['payment_status', 'balance_amount', 'updated_at'])
            changed += 1
    logger.info("Overdue sweep finished: %d invoice(s) marked overdue", changed)
    return changed


# ── Results ─────────────────────────────────────────────────────────────────

def _profile(user, attr):
    # 反向 OneToOne 不存在时抛的 RelatedObjectDoesNotExist 是 AttributeError 子类
    return getattr(user, attr, None)


@transaction.atomic
def record_result(data, user):
    technician = _profile(user, 'technician_profile')
    if technician is None:
        raise PermissionDeniedError(
            message='Only lab technicians with a technician profile can record results.',
            code='TECHNICIAN_PROFILE_REQUIRED',
        )

    order = _get_or_404(Order.objects.select_related('patient'), data.order, 'Test order', 'ORDER_NOT_FOUND')
    test = _get_or_404(LabTest.objects.all(), data.test, 'Test', 'TEST_NOT_FOUND')

    in_order = (
        order.tests.filter(pk=test.pk).exists() or
        order.packages.filter(tests=test).exists()
    )
    if not in_order:
        raise ValidationError(
            message=f"Test {test.code} is not part of order {order.order_number}.",
            code='TEST_NOT_IN_ORDER',
            detail={'order': str(order.pk), 'test': str(test.pk)},
        )
    if order.order_status in ('completed', 'cancelled'):
        raise BlockError(
            message=f"Order {order.order_number} is {order.order_status}, results can no longer be recorded.",
            code='ORDER_CLOSED',
            detail={'order_status': order.order_status},
        )

    result = TestResult.objects.create(
        order=order,
        test=test,
        patient=order.patient,
        technician=technician,
        result_data=data.result_data,
        overall_status=data.overall_status,
        comments=data.comments,
    )

    if order.order_status in ('pending', 'confirmed'):
        order.order_status = 'in_progress'
        order.save(update_fields=['order_status', 'updated_at'])

    logger.info("Result recorded for order %s test %s", order.order_number, test.code)
    return result


def get_result(pk):
    queryset = TestResult.objects.select_related('order', 'test', 'patient', 'technician', 'verified_by')
    return _get_or_404(queryset, pk, 'Test result', 'RESULT_NOT_FOUND')


def verify_result(result, user):
    """医生审核结果；admin 没有医生档案时 verified_by 留空。"""
    doctor = _profile(user, 'doctor_profile')
    if doctor is None and not has_role(user, ADMIN):
        raise PermissionDeniedError(
            message='Only doctors can verify results.',
            code='DOCTOR_PROFILE_REQUIRED',
        )
    if result.is_verified:
        raise BlockError(
            message='Result has already been verified.',
            code='RESULT_ALREADY_VERIFIED',
            detail={'verified_date': result.verified_date.isoformat() if result.verified_date else None},
        )
    result.is_verified = True
    result.verified_by = doctor
    result.verified_date = timezone.now()
    result.save(update_fields=['is_verified', 'verified_by', 'verified_date', 'updated_at'])
    return result


def _check_result_edit(result, changes, user):
    role = get_role(user)
    if role == LAB_TECH:
        if result.is_verified:
            raise PermissionDeniedError(message='Cannot modify verified results.', code='RESULT_VERIFIED')
        technician = _profile(user, 'technician_profile')
        if technician is None or technician.pk != result.technician_id:
            raise PermissionDeniedError(message='Can only modify your own results.', code='NOT_RESULT_OWNER')
        if 'is_verified' in changes:
            raise PermissionDeniedError(
                message='Lab technicians cannot verify results.',
                code='VERIFY_NOT_ALLOWED',
            )
    elif role == DOCTOR:
        if set(changes) - {'is_verified'}:
            raise PermissionDeniedError(
                message='Doctors can only verify or unverify results.',
                code='DOCTOR_VERIFY_ONLY',
            )
    elif role != ADMIN:
        raise PermissionDeniedError(message='Insufficient permissions')


def update_result(result, changes, user):
    """
    按角色限制可改的字段：
      - lab_tech  只能改自己录入、尚未审核的结果，不能改审核状态
      - doctor    只能改 is_verified（审核 / 撤销审核）
      - admin     都可以
    is_verified 置为 true 时记下审核医生和时间，置为 false 时清空。
    """
    _check_result_edit(result, changes, user)

    for name in ('result_data', 'overall_status', 'comments'):
        if name in changes:
            setattr(result, name, changes[name])

    if 'is_verified' in changes and changes['is_verified'] != result.is_verified:
        if changes['is_verified']:
            result.is_verified = True
            result.verified_by = _profile(user, 'doctor_profile')
            result.verified_date = timezone.now()
        else:
            result.is_verified = False
            result.verified_by = None
            result.verified_date = None
        logger.info("Result %s verification set to %s", result.pk, result.is_verified)

    result.save()
    return result


def delete_result(result):
    if result.is_verified:
        raise ValidationError(message='Cannot delete verified results.', code='RESULT_VERIFIED')
    logger.info("Result %s deleted", result.pk)
    result.delete()


def list_results(filters=None):
    filters = filters or {}
    results = TestResult.objects.select_related('order', 'test', 'patient', 'technician', 'verified_by')
    for name in ('order', 'patient'):
        if filters.get(name):
            if not _is_uuid(filters[name]):
                return results.none()
            results = results.filter(**{f'{name}_id': filters[name]})
    if filters.get('is_verified') is not None:
        results = results.filter(is_verified=filters['is_verified'])
    return results.order_by('-reported_date')


def lab_dashboard_stats(now=None):
    """
    检验科看板计数：
      pending_tests      pending / confirmed 订单
      in_progress_tests  in_progress 订单
      completed_today    今天（本地时区）出的结果
      total_samples      除 cancelled 以外的订单
    """
    today = timezone.localdate(now or timezone.now())
    orders = Order.objects.all()
    return {
        'pending_tests': orders.filter(order_status__in=('pending', 'confirmed')).count(),
        'in_progress_tests': orders.filter(order_status='in_progress').count(),
        'completed_today': TestResult.objects.filter(reported_date__date=today).count(),
        'total_samples': orders.exclude(order_status='cancelled').count(),
    }


# ── Users ───────────────────────────────────────────────────────────────────

@transaction.atomic
def provision_user(data):
    """
    建登录账号并加入角色分组（username = email）。
    doctor / lab_tech 同时建档案；patient 带了档案字段也一起建。
    """
    User = get_user_model()
    if User.objects.filter(Q(username__iexact=data.email) | Q(email__iexact=data.email)).exists():
        raise BlockError(
            message=f"A user with email {data.email} already exists.",
            code='USER_EXISTS',
            detail={'email': data.email},
        )

    user = User.objects.create_user(
        username=data.email,
        email=data.email,
        password=data.password,
        first_name=data.first_name,
        last_name=data.last_name,
    )
    group, _ = Group.objects.get_or_create(name=data.role)
    user.groups.add(group)

    if data.role == DOCTOR:
        provision_doctor_profile(user, data.profile)
    elif data.role == LAB_TECH:
        register_technician(data.profile, user=user)
    elif data.role == PATIENT and data.profile is not None:
        create_patient(data.profile, user=user)

    logger.info("User provisioned with role %s", data.role)
    return user


def _patient_for(user):
    patient = _profile(user, 'patient_profile')
    if patient is None:
        raise BlockError(
            message='No patient profile is linked to this account.',
            code='PATIENT_PROFILE_NOT_FOUND',
            http_status=404,
        )
    return patient


def patient_for_user(user):
    return _patient_for(user)


def orders_for_user(user):
    patient = _patient_for(user)
    return list_orders({'patient': str(patient.pk)})


def results_for_user(user):
    """患者只能看到医生审核过的结果。"""
    patient = _patient_for(user)
    return list_results({'patient': str(patient.pk), 'is_verified': True})
