"""
Response serializers — ORM 对象 → JSON-able dict。

只负责「输出格式化」，不做任何解析或校验。
输入解析和校验在 labdesk/intake/。

金额一律输出两位小数的字符串（"56.70"），避免前端拿到 float。
"""

from decimal import Decimal

from .billing import money
from .permissions import get_role


def _money(value):
    if value is None:
        return None
    return str(money(Decimal(value)))


def _iso(value):
    return value.isoformat() if value else None


def _id(value):
    return str(value) if value is not None else None


# ── Users ──────────────────────────────────────────────────────────────────

def serialize_user(user):
    return {
        'id': user.pk,
        'email': user.email,
        'first_name': user.first_name,
        'last_name': user.last_name,
        'role': get_role(user),
    }


# ── People ─────────────────────────────────────────────────────────────────

def serialize_patient(patient):
    return {
        'id': str(patient.id),
        'patient_id': patient.patient_id,
        'first_name': patient.first_name,
        'last_name': patient.last_name,
        'full_name': patient.full_name,
        'email': patient.email,
        'phone': patient.phone,
        'date_of_birth': _iso(patient.date_of_birth),
        'gender': patient.gender,
        'address': patient.address,
        'emergency_contact': patient.emergency_contact,
        'medical_history': patient.medical_history,
        'created_at': _iso(patient.created_at),
    }


def serialize_patient_summary(patient):
    return {
        'id': str(patient.id),
        'patient_id': patient.patient_id,
        'name': patient.full_name,
    }


def serialize_doctor(doctor):
    return {
        'id': str(doctor.id),
        'doctor_id': doctor.doctor_id,
        'first_name': doctor.first_name,
        'last_name': doctor.last_name,
        'full_name': doctor.full_name,
        'specialization': doctor.specialization,
        'phone': doctor.phone,
        'email': doctor.email,
        'clinic': doctor.clinic,
        'is_active': doctor.is_active,
    }


def serialize_technician(technician):
    return {
        'id': str(technician.id),
        'tech_id': technician.tech_id,
        'first_name': technician.first_name,
        'last_name': technician.last_name,
        'full_name': technician.full_name,
        'phone': technician.phone,
        'email': technician.email,
        'shift': technician.shift,
        'specialization': technician.specialization,
        'is_active': technician.is_active,
    }


# ── Catalogue ──────────────────────────────────────────────────────────────

def serialize_category(category):
    return {
        'id': str(category.id),
        'name': category.name,
        'description': category.description,
        'is_active': category.is_active,
        'created_at': _iso(category.created_at),
    }


def serialize_lab_test(lab_test):
    return {
        'id': str(lab_test.id),
        'code': lab_test.code,
        'name': lab_test.name,
        'category': {
            'id': str(lab_test.category.id),
            'name': lab_test.category.name,
        } if lab_test.category else None,
        'price': _money(lab_test.price),
        'sample_type': lab_test.sample_type,
        'is_active': lab_test.is_active,
    }


def serialize_package(package):
    return {
        'id': str(package.id),
        'package_code': package.package_code,
        'package_name': package.package_name,
        'tests': [serialize_lab_test(t) for t in package.tests.all()],
        'original_price': _money(package.original_price),
        'package_price': _money(package.package_price),
        'discount': package.discount,
        'description': package.description,
        'is_active': package.is_active,
    }


# ── Orders ─────────────────────────────────────────────────────────────────

def serialize_order(order):
    return {
        'id': str(order.id),
        'order_number': order.order_number,
        'patient': serialize_patient_summary(order.patient),
        'doctor': {
            'id': str(order.doctor.id),
            'doctor_id': order.doctor.doctor_id,
            'name': order.doctor.full_name,
        } if order.doctor else None,
        'tests': [
            {'id': str(t.id), 'code': t.code, 'name': t.name, 'price': _money(t.price)}
            for t in order.tests.all()
        ],
        'packages': [
            {'id': str(p.id), 'package_code': p.package_code, 'package_name': p.package_name,
             'package_price': _money(p.package_price)}
            for p in order.packages.all()
        ],
        'total_amount': _money(order.total_amount),
        'paid_amount': _money(order.paid_amount),
        'balance_amount': _money(order.balance_amount),
        'payment_status': order.payment_status,
        'payment_method': order.payment_method,
        'order_status': order.order_status,
        'priority': order.priority,
        'sample_collection_date': _iso(order.sample_collection_date),
        'expected_report_date': _iso(order.expected_report_date),
        'notes': order.notes,
        'created_at': _iso(order.created_at),
        'updated_at': _iso(order.updated_at),
    }


# ── Invoices ───────────────────────────────────────────────────────────────

def serialize_invoice(invoice):
    return {
        'id': str(invoice.id),
        'invoice_number': invoice.invoice_number,
        'order': {
            'id': str(invoice.order.id),
            'order_number': invoice.order.order_number,
        },
        'patient': serialize_patient_summary(invoice.patient),
        'issue_date': _iso(invoice.issue_date),
        'due_date': _iso(invoice.due_date),
        'items': [
            {
                'kind': item.get('kind'),
                'item': item.get('item') or None,
                'name': item.get('name'),
                'unit_price': _money(item.get('unit_price')),
                'quantity': item.get('quantity'),
                'total_price': _money(item.get('total_price')),
            }
            for item in invoice.line_items
        ],
        'subtotal': _money(invoice.subtotal),
        'discount_percentage': _money(invoice.discount_percentage),
        'discount_amount': _money(invoice.discount_amount),
        'tax_percentage': _money(invoice.tax_percentage),
        'tax_amount': _money(invoice.tax_amount),
        'total_amount': _money(invoice.total_amount),
        'paid_amount': _money(invoice.paid_amount),
        'balance_amount': _money(invoice.balance_amount),
        'payment_status': invoice.payment_status,
        'payment_method': invoice.payment_method,
        'payment_reference': invoice.payment_reference,
        'notes': invoice.notes,
        'is_active': invoice.is_active,
        'created_at': _iso(invoice.created_at),
    }


# ── Results ────────────────────────────────────────────────────────────────

def serialize_result(result):
    return {
        'id': str(result.id),
        'order': {'id': str(result.order.id), 'order_number': result.order.order_number},
        'test': {'id': str(result.test.id), 'code': result.test.code, 'name': result.test.name},
        'patient': serialize_patient_summary(result.patient),
        'technician': {
            'id': str(result.technician.id),
            'tech_id': result.technician.tech_id,
            'name': result.technician.full_name,
        },
        'result_data': result.result_data,
        'overall_status': result.overall_status,
        'comments': result.comments,
        'reported_date': _iso(result.reported_date),
        'is_verified': result.is_verified,
        'verified_by': _id(result.verified_by_id),
        'verified_date': _iso(result.verified_date),
    }


# ── Envelopes ──────────────────────────────────────────────────────────────

def serialize_page(resource, items, pagination, serializer):
    """列表响应：{"<resource>": [...], "pagination": {...}}"""
    return {
        resource: [serializer(item) for item in items],
        'pagination': pagination,
    }


def serialize_created(resource, obj, serializer, message):
    return {
        'message': message,
        resource: serializer(obj),
    }
