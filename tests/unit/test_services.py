"""
Unit tests for labdesk.services — 业务规则，直接调函数，不走 HTTP。

覆盖：建档 / 下单 / 开票 / 收款 / 状态流转 / 结果录入与审核 / 账号开通 / 逾期扫描。
"""
import pytest
import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import override_settings

from labdesk import models, services
from labdesk.billing import LineItem
from labdesk.exceptions import BlockError, PermissionDeniedError, ValidationError
from labdesk.intake.types import (
    CategoryData,
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
from labdesk.models import Invoice, Order
from tests.conftest import (
    CategoryFactory,
    DoctorFactory,
    InvoiceFactory,
    LabTestFactory,
    OrderFactory,
    PackageFactory,
    PatientFactory,
    ResultFactory,
    TechnicianFactory,
    UserFactory,
)

JAN_15 = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


def patient_data(**kwargs):
    fields = dict(
        first_name='Zara', last_name='Hussain', email='zara@mail.test', phone='03001234567',
        date_of_birth=date(1992, 5, 1), gender='female',
    )
    fields.update(kwargs)
    return PatientData(**fields)


def priced_order(*prices, paid='0'):
    tests = [LabTestFactory(price=Decimal(p)) for p in prices]
    return services.create_order(OrderRequest(
        patient=str(PatientFactory().id),
        tests=[str(t.id) for t in tests],
        paid_amount=Decimal(paid),
    ))


# -------------------------------------------------------------------
# Patients
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestPatients:

    def test_create_assigns_patient_id(self):
        first = services.create_patient(patient_data())
        second = services.create_patient(patient_data(email='other@mail.test'))

        assert first.patient_id == 'PAT000001'
        assert second.patient_id == 'PAT000002'

    def test_duplicate_email_blocked(self):
        PatientFactory(email='zara@mail.test')
        with pytest.raises(BlockError) as exc_info:
            services.create_patient(patient_data(email='Zara@Mail.test'))
        assert exc_info.value.code == 'PATIENT_EMAIL_EXISTS'
        assert exc_info.value.http_status == 409

    def test_update_keeps_patient_id(self):
        patient = services.create_patient(patient_data())
        services.update_patient(patient, {'last_name': 'Qureshi'})

        patient.refresh_from_db()
        assert patient.last_name == 'Qureshi'
        assert patient.patient_id == 'PAT000001'

    def test_update_email_taken(self):
        PatientFactory(email='taken@mail.test')
        patient = PatientFactory()
        with pytest.raises(BlockError):
            services.update_patient(patient, {'email': 'taken@mail.test'})

    @pytest.mark.parametrize('pk', [uuid.uuid4(), 'not-a-uuid'])
    def test_get_missing_patient(self, pk):
        with pytest.raises(BlockError) as exc_info:
            services.get_patient(pk)
        assert exc_info.value.code == 'PATIENT_NOT_FOUND'
        assert exc_info.value.http_status == 404

    def test_search(self):
        PatientFactory(first_name='Unique', patient_id='PAT000777')
        PatientFactory(first_name='Other')

        assert [p.first_name for p in services.search_patients('uniq')] == ['Unique']
        assert services.search_patients('PAT000777').count() == 1

    def test_delete_without_records(self):
        services.delete_patient(PatientFactory())
        assert models.Patient.objects.count() == 0

    def test_delete_blocked_by_orders(self):
        order = OrderFactory()
        with pytest.raises(BlockError) as exc_info:
            services.delete_patient(order.patient)

        assert exc_info.value.code == 'PATIENT_HAS_RECORDS'
        assert exc_info.value.detail == {'orders': 1, 'invoices': 0, 'results': 0}
        assert models.Patient.objects.count() == 1

    def test_own_profile_syncs_account_name(self):
        user = UserFactory(role='patient')
        PatientFactory(user=user)

        patient = services.update_own_profile(user, {'first_name': 'Hina', 'phone': '03009998877'})

        user.refresh_from_db()
        assert patient.first_name == 'Hina'
        assert patient.phone == '03009998877'
        assert user.first_name == 'Hina'
        assert user.last_name == 'User'

    def test_own_profile_without_patient_record(self):
        with pytest.raises(BlockError) as exc_info:
            services.update_own_profile(UserFactory(role='patient'), {'first_name': 'Hina'})
        assert exc_info.value.code == 'PATIENT_PROFILE_NOT_FOUND'


# -------------------------------------------------------------------
# Staff
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestStaff:

    def _doctor(self):
        return DoctorData(first_name='Asad', last_name='Butt', specialization='Cardiology', phone='03001234567')

    def test_admin_route_uses_four_digits(self):
        assert services.register_doctor(self._doctor()).doctor_id == 'DOC0001'

    def test_profile_route_uses_six_digits_and_shared_sequence(self):
        services.register_doctor(self._doctor())
        user = UserFactory(role='doctor')

        doctor = services.provision_doctor_profile(user, self._doctor())
        assert doctor.doctor_id == 'DOC000002'
        assert doctor.user == user

    @override_settings(LABDESK_DOCTOR_ID_WIDTH=5)
    def test_width_is_configurable(self):
        assert services.register_doctor(self._doctor()).doctor_id == 'DOC00001'

    def test_technician_id(self):
        technician = services.register_technician(
            TechnicianData(first_name='Nida', last_name='Aslam', phone='03001234567'),
        )
        assert technician.tech_id == 'TECH000001'

    def test_search_doctors_active_only(self):
        DoctorFactory(first_name='Active')
        DoctorFactory(first_name='Retired', is_active=False)
        assert [d.first_name for d in services.search_doctors(is_active=True)] == ['Active']


# -------------------------------------------------------------------
# Catalogue
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestCatalogue:

    def test_package_discount_derived(self):
        tests = [LabTestFactory(), LabTestFactory()]
        package = services.create_package(PackageData(
            package_code='LIPID', package_name='Lipid profile', tests=[str(t.id) for t in tests],
            original_price=Decimal('150'), package_price=Decimal('120'),
        ))
        assert package.discount == 20
        assert package.tests.count() == 2

    def test_package_with_unknown_test(self):
        with pytest.raises(BlockError) as exc_info:
            services.create_package(PackageData(
                package_code='X', package_name='X', tests=[str(uuid.uuid4())],
                original_price=Decimal('1'), package_price=Decimal('1'),
            ))
        assert exc_info.value.http_status == 404

    def test_duplicate_test_code(self):
        LabTestFactory(code='CBC')
        other = LabTestFactory(code='ESR')
        with pytest.raises(BlockError) as exc_info:
            services.update_lab_test(other, {'code': 'CBC'})
        assert exc_info.value.code == 'TEST_CODE_EXISTS'

    def test_create_test_in_category(self):
        category = CategoryFactory(name='Hematology')
        lab_test = services.create_lab_test(LabTestData(
            code='CBC', name='Complete Blood Count', price=Decimal('25'), category=str(category.id),
        ))
        assert lab_test.category == category

    def test_unknown_category(self):
        with pytest.raises(BlockError) as exc_info:
            services.create_lab_test(LabTestData(
                code='CBC', name='CBC', price=Decimal('25'), category=str(uuid.uuid4()),
            ))
        assert exc_info.value.code == 'CATEGORY_NOT_FOUND'
        assert exc_info.value.http_status == 404

    def test_move_test_out_of_category(self):
        lab_test = LabTestFactory(category=CategoryFactory())
        services.update_lab_test(lab_test, {'category': None})

        lab_test.refresh_from_db()
        assert lab_test.category is None

    def test_search_by_category_name_or_id(self):
        hematology = CategoryFactory(name='Hematology')
        LabTestFactory(name='CBC', category=hematology)
        LabTestFactory(name='Lipid', category=CategoryFactory(name='Biochemistry'))

        assert [t.name for t in services.search_lab_tests(category='hematology')] == ['CBC']
        assert [t.name for t in services.search_lab_tests(category=str(hematology.id))] == ['CBC']
        assert [t.name for t in services.search_lab_tests('bioch')] == ['Lipid']

    def test_delete_unused_test(self):
        services.delete_lab_test(LabTestFactory())
        assert models.LabTest.objects.count() == 0

    def test_delete_test_in_use(self):
        lab_test = LabTestFactory()
        OrderFactory(tests=[lab_test])
        with pytest.raises(BlockError) as exc_info:
            services.delete_lab_test(lab_test)

        assert exc_info.value.code == 'TEST_IN_USE'
        assert exc_info.value.detail['orders'] == 1


@pytest.mark.django_db
class TestCategories:

    def test_create(self):
        category = services.create_category(CategoryData(name='Hematology', description='Blood work'))
        assert category.is_active
        assert category.description == 'Blood work'

    def test_duplicate_name_case_insensitive(self):
        CategoryFactory(name='Hematology')
        with pytest.raises(BlockError) as exc_info:
            services.create_category(CategoryData(name='HEMATOLOGY'))
        assert exc_info.value.code == 'CATEGORY_EXISTS'
        assert exc_info.value.http_status == 409

    def test_rename_keeps_own_name(self):
        category = CategoryFactory(name='Hematology')
        services.update_category(category, {'name': 'hematology', 'description': 'CBC, ESR'})

        category.refresh_from_db()
        assert category.name == 'hematology'
        assert category.description == 'CBC, ESR'

    def test_rename_to_taken_name(self):
        CategoryFactory(name='Hematology')
        other = CategoryFactory(name='Serology')
        with pytest.raises(BlockError):
            services.update_category(other, {'name': 'Hematology'})

    def test_delete_unused(self):
        services.delete_category(CategoryFactory())
        assert models.TestCategory.objects.count() == 0

    def test_delete_in_use(self):
        category = CategoryFactory()
        LabTestFactory(category=category)
        LabTestFactory(category=category)
        with pytest.raises(ValidationError) as exc_info:
            services.delete_category(category)

        assert exc_info.value.code == 'CATEGORY_IN_USE'
        assert exc_info.value.message == 'Cannot delete category. 2 test(s) are using this category.'

    def test_list_search_and_active_filter(self):
        CategoryFactory(name='Serology', description='Antibody screening')
        CategoryFactory(name='Hematology')
        CategoryFactory(name='Archived', is_active=False)

        assert [c.name for c in services.list_categories()] == ['Archived', 'Hematology', 'Serology']
        assert [c.name for c in services.list_categories('antibody')] == ['Serology']
        assert [c.name for c in services.list_categories(is_active=True)] == ['Hematology', 'Serology']


# -------------------------------------------------------------------
# Orders
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestCreateOrder:

    def test_total_from_tests_and_packages(self):
        test = LabTestFactory(price=Decimal('25.00'))
        package = PackageFactory(package_price=Decimal('80.00'))

        order = services.create_order(OrderRequest(
            patient=str(PatientFactory().id), tests=[str(test.id)], packages=[str(package.id)],
        ))

        assert order.total_amount == Decimal('105.00')
        assert order.balance_amount == Decimal('105.00')
        assert order.payment_status == 'pending'
        assert order.order_number.startswith('ORD')
        assert len(order.order_number) == len('ORD202401150001')
        assert list(order.tests.all()) == [test]

    def test_numbers_are_sequential(self):
        first = priced_order('10')
        second = priced_order('10')
        assert int(second.order_number[-4:]) == int(first.order_number[-4:]) + 1

    def test_paid_amount_clamped_to_total(self):
        order = priced_order('30', paid='50')
        assert order.paid_amount == Decimal('30.00')
        assert order.balance_amount == Decimal('0.00')
        assert order.payment_status == 'paid'

    def test_partial_payment(self):
        order = priced_order('30', '30', paid='20')
        assert order.payment_status == 'partial'
        assert order.balance_amount == Decimal('40.00')

    def test_missing_patient(self):
        test = LabTestFactory()
        with pytest.raises(BlockError) as exc_info:
            services.create_order(OrderRequest(patient=str(uuid.uuid4()), tests=[str(test.id)]))
        assert exc_info.value.code == 'PATIENT_NOT_FOUND'

    def test_missing_test_lists_ids(self):
        missing = str(uuid.uuid4())
        with pytest.raises(BlockError) as exc_info:
            services.create_order(OrderRequest(patient=str(PatientFactory().id), tests=[missing]))
        assert exc_info.value.code == 'TEST_NOT_FOUND'
        assert exc_info.value.detail == {'missing': [missing]}
        assert Order.objects.count() == 0

    def test_empty_order(self):
        with pytest.raises(ValidationError):
            services.create_order(OrderRequest(patient=str(PatientFactory().id)))


@pytest.mark.django_db
class TestUpdateOrder:

    @pytest.mark.parametrize('current, target', [
        ('pending', 'confirmed'),
        ('pending', 'cancelled'),
        ('confirmed', 'in_progress'),
        ('in_progress', 'completed'),
    ])
    def test_allowed_transitions(self, current, target):
        order = OrderFactory(order_status=current)
        services.update_order(order, OrderUpdate(order_status=target))
        order.refresh_from_db()
        assert order.order_status == target

    @pytest.mark.parametrize('current, target', [
        ('pending', 'completed'),
        ('completed', 'pending'),
        ('cancelled', 'confirmed'),
    ])
    def test_rejected_transitions(self, current, target):
        order = OrderFactory(order_status=current)
        with pytest.raises(ValidationError) as exc_info:
            services.update_order(order, OrderUpdate(order_status=target))
        assert exc_info.value.code == 'INVALID_STATUS_TRANSITION'

    def test_payment_rederives_status(self):
        order = OrderFactory(total_amount=Decimal('60.00'))
        services.update_order(order, OrderUpdate(paid_amount=Decimal('60')))

        order.refresh_from_db()
        assert order.payment_status == 'paid'
        assert order.balance_amount == Decimal('0.00')

    def test_overpayment_clamped(self):
        order = OrderFactory(total_amount=Decimal('60.00'))
        services.update_order(order, OrderUpdate(paid_amount=Decimal('75')))
        assert order.paid_amount == Decimal('60.00')

    def test_delete_only_pending_or_cancelled(self):
        services.delete_order(OrderFactory(order_status='cancelled'))
        with pytest.raises(ValidationError) as exc_info:
            services.delete_order(OrderFactory(order_status='in_progress'))
        assert exc_info.value.code == 'ORDER_NOT_DELETABLE'
        assert Order.objects.count() == 1

    def test_list_filters(self):
        patient = PatientFactory()
        OrderFactory(patient=patient, priority='urgent')
        OrderFactory(priority='normal')

        assert services.list_orders({'priority': 'urgent'}).count() == 1
        assert services.list_orders({'patient': str(patient.id)}).count() == 1
        assert services.list_orders({'patient': 'bogus'}).count() == 0


# -------------------------------------------------------------------
# Invoices
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestCreateInvoice:

    def test_standard_invoice(self, sample_items):
        order = OrderFactory()
        invoice = services.create_invoice(InvoiceRequest(
            order=str(order.id),
            items=[LineItem(kind=i['kind'], name=i['name'], unit_price=Decimal(i['unit_price']),
                            quantity=i['quantity']) for i in sample_items],
            discount_percentage=Decimal('10'),
            tax_percentage=Decimal('5'),
        ), now=JAN_15)

        assert invoice.invoice_number == 'INV2024010001'
        assert invoice.subtotal == Decimal('60.00')
        assert invoice.discount_amount == Decimal('6.00')
        assert invoice.tax_amount == Decimal('2.70')
        assert invoice.total_amount == Decimal('56.70')
        assert invoice.payment_status == 'pending'
        assert invoice.due_date == JAN_15 + timedelta(days=30)
        assert invoice.patient == order.patient

    def test_items_derived_from_order(self):
        test = LabTestFactory(name='CBC', price=Decimal('25.00'))
        package = PackageFactory(package_name='Lipid', package_price=Decimal('35.00'))
        order = OrderFactory(tests=[test])
        order.packages.add(package)

        invoice = services.create_invoice(InvoiceRequest(order=str(order.id)), now=JAN_15)

        assert invoice.subtotal == Decimal('60.00')
        assert [i['kind'] for i in invoice.line_items] == ['test', 'package']
        assert invoice.line_items[0]['item'] == str(test.id)

    def test_one_active_invoice_per_order(self):
        existing = InvoiceFactory()
        with pytest.raises(BlockError) as exc_info:
            services.create_invoice(InvoiceRequest(order=str(existing.order.id)))
        assert exc_info.value.code == 'ACTIVE_INVOICE_EXISTS'
        assert exc_info.value.detail['invoice_number'] == existing.invoice_number

    def test_inactive_invoice_does_not_block(self):
        existing = InvoiceFactory(is_active=False)
        order = existing.order
        order.tests.add(LabTestFactory())
        assert services.create_invoice(InvoiceRequest(order=str(order.id))).is_active

    def test_order_without_items(self):
        order = OrderFactory()
        with pytest.raises(ValidationError) as exc_info:
            services.create_invoice(InvoiceRequest(order=str(order.id)))
        assert exc_info.value.code == 'NO_LINE_ITEMS'

    def test_paid_at_creation_clamped(self, sample_items):
        order = OrderFactory()
        invoice = services.create_invoice(InvoiceRequest(
            order=str(order.id),
            items=[LineItem(kind='test', name='CBC', unit_price=Decimal('60'), quantity=1)],
            paid_amount=Decimal('80'),
        ))
        assert invoice.paid_amount == Decimal('60.00')
        assert invoice.payment_status == 'paid'

    def test_monthly_sequence(self):
        services.create_invoice(InvoiceRequest(order=str(OrderFactory(tests=[LabTestFactory()]).id)), now=JAN_15)
        second = services.create_invoice(
            InvoiceRequest(order=str(OrderFactory(tests=[LabTestFactory()]).id)), now=JAN_15,
        )
        february = services.create_invoice(
            InvoiceRequest(order=str(OrderFactory(tests=[LabTestFactory()]).id)),
            now=datetime(2024, 2, 1, tzinfo=timezone.utc),
        )
        assert second.invoice_number == 'INV2024010002'
        assert february.invoice_number == 'INV2024020001'


@pytest.mark.django_db
class TestUpdateInvoice:

    def _invoice(self):
        invoice = InvoiceFactory(discount_percentage=Decimal('10'), tax_percentage=Decimal('5'))
        services.apply_financials(invoice)
        invoice.save()
        return invoice

    def test_full_payment(self):
        invoice = services.update_invoice(self._invoice(), InvoiceUpdate(paid_amount=Decimal('56.70')))
        assert invoice.balance_amount == Decimal('0.00')
        assert invoice.payment_status == 'paid'

    def test_partial_payment(self):
        invoice = services.update_invoice(self._invoice(), InvoiceUpdate(paid_amount=Decimal('20.00')))
        assert invoice.balance_amount == Decimal('36.70')
        assert invoice.payment_status == 'partial'

    def test_overpayment_clamped(self):
        invoice = services.update_invoice(self._invoice(), InvoiceUpdate(paid_amount=Decimal('500')))
        assert invoice.paid_amount == Decimal('56.70')

    def test_new_items_rederive_everything(self):
        invoice = services.update_invoice(self._invoice(), InvoiceUpdate(
            items=[LineItem(kind='test', name='CBC', unit_price=Decimal('100'), quantity=1)],
        ))
        assert invoice.subtotal == Decimal('100.00')
        assert invoice.total_amount == Decimal('94.50')

    def test_explicit_discount_then_cleared(self):
        invoice = services.update_invoice(self._invoice(), InvoiceUpdate(discount=Decimal('1')))
        assert invoice.discount_amount == Decimal('1.00')

        invoice = services.update_invoice(invoice, InvoiceUpdate(discount=Decimal('0')))
        assert invoice.discount_amount == Decimal('6.00')

    def test_explicit_discount_kept_when_not_sent(self):
        invoice = services.update_invoice(self._invoice(), InvoiceUpdate(discount=Decimal('1')))
        invoice = services.update_invoice(invoice, InvoiceUpdate(notes='follow-up', discount=None))

        assert invoice.discount_override == Decimal('1')
        assert invoice.discount_amount == Decimal('1.00')

    def test_invoice_number_never_changes(self):
        invoice = self._invoice()
        number = invoice.invoice_number
        services.update_invoice(invoice, InvoiceUpdate(notes='called patient'))
        invoice.refresh_from_db()
        assert invoice.invoice_number == number

    def test_reactivation_blocked_by_other_active_invoice(self):
        active = InvoiceFactory()
        inactive = InvoiceFactory(order=active.order, is_active=False)
        with pytest.raises(BlockError):
            services.update_invoice(inactive, InvoiceUpdate(is_active=True))

    def test_delete_only_without_payments(self):
        services.delete_invoice(InvoiceFactory())
        paid = InvoiceFactory(paid_amount=Decimal('5'))
        with pytest.raises(ValidationError) as exc_info:
            services.delete_invoice(paid)
        assert exc_info.value.code == 'INVOICE_HAS_PAYMENTS'
        assert Invoice.objects.count() == 1


@pytest.mark.django_db
class TestListInvoices:

    def test_date_range(self):
        InvoiceFactory(issue_date=JAN_15)
        InvoiceFactory(issue_date=JAN_15 + timedelta(days=10))

        invoices = services.list_invoices({'date_from': '2024-01-01', 'date_to': '2024-01-20'})
        assert invoices.count() == 1

    @pytest.mark.parametrize('name, value', [
        ('date_from', 'abc'),
        ('date_to', '2024-02-30'),
        ('date_from', '2024/01/01'),
    ])
    def test_bad_date_filter(self, name, value):
        with pytest.raises(ValidationError) as exc_info:
            list(services.list_invoices({name: value}))

        assert exc_info.value.code == 'INVALID_DATE_FILTER'
        assert exc_info.value.detail['errors'] == [{'field': name, 'message': 'Invalid date.'}]


@pytest.mark.django_db
class TestRefreshOverdueInvoices:

    def test_marks_unpaid_past_due(self):
        overdue = InvoiceFactory(due_date=JAN_15 - timedelta(days=1))
        InvoiceFactory(due_date=JAN_15 + timedelta(days=1))
        InvoiceFactory(due_date=JAN_15 - timedelta(days=1), paid_amount=Decimal('10'), payment_status='partial')
        InvoiceFactory(due_date=JAN_15 - timedelta(days=1), is_active=False)

        assert services.refresh_overdue_invoices(now=JAN_15) == 1

        overdue.refresh_from_db()
        assert overdue.payment_status == 'overdue'

    def test_idempotent(self):
        InvoiceFactory(due_date=JAN_15 - timedelta(days=1))
        services.refresh_overdue_invoices(now=JAN_15)
        assert services.refresh_overdue_invoices(now=JAN_15) == 0


# -------------------------------------------------------------------
# Results
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestResults:

    def _setup(self, order_status='confirmed'):
        test = LabTestFactory()
        order = OrderFactory(tests=[test], order_status=order_status)
        user = UserFactory(role='lab_tech')
        TechnicianFactory(user=user)
        data = ResultData(
            order=str(order.id), test=str(test.id),
            result_data=[{'parameter': 'Hb', 'value': '13', 'unit': 'g/dL', 'normal_range': '12-16', 'flag': 'normal'}],
        )
        return order, user, data

    def test_record_moves_order_in_progress(self):
        order, user, data = self._setup()
        result = services.record_result(data, user)

        order.refresh_from_db()
        assert order.order_status == 'in_progress'
        assert result.patient == order.patient
        assert result.technician == user.technician_profile

    def test_test_inside_package_accepted(self):
        test = LabTestFactory()
        order = OrderFactory()
        order.packages.add(PackageFactory(tests=[test]))
        _, user, data = self._setup()
        data.order, data.test = str(order.id), str(test.id)

        assert services.record_result(data, user).test == test

    def test_test_not_in_order(self):
        _, user, data = self._setup()
        data.test = str(LabTestFactory().id)
        with pytest.raises(ValidationError) as exc_info:
            services.record_result(data, user)
        assert exc_info.value.code == 'TEST_NOT_IN_ORDER'

    def test_closed_order(self):
        _, user, data = self._setup(order_status='cancelled')
        with pytest.raises(BlockError) as exc_info:
            services.record_result(data, user)
        assert exc_info.value.code == 'ORDER_CLOSED'

    def test_user_without_technician_profile(self):
        _, _, data = self._setup()
        with pytest.raises(PermissionDeniedError):
            services.record_result(data, UserFactory(role='admin'))

    def test_verify(self):
        order, user, data = self._setup()
        result = services.record_result(data, user)
        doctor_user = UserFactory(role='doctor')
        doctor = DoctorFactory(user=doctor_user)

        services.verify_result(result, doctor_user)
        result.refresh_from_db()
        assert result.is_verified
        assert result.verified_by == doctor
        assert result.verified_date is not None

        with pytest.raises(BlockError):
            services.verify_result(result, doctor_user)

    def test_patient_sees_only_verified_results(self):
        order, user, data = self._setup()
        services.record_result(data, user)
        patient_user = UserFactory(role='patient')
        order.patient.user = patient_user
        order.patient.save()

        assert services.results_for_user(patient_user).count() == 0
        models.TestResult.objects.update(is_verified=True)
        assert services.results_for_user(patient_user).count() == 1
        assert services.orders_for_user(patient_user).count() == 1

    def test_no_patient_profile(self):
        with pytest.raises(BlockError) as exc_info:
            services.orders_for_user(UserFactory(role='patient'))
        assert exc_info.value.http_status == 404


@pytest.mark.django_db
class TestUpdateResult:

    ROWS = [{'parameter': 'Hb', 'value': '12.1', 'unit': 'g/dL', 'normal_range': '12-16', 'flag': 'normal'}]

    def _tech(self):
        user = UserFactory(role='lab_tech')
        return user, TechnicianFactory(user=user)

    def _doctor(self):
        user = UserFactory(role='doctor')
        return user, DoctorFactory(user=user)

    def test_technician_edits_own_result(self):
        user, technician = self._tech()
        result = ResultFactory(technician=technician)

        services.update_result(result, {'result_data': self.ROWS, 'overall_status': 'abnormal'}, user)

        result.refresh_from_db()
        assert result.result_data == self.ROWS
        assert result.overall_status == 'abnormal'

    def test_technician_cannot_edit_someone_elses_result(self):
        user, _ = self._tech()
        with pytest.raises(PermissionDeniedError) as exc_info:
            services.update_result(ResultFactory(), {'comments': 'x'}, user)
        assert exc_info.value.code == 'NOT_RESULT_OWNER'

    def test_technician_cannot_edit_verified_result(self):
        user, technician = self._tech()
        result = ResultFactory(technician=technician, is_verified=True)
        with pytest.raises(PermissionDeniedError) as exc_info:
            services.update_result(result, {'comments': 'x'}, user)
        assert exc_info.value.code == 'RESULT_VERIFIED'

    def test_technician_cannot_verify(self):
        user, technician = self._tech()
        result = ResultFactory(technician=technician)
        with pytest.raises(PermissionDeniedError) as exc_info:
            services.update_result(result, {'is_verified': True}, user)
        assert exc_info.value.code == 'VERIFY_NOT_ALLOWED'

    def test_doctor_verifies_and_unverifies(self):
        user, doctor = self._doctor()
        result = ResultFactory()

        services.update_result(result, {'is_verified': True}, user)
        result.refresh_from_db()
        assert result.is_verified
        assert result.verified_by == doctor
        assert result.verified_date is not None

        services.update_result(result, {'is_verified': False}, user)
        result.refresh_from_db()
        assert not result.is_verified
        assert result.verified_by is None
        assert result.verified_date is None

    def test_doctor_cannot_edit_values(self):
        user, _ = self._doctor()
        with pytest.raises(PermissionDeniedError) as exc_info:
            services.update_result(ResultFactory(), {'comments': 'looks fine', 'is_verified': True}, user)
        assert exc_info.value.code == 'DOCTOR_VERIFY_ONLY'

    def test_admin_edits_and_verifies(self):
        result = ResultFactory()
        services.update_result(result, {'comments': 'rechecked', 'is_verified': True}, UserFactory(role='admin'))

        result.refresh_from_db()
        assert result.comments == 'rechecked'
        assert result.is_verified
        assert result.verified_by is None

    def test_reception_rejected(self):
        with pytest.raises(PermissionDeniedError):
            services.update_result(ResultFactory(), {'comments': 'x'}, UserFactory(role='reception'))

    def test_delete_unverified_only(self):
        services.delete_result(ResultFactory())
        verified = ResultFactory(is_verified=True)
        with pytest.raises(ValidationError) as exc_info:
            services.delete_result(verified)

        assert exc_info.value.code == 'RESULT_VERIFIED'
        assert models.TestResult.objects.count() == 1


@pytest.mark.django_db
class TestLabDashboard:

    def test_counts(self):
        for status in ('pending', 'confirmed', 'in_progress', 'completed', 'cancelled'):
            OrderFactory(order_status=status)
        ResultFactory(order=OrderFactory(order_status='in_progress'))
        ResultFactory(reported_date=JAN_15)

        stats = services.lab_dashboard_stats()

        assert stats == {
            'pending_tests': 3,
            'in_progress_tests': 2,
            'completed_today': 1,
            'total_samples': 6,
        }


# -------------------------------------------------------------------
# Users
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestProvisionUser:

    def _data(self, role, profile=None, email='staff@lab.test'):
        return UserData(email=email, password='long-enough', first_name='Kamran',
                        last_name='Shah', role=role, profile=profile)

    def test_reception_user(self):
        user = services.provision_user(self._data('reception'))
        assert user.username == 'staff@lab.test'
        assert user.check_password('long-enough')
        assert list(user.groups.values_list('name', flat=True)) == ['reception']

    def test_doctor_gets_six_digit_profile(self):
        profile = DoctorData(first_name='Kamran', last_name='Shah', specialization='ENT', phone='03001234567')
        user = services.provision_user(self._data('doctor', profile))
        assert user.doctor_profile.doctor_id == 'DOC000001'

    def test_lab_tech_gets_profile(self):
        profile = TechnicianData(first_name='Kamran', last_name='Shah', phone='03001234567')
        user = services.provision_user(self._data('lab_tech', profile))
        assert user.technician_profile.tech_id == 'TECH000001'

    def test_patient_with_profile(self):
        user = services.provision_user(self._data('patient', patient_data(email='staff@lab.test')))
        assert user.patient_profile.patient_id == 'PAT000001'

    def test_duplicate_email(self):
        UserFactory(username='staff@lab.test')
        with pytest.raises(BlockError) as exc_info:
            services.provision_user(self._data('reception'))
        assert exc_info.value.code == 'USER_EXISTS'
        assert get_user_model().objects.count() == 1


# -------------------------------------------------------------------
# paginate
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestPaginate:

    def test_pages(self):
        for _ in range(5):
            PatientFactory()
        items, pagination = services.paginate(services.search_patients(), page=2, limit=2)
        assert len(items) == 2
        assert pagination == {'page': 2, 'limit': 2, 'total': 5, 'pages': 3}

    @override_settings(LABDESK_MAX_PAGE_SIZE=3)
    def test_limit_capped(self):
        _, pagination = services.paginate(services.search_patients(), limit=50)
        assert pagination['limit'] == 3

    def test_bad_page(self):
        with pytest.raises(ValidationError):
            services.paginate(services.search_patients(), page='abc')
