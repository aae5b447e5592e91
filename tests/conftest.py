"""
Shared fixtures for all tests.

factory-boy factories live here so both unit/ and integration/ can import them.
编号字段（patient_id / order_number ...）用 factory.Sequence 直接给值，
不走 identifiers 的计数器，需要测编号逻辑的用例自己调 services。
"""
import pytest
from datetime import date, timedelta
from decimal import Decimal

import factory
from django.contrib.auth import get_user_model
from django.contrib.auth.models import Group
from django.test import Client
from django.utils import timezone

from labdesk.models import (
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


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

class UserFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = get_user_model()

    username = factory.Sequence(lambda n: f'user{n}@lab.test')
    email = factory.LazyAttribute(lambda o: o.username)
    first_name = 'Test'
    last_name = 'User'
    password = factory.django.Password('secret-pass-1')

    @factory.post_generation
    def role(self, create, extracted, **kwargs):
        if create and extracted:
            group, _ = Group.objects.get_or_create(name=extracted)
            self.groups.add(group)


class PatientFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Patient

    patient_id = factory.Sequence(lambda n: f'PAT{900000 + n}')
    first_name = 'Ayesha'
    last_name = 'Khan'
    email = factory.Sequence(lambda n: f'patient{n}@mail.test')
    phone = '03001234567'
    date_of_birth = date(1990, 1, 15)
    gender = 'female'


class DoctorFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Doctor

    doctor_id = factory.Sequence(lambda n: f'DOC{9000 + n}')
    first_name = 'Imran'
    last_name = 'Ali'
    specialization = 'Pathology'
    phone = '03111234567'


class TechnicianFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = LabTechnician

    tech_id = factory.Sequence(lambda n: f'TECH{900000 + n}')
    first_name = 'Sara'
    last_name = 'Malik'
    phone = '03211234567'


class CategoryFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = TestCategory

    name = factory.Sequence(lambda n: f'Category {n}')
    description = ''


class LabTestFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = LabTest

    code = factory.Sequence(lambda n: f'T{n:03d}')
    name = factory.Sequence(lambda n: f'Test {n}')
    category = None
    price = Decimal('25.00')
    sample_type = 'Blood'


class PackageFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = TestPackage

    package_code = factory.Sequence(lambda n: f'PKG{n:03d}')
    package_name = factory.Sequence(lambda n: f'Package {n}')
    original_price = Decimal('100.00')
    package_price = Decimal('80.00')
    discount = 20

    @factory.post_generation
    def tests(self, create, extracted, **kwargs):
        if create and extracted:
            self.tests.set(extracted)


class OrderFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Order

    order_number = factory.Sequence(lambda n: f'ORD20240101{n:04d}')
    patient = factory.SubFactory(PatientFactory)
    total_amount = Decimal('60.00')
    balance_amount = Decimal('60.00')

    @factory.post_generation
    def tests(self, create, extracted, **kwargs):
        if create and extracted:
            self.tests.set(extracted)


class InvoiceFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Invoice

    invoice_number = factory.Sequence(lambda n: f'INV202401{n:04d}')
    order = factory.SubFactory(OrderFactory)
    patient = factory.SelfAttribute('order.patient')
    issue_date = factory.LazyFunction(timezone.now)
    due_date = factory.LazyFunction(lambda: timezone.now() + timedelta(days=30))
    line_items = factory.LazyFunction(lambda: [
        {'kind': 'test', 'item': '', 'name': 'CBC', 'unit_price': '25.00', 'quantity': 2, 'total_price': '50.00'},
        {'kind': 'package', 'item': '', 'name': 'Lipid', 'unit_price': '10.00', 'quantity': 1, 'total_price': '10.00'},
    ])
    subtotal = Decimal('60.00')
    total_amount = Decimal('60.00')
    balance_amount = Decimal('60.00')


class ResultFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = TestResult

    order = factory.SubFactory(OrderFactory)
    test = factory.SubFactory(LabTestFactory)
    patient = factory.SelfAttribute('order.patient')
    technician = factory.SubFactory(TechnicianFactory)
    result_data = factory.LazyFunction(lambda: [
        {'parameter': 'Hb', 'value': '13.5', 'unit': 'g/dL', 'normal_range': '12-16', 'flag': 'normal'},
    ])


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def api_client():
    """Django test client for integration tests."""
    return Client()


def _logged_in(role):
    user = UserFactory(role=role)
    client = Client()
    client.force_login(user)
    return client, user


@pytest.fixture
def admin_client(db):
    client, _ = _logged_in('admin')
    return client


@pytest.fixture
def reception_client(db):
    client, _ = _logged_in('reception')
    return client


@pytest.fixture
def tech_user(db):
    user = UserFactory(role='lab_tech')
    TechnicianFactory(user=user)
    return user


@pytest.fixture
def tech_client(tech_user):
    client = Client()
    client.force_login(tech_user)
    return client


@pytest.fixture
def doctor_user(db):
    user = UserFactory(role='doctor')
    DoctorFactory(user=user)
    return user


@pytest.fixture
def doctor_client(doctor_user):
    client = Client()
    client.force_login(doctor_user)
    return client


@pytest.fixture
def patient_user(db):
    user = UserFactory(role='patient')
    PatientFactory(user=user, email=user.email)
    return user


@pytest.fixture
def patient_client(patient_user):
    client = Client()
    client.force_login(patient_user)
    return client


@pytest.fixture
def sample_patient_payload():
    """Minimal valid payload for POST /api/patients/."""
    return {
        'firstName': 'Bilal',
        'lastName': 'Ahmed',
        'email': 'bilal@mail.test',
        'phone': '03001112233',
        'dateOfBirth': '1988-07-04',
        'gender': 'male',
    }


@pytest.fixture
def sample_items():
    """两行明细：2 × 25.00 + 1 × 10.00 = 60.00"""
    return [
        {'kind': 'test', 'name': 'CBC', 'unit_price': '25.00', 'quantity': 2},
        {'kind': 'package', 'name': 'Lipid', 'unit_price': '10.00', 'quantity': 1},
    ]
