import uuid
from decimal import Decimal

from django.conf import settings
from django.db import models
from django.utils import timezone

ZERO = Decimal('0.00')


def money_field(**kwargs):
    kwargs.setdefault('default', ZERO)
    return models.DecimalField(max_digits=12, decimal_places=2, **kwargs)


class TestCategory(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=100, unique=True)
    description = models.TextField(blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'test_categories'
        ordering = ['name']


class LabTest(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.CharField(max_length=20, unique=True)
    name = models.CharField(max_length=100)
    category = models.ForeignKey(
        TestCategory, on_delete=models.PROTECT, blank=True, null=True, related_name='tests',
    )
    price = money_field()
    sample_type = models.CharField(max_length=50, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'lab_tests'


class TestPackage(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    package_code = models.CharField(max_length=20, unique=True)
    package_name = models.CharField(max_length=100)
    tests = models.ManyToManyField(LabTest, related_name='packages')
    original_price = money_field()
    package_price = money_field()
    discount = models.IntegerField(default=0)  # 百分比，由 billing.package_discount 推导
    description = models.TextField(blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'test_packages'


class Patient(models.Model):
    GENDER_CHOICES = [
        ('male', 'Male'),
        ('female', 'Female'),
        ('other', 'Other'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.OneToOneField(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL,
        blank=True, null=True, related_name='patient_profile',
    )
    patient_id = models.CharField(max_length=20, unique=True)
    first_name = models.CharField(max_length=50)
    last_name = models.CharField(max_length=50)
    email = models.EmailField(unique=True)
    phone = models.CharField(max_length=20)
    date_of_birth = models.DateField()
    gender = models.CharField(max_length=10, choices=GENDER_CHOICES)
    address = models.JSONField(default=dict, blank=True)
    emergency_contact = models.JSONField(default=dict, blank=True)
    medical_history = models.JSONField(default=list, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'patients'

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}"


class Doctor(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.OneToOneField(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL,
        blank=True, null=True, related_name='doctor_profile',
    )
    doctor_id = models.CharField(max_length=20, unique=True)
    first_name = models.CharField(max_length=50)
    last_name = models.CharField(max_length=50)
    specialization = models.CharField(max_length=200)
    phone = models.CharField(max_length=20)
    email = models.EmailField(blank=True)
    clinic = models.CharField(max_length=200, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'doctors'

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}"


class LabTechnician(models.Model):
    SHIFT_CHOICES = [
        ('morning', 'Morning'),
        ('evening', 'Evening'),
        ('night', 'Night'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.OneToOneField(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL,
        blank=True, null=True, related_name='technician_profile',
    )
    tech_id = models.CharField(max_length=20, unique=True)
    first_name = models.CharField(max_length=50)
    last_name = models.CharField(max_length=50)
    specialization = models.JSONField(default=list, blank=True)
    phone = models.CharField(max_length=20)
    email = models.EmailField(blank=True)
    shift = models.CharField(max_length=10, choices=SHIFT_CHOICES, default='morning')
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'lab_technicians'

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}"


class Order(models.Model):
    ORDER_STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('confirmed', 'Confirmed'),
        ('in_progress', 'In Progress'),
        ('completed', 'Completed'),
        ('cancelled', 'Cancelled'),
    ]
    PAYMENT_STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('partial', 'Partial'),
        ('paid', 'Paid'),
    ]
    PAYMENT_METHOD_CHOICES = [
        ('cash', 'Cash'),
        ('card', 'Card'),
        ('online', 'Online'),
    ]
    PRIORITY_CHOICES = [
        ('normal', 'Normal'),
        ('urgent', 'Urgent'),
        ('stat', 'STAT'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order_number = models.CharField(max_length=20, unique=True)
    patient = models.ForeignKey(Patient, on_delete=models.PROTECT, related_name='orders')
    doctor = models.ForeignKey(
        Doctor, on_delete=models.SET_NULL, blank=True, null=True, related_name='orders',
    )
    tests = models.ManyToManyField(LabTest, blank=True, related_name='orders')
    packages = models.ManyToManyField(TestPackage, blank=True, related_name='orders')
    total_amount = money_field()
    paid_amount = money_field()
    balance_amount = money_field()
    payment_status = models.CharField(max_length=20, choices=PAYMENT_STATUS_CHOICES, default='pending')
    payment_method = models.CharField(max_length=20, choices=PAYMENT_METHOD_CHOICES, default='cash')
    order_status = models.CharField(max_length=20, choices=ORDER_STATUS_CHOICES, default='pending')
    priority = models.CharField(max_length=10, choices=PRIORITY_CHOICES, default='normal')
    sample_collection_date = models.DateTimeField(blank=True, null=True)
    expected_report_date = models.DateTimeField(blank=True, null=True)
    notes = models.TextField(blank=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL,
        blank=True, null=True, related_name='created_orders',
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'orders'


class Invoice(models.Model):
    PAYMENT_STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('partial', 'Partial'),
        ('paid', 'Paid'),
        ('overdue', 'Overdue'),
    ]
    PAYMENT_METHOD_CHOICES = [
        ('cash', 'Cash'),
        ('card', 'Card'),
        ('online', 'Online'),
        ('bank_transfer', 'Bank Transfer'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    invoice_number = models.CharField(max_length=20, unique=True)
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name='invoices')
    patient = models.ForeignKey(Patient, on_delete=models.PROTECT, related_name='invoices')
    issue_date = models.DateTimeField(default=timezone.now)
    due_date = models.DateTimeField()
    # [{kind, item, name, unit_price, quantity, total_price}]，金额以字符串保存
    line_items = models.JSONField(default=list)
    subtotal = money_field()
    discount_percentage = models.DecimalField(max_digits=5, decimal_places=2, default=ZERO)
    tax_percentage = models.DecimalField(max_digits=5, decimal_places=2, default=ZERO)
    discount_override = models.DecimalField(max_digits=12, decimal_places=2, blank=True, null=True)
    tax_override = models.DecimalField(max_digits=12, decimal_places=2, blank=True, null=True)
    discount_amount = money_field()
    tax_amount = money_field()
    total_amount = money_field()
    paid_amount = money_field()
    balance_amount = money_field()
    payment_status = models.CharField(max_length=20, choices=PAYMENT_STATUS_CHOICES, default='pending')
    payment_method = models.CharField(max_length=20, choices=PAYMENT_METHOD_CHOICES, blank=True, null=True)
    payment_reference = models.CharField(max_length=100, blank=True)
    notes = models.TextField(blank=True)
    is_active = models.BooleanField(default=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL,
        blank=True, null=True, related_name='created_invoices',
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'invoices'


class TestResult(models.Model):
    OVERALL_STATUS_CHOICES = [
        ('normal', 'Normal'),
        ('abnormal', 'Abnormal'),
        ('critical', 'Critical'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name='results')
    test = models.ForeignKey(LabTest, on_delete=models.PROTECT, related_name='results')
    patient = models.ForeignKey(Patient, on_delete=models.PROTECT, related_name='results')
    technician = models.ForeignKey(LabTechnician, on_delete=models.PROTECT, related_name='results')
    # [{parameter, value, unit, normal_range, flag}]
    result_data = models.JSONField(default=list)
    overall_status = models.CharField(max_length=10, choices=OVERALL_STATUS_CHOICES, default='normal')
    comments = models.TextField(blank=True)
    reported_date = models.DateTimeField(default=timezone.now)
    is_verified = models.BooleanField(default=False)
    verified_by = models.ForeignKey(
        Doctor, on_delete=models.SET_NULL, blank=True, null=True, related_name='verified_results',
    )
    verified_date = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'test_results'


class IdentifierSequence(models.Model):
    """每个 (kind, scope_key) 一行计数器，取号时 select_for_update 加锁自增。"""

    kind = models.CharField(max_length=20)
    scope_key = models.CharField(max_length=8, blank=True)
    last_value = models.PositiveIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'identifier_sequences'
        constraints = [
            models.UniqueConstraint(fields=['kind', 'scope_key'], name='uniq_identifier_scope'),
        ]
