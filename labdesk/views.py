"""
HTTP 层只做三件事：Intake 解析请求 → 调 services → serializers 格式化输出。

不 try/except 业务异常，全部交给 exception_handler.unified_exception_handler。
角色按 HTTP 方法声明在 method_roles 上。
"""

from django.contrib.auth import authenticate, login, logout
from django.http import JsonResponse
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.views import APIView

from . import services
from .exceptions import AuthenticationError
from .intake import (
    CategoryIntake,
    DoctorIntake,
    InvoiceIntake,
    InvoiceUpdateIntake,
    LabTestIntake,
    LoginIntake,
    OrderIntake,
    OrderUpdateIntake,
    PackageIntake,
    PatientIntake,
    PatientProfileIntake,
    PatientUpdateIntake,
    ResultIntake,
    ResultUpdateIntake,
    TechnicianIntake,
    UserIntake,
)
from .permissions import ADMIN, DOCTOR, LAB_TECH, PATIENT, RECEPTION, STAFF_ROLES, HasRole
from .serializers import (
    serialize_category,
    serialize_created,
    serialize_doctor,
    serialize_invoice,
    serialize_lab_test,
    serialize_order,
    serialize_package,
    serialize_page,
    serialize_patient,
    serialize_result,
    serialize_technician,
    serialize_user,
)


def _flag(value):
    """'true' / 'false' 查询参数 → bool，没传返回 None。"""
    if value is None or value == '':
        return None
    return str(value).lower() in ('1', 'true', 'yes')


def _page_response(request, queryset, resource, serializer):
    items, pagination = services.paginate(
        queryset,
        request.query_params.get('page'),
        request.query_params.get('limit'),
    )
    return JsonResponse(serialize_page(resource, items, pagination, serializer))


class RoleAPIView(APIView):
    """
    method_roles = {'GET': STAFF_ROLES, 'POST': (ADMIN, RECEPTION)}

    没列出的方法只要求登录。
    """

    method_roles = {}

    def get_permissions(self):
        permissions = [IsAuthenticated()]
        roles = self.method_roles.get(self.request.method)
        if roles:
            permissions.append(HasRole(*roles)())
        return permissions


# ── Auth ───────────────────────────────────────────────────────────────────

class LoginView(APIView):
    """POST /api/auth/login/"""

    authentication_classes = []
    permission_classes = [AllowAny]

    def post(self, request):
        credentials = LoginIntake(request.data).process()
        user = authenticate(request, username=credentials.email, password=credentials.password)
        if user is None:
            raise AuthenticationError(message='Invalid email or password')
        login(request, user)
        return JsonResponse({'message': 'Login successful', 'user': serialize_user(user)})


class SignupView(APIView):
    """POST /api/auth/signup/ — 患者自助注册，角色固定为 patient"""

    authentication_classes = []
    permission_classes = [AllowAny]

    def post(self, request):
        data = UserIntake(request.data, forced_role=PATIENT).process()
        user = services.provision_user(data)
        return JsonResponse(
            serialize_created('user', user, serialize_user, 'Account created successfully'),
            status=201,
        )


class LogoutView(APIView):
    """POST /api/auth/logout/"""

    def post(self, request):
        logout(request)
        return JsonResponse({'message': 'Logged out'})


class MeView(APIView):
    """GET /api/auth/me/"""

    def get(self, request):
        body = serialize_user(request.user)
        for attr, key in (
            ('patient_profile', 'patient_id'),
            ('doctor_profile', 'doctor_id'),
            ('technician_profile', 'tech_id'),
        ):
            profile = getattr(request.user, attr, None)
            if profile is not None:
                body['profile'] = {'id': str(profile.id), key: getattr(profile, key)}
        return JsonResponse({'user': body})


class UserProvisionView(RoleAPIView):
    """POST /api/admin/users/"""

    method_roles = {'POST': (ADMIN,)}

    def post(self, request):
        data = UserIntake(request.data).process()
        user = services.provision_user(data)
        return JsonResponse(
            serialize_created('user', user, serialize_user, 'User created successfully'),
            status=201,
        )


# ── Patients ───────────────────────────────────────────────────────────────

class PatientListView(RoleAPIView):
    """GET / POST /api/patients/"""

    method_roles = {'GET': STAFF_ROLES, 'POST': (ADMIN, RECEPTION)}

    def get(self, request):
        patients = services.search_patients(request.query_params.get('search', ''))
        return _page_response(request, patients, 'patients', serialize_patient)

    def post(self, request):
        data = PatientIntake(request.data).process()
        patient = services.create_patient(data)
        return JsonResponse(
            serialize_created('patient', patient, serialize_patient, 'Patient created successfully'),
            status=201,
        )


class PatientDetailView(RoleAPIView):
    """GET / PATCH / DELETE /api/patients/<id>/"""

    method_roles = {'GET': STAFF_ROLES, 'PATCH': (ADMIN, RECEPTION), 'DELETE': (ADMIN,)}

    def get(self, request, pk):
        return JsonResponse({'patient': serialize_patient(services.get_patient(pk))})

    def patch(self, request, pk):
        patient = services.get_patient(pk)
        changes = PatientUpdateIntake(request.data).process()
        patient = services.update_patient(patient, changes)
        return JsonResponse({'message': 'Patient updated successfully', 'patient': serialize_patient(patient)})

    def delete(self, request, pk):
        services.delete_patient(services.get_patient(pk))
        return JsonResponse({'message': 'Patient deleted successfully'})


# ── Staff ──────────────────────────────────────────────────────────────────

class DoctorListView(RoleAPIView):
    """GET / POST /api/doctors/"""

    method_roles = {'POST': (ADMIN, RECEPTION)}

    def get(self, request):
        doctors = services.search_doctors(
            request.query_params.get('search', ''),
            _flag(request.query_params.get('is_active')),
        )
        return _page_response(request, doctors, 'doctors', serialize_doctor)

    def post(self, request):
        data = DoctorIntake(request.data).process()
        doctor = services.register_doctor(data)
        return JsonResponse(
            serialize_created('doctor', doctor, serialize_doctor, 'Doctor created successfully'),
            status=201,
        )


class TechnicianListView(RoleAPIView):
    """GET / POST /api/technicians/"""

    method_roles = {'POST': (ADMIN,)}

    def get(self, request):
        technicians = services.list_technicians(request.query_params.get('search', ''))
        return _page_response(request, technicians, 'technicians', serialize_technician)

    def post(self, request):
        data = TechnicianIntake(request.data).process()
        technician = services.register_technician(data)
        return JsonResponse(
            serialize_created('technician', technician, serialize_technician, 'Technician created successfully'),
            status=201,
        )


# ── Catalogue ──────────────────────────────────────────────────────────────

class CategoryListView(RoleAPIView):
    """GET / POST /api/test-categories/"""

    method_roles = {'POST': (ADMIN, LAB_TECH)}

    def get(self, request):
        categories = services.list_categories(
            request.query_params.get('search', ''),
            _flag(request.query_params.get('is_active')),
        )
        return _page_response(request, categories, 'categories', serialize_category)

    def post(self, request):
        data = CategoryIntake(request.data).process()
        category = services.create_category(data)
        return JsonResponse(
            serialize_created('category', category, serialize_category, 'Category created successfully'),
            status=201,
        )


class CategoryDetailView(RoleAPIView):
    """GET / PUT / PATCH / DELETE /api/test-categories/<id>/"""

    method_roles = {
        'PUT': (ADMIN, LAB_TECH),
        'PATCH': (ADMIN, LAB_TECH),
        'DELETE': (ADMIN, LAB_TECH),
    }

    def get(self, request, pk):
        return JsonResponse({'category': serialize_category(services.get_category(pk))})

    def put(self, request, pk):
        category = services.get_category(pk)
        changes = CategoryIntake(request.data, partial=True).process()
        category = services.update_category(category, changes)
        return JsonResponse({'message': 'Category updated successfully', 'category': serialize_category(category)})

    patch = put

    def delete(self, request, pk):
        services.delete_category(services.get_category(pk))
        return JsonResponse({'message': 'Category deleted successfully'})


class LabTestListView(RoleAPIView):
    """GET / POST /api/tests/"""

    method_roles = {'POST': (ADMIN,)}

    def get(self, request):
        tests = services.search_lab_tests(
            request.query_params.get('search', ''),
            request.query_params.get('category', ''),
            _flag(request.query_params.get('is_active')),
        )
        return _page_response(request, tests, 'tests', serialize_lab_test)

    def post(self, request):
        data = LabTestIntake(request.data).process()
        lab_test = services.create_lab_test(data)
        return JsonResponse(
            serialize_created('test', lab_test, serialize_lab_test, 'Test created successfully'),
            status=201,
        )


class LabTestDetailView(RoleAPIView):
    """GET / PATCH / DELETE /api/tests/<id>/"""

    method_roles = {'PATCH': (ADMIN,), 'DELETE': (ADMIN,)}

    def get(self, request, pk):
        return JsonResponse({'test': serialize_lab_test(services.get_lab_test(pk))})

    def patch(self, request, pk):
        lab_test = services.get_lab_test(pk)
        changes = LabTestIntake(request.data, partial=True).process()
        lab_test = services.update_lab_test(lab_test, changes)
        return JsonResponse({'message': 'Test updated successfully', 'test': serialize_lab_test(lab_test)})

    def delete(self, request, pk):
        services.delete_lab_test(services.get_lab_test(pk))
        return JsonResponse({'message': 'Test deleted successfully'})


class PackageListView(RoleAPIView):
    """GET / POST /api/packages/"""

    method_roles = {'POST': (ADMIN,)}

    def get(self, request):
        packages = services.list_packages(_flag(request.query_params.get('is_active')))
        return _page_response(request, packages, 'packages', serialize_package)

    def post(self, request):
        data = PackageIntake(request.data).process()
        package = services.create_package(data)
        return JsonResponse(
            serialize_created('package', package, serialize_package, 'Package created successfully'),
            status=201,
        )


# ── Orders ─────────────────────────────────────────────────────────────────

class OrderListView(RoleAPIView):
    """GET / POST /api/orders/"""

    method_roles = {'GET': STAFF_ROLES, 'POST': (ADMIN, RECEPTION, DOCTOR)}

    def get(self, request):
        filters = {
            name: request.query_params.get(name)
            for name in ('search', 'order_status', 'payment_status', 'priority', 'patient')
        }
        return _page_response(request, services.list_orders(filters), 'orders', serialize_order)

    def post(self, request):
        data = OrderIntake(request.data).process()
        order = services.create_order(data, user=request.user)
        return JsonResponse(
            serialize_created('order', order, serialize_order, 'Test order created successfully'),
            status=201,
        )


class OrderDetailView(RoleAPIView):
    """GET / PATCH / DELETE /api/orders/<id>/"""

    method_roles = {
        'GET': STAFF_ROLES,
        'PATCH': (ADMIN, RECEPTION, LAB_TECH),
        'DELETE': (ADMIN, RECEPTION),
    }

    def get(self, request, pk):
        return JsonResponse({'order': serialize_order(services.get_order(pk))})

    def patch(self, request, pk):
        order = services.get_order(pk)
        changes = OrderUpdateIntake(request.data).process()
        order = services.update_order(order, changes)
        return JsonResponse({'message': 'Test order updated successfully', 'order': serialize_order(order)})

    def delete(self, request, pk):
        services.delete_order(services.get_order(pk))
        return JsonResponse({'message': 'Test order deleted successfully'})


# ── Invoices ───────────────────────────────────────────────────────────────

class InvoiceListView(RoleAPIView):
    """GET / POST /api/invoices/"""

    method_roles = {'GET': STAFF_ROLES, 'POST': (ADMIN, RECEPTION)}

    def get(self, request):
        params = request.query_params
        filters = {
            'search': params.get('search'),
            'payment_status': params.get('payment_status'),
            'patient': params.get('patient'),
            'is_active': _flag(params.get('is_active')),
            'date_from': params.get('date_from'),
            'date_to': params.get('date_to'),
        }
        return _page_response(request, services.list_invoices(filters), 'invoices', serialize_invoice)

    def post(self, request):
        data = InvoiceIntake(request.data).process()
        invoice = services.create_invoice(data, user=request.user)
        return JsonResponse(
            serialize_created('invoice', invoice, serialize_invoice, 'Invoice created successfully'),
            status=201,
        )


class InvoiceDetailView(RoleAPIView):
    """GET / PATCH / DELETE /api/invoices/<id>/"""

    method_roles = {
        'GET': STAFF_ROLES,
        'PATCH': (ADMIN, RECEPTION),
        'DELETE': (ADMIN,),
    }

    def get(self, request, pk):
        return JsonResponse({'invoice': serialize_invoice(services.get_invoice(pk))})

    def patch(self, request, pk):
        invoice = services.get_invoice(pk)
        changes = InvoiceUpdateIntake(request.data).process()
        invoice = services.update_invoice(invoice, changes)
        return JsonResponse({'message': 'Invoice updated successfully', 'invoice': serialize_invoice(invoice)})

    def delete(self, request, pk):
        services.delete_invoice(services.get_invoice(pk))
        return JsonResponse({'message': 'Invoice deleted successfully'})


# ── Results ────────────────────────────────────────────────────────────────

class ResultListView(RoleAPIView):
    """GET / POST /api/results/"""

    method_roles = {'GET': STAFF_ROLES, 'POST': (LAB_TECH, ADMIN)}

    def get(self, request):
        params = request.query_params
        filters = {
            'order': params.get('order'),
            'patient': params.get('patient'),
            'is_verified': _flag(params.get('is_verified')),
        }
        return _page_response(request, services.list_results(filters), 'results', serialize_result)

    def post(self, request):
        data = ResultIntake(request.data).process()
        result = services.record_result(data, request.user)
        return JsonResponse(
            serialize_created('result', result, serialize_result, 'Test result recorded successfully'),
            status=201,
        )


class ResultDetailView(RoleAPIView):
    """
    GET / PUT / PATCH / DELETE /api/results/<id>/

    PUT 哪些字段能改由 services.update_result() 按角色判断。
    """

    method_roles = {
        'GET': STAFF_ROLES,
        'PUT': (LAB_TECH, DOCTOR, ADMIN),
        'PATCH': (LAB_TECH, DOCTOR, ADMIN),
        'DELETE': (ADMIN,),
    }

    def get(self, request, pk):
        return JsonResponse({'result': serialize_result(services.get_result(pk))})

    def put(self, request, pk):
        result = services.get_result(pk)
        changes = ResultUpdateIntake(request.data).process()
        result = services.update_result(result, changes, request.user)
        return JsonResponse({'message': 'Test result updated successfully', 'result': serialize_result(result)})

    patch = put

    def delete(self, request, pk):
        services.delete_result(services.get_result(pk))
        return JsonResponse({'message': 'Test result deleted successfully'})


class LabDashboardView(RoleAPIView):
    """GET /api/lab/dashboard/"""

    method_roles = {'GET': (ADMIN, LAB_TECH)}

    def get(self, request):
        return JsonResponse({'stats': services.lab_dashboard_stats()})


class ResultVerifyView(RoleAPIView):
    """POST /api/results/<id>/verify/"""

    method_roles = {'POST': (DOCTOR, ADMIN)}

    def post(self, request, pk):
        result = services.verify_result(services.get_result(pk), request.user)
        return JsonResponse({'message': 'Test result verified', 'result': serialize_result(result)})


# ── Patient self-service ───────────────────────────────────────────────────

class MyProfileView(RoleAPIView):
    """GET / PUT /api/patient/profile/"""

    method_roles = {'GET': (PATIENT,), 'PUT': (PATIENT,), 'PATCH': (PATIENT,)}

    def get(self, request):
        return JsonResponse({'patient': serialize_patient(services.patient_for_user(request.user))})

    def put(self, request):
        changes = PatientProfileIntake(request.data).process()
        patient = services.update_own_profile(request.user, changes)
        return JsonResponse({'message': 'Profile updated successfully', 'patient': serialize_patient(patient)})

    patch = put


class MyOrdersView(RoleAPIView):
    """GET /api/patient/orders/"""

    method_roles = {'GET': (PATIENT,)}

    def get(self, request):
        return _page_response(request, services.orders_for_user(request.user), 'orders', serialize_order)


class MyResultsView(RoleAPIView):
    """GET /api/patient/results/"""

    method_roles = {'GET': (PATIENT,)}

    def get(self, request):
        return _page_response(request, services.results_for_user(request.user), 'results', serialize_result)
