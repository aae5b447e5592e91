from django.urls import path

from . import views

urlpatterns = [
    path('auth/login/', views.LoginView.as_view(), name='auth-login'),
    path('auth/signup/', views.SignupView.as_view(), name='auth-signup'),
    path('auth/logout/', views.LogoutView.as_view(), name='auth-logout'),
    path('auth/me/', views.MeView.as_view(), name='auth-me'),
    path('admin/users/', views.UserProvisionView.as_view(), name='user-provision'),

    path('patients/', views.PatientListView.as_view(), name='patient-list'),
    path('patients/<uuid:pk>/', views.PatientDetailView.as_view(), name='patient-detail'),
    path('doctors/', views.DoctorListView.as_view(), name='doctor-list'),
    path('technicians/', views.TechnicianListView.as_view(), name='technician-list'),

    path('test-categories/', views.CategoryListView.as_view(), name='category-list'),
    path('test-categories/<uuid:pk>/', views.CategoryDetailView.as_view(), name='category-detail'),
    path('tests/', views.LabTestListView.as_view(), name='test-list'),
    path('tests/<uuid:pk>/', views.LabTestDetailView.as_view(), name='test-detail'),
    path('packages/', views.PackageListView.as_view(), name='package-list'),

    path('orders/', views.OrderListView.as_view(), name='order-list'),
    path('orders/<uuid:pk>/', views.OrderDetailView.as_view(), name='order-detail'),
    path('invoices/', views.InvoiceListView.as_view(), name='invoice-list'),
    path('invoices/<uuid:pk>/', views.InvoiceDetailView.as_view(), name='invoice-detail'),

    path('results/', views.ResultListView.as_view(), name='result-list'),
    path('results/<uuid:pk>/', views.ResultDetailView.as_view(), name='result-detail'),
    path('results/<uuid:pk>/verify/', views.ResultVerifyView.as_view(), name='result-verify'),

    path('lab/dashboard/', views.LabDashboardView.as_view(), name='lab-dashboard'),

    path('patient/profile/', views.MyProfileView.as_view(), name='my-profile'),
    path('patient/orders/', views.MyOrdersView.as_view(), name='my-orders'),
    path('patient/results/', views.MyResultsView.as_view(), name='my-results'),
]
