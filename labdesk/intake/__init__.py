from .base import BaseIntake
from .payloads import (
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

__all__ = [
    'BaseIntake',
    'CategoryIntake',
    'DoctorIntake',
    'InvoiceIntake',
    'InvoiceUpdateIntake',
    'LabTestIntake',
    'LoginIntake',
    'OrderIntake',
    'OrderUpdateIntake',
    'PackageIntake',
    'PatientIntake',
    'PatientProfileIntake',
    'PatientUpdateIntake',
    'ResultIntake',
    'ResultUpdateIntake',
    'TechnicianIntake',
    'UserIntake',
]
