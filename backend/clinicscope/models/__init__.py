from .tenancy import Tenant, Company, Branch
from .auth import User, UserBranch, SessionToken
from .security import SecurityEvent
from .clinical import Patient, Appointment, Department

__all__ = [
    'Tenant', 'Company', 'Branch',
    'User', 'UserBranch', 'SessionToken',
    'SecurityEvent',
    'Patient', 'Appointment', 'Department',
]
