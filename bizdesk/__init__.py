"""
BizDesk Package.

Client-side toolkit and backend-for-frontend for the business-management
REST API: API client, sessions, role-based permission checks, real-time chat
synchronization and tabular export. The FastAPI service lives in
``bizdesk.app``.
"""

__version__ = "1.0.0"
__author__ = "BizDesk Team"
__description__ = "Client toolkit and BFF for the business-management API"

from .api_client import ApiClient
from .config import settings
from .rbac import has_all_permissions, has_any_permission, has_permission

__all__ = [
    "ApiClient",
    "has_all_permissions",
    "has_any_permission",
    "has_permission",
    "settings",
    "__version__",
]
