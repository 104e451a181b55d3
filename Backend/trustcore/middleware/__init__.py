# Middleware package
from .permission_guard import AuthContext, PermissionChecker, get_current_user
from .security_audit import request_context
