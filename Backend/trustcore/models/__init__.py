from .directory import Organization, User
from .permission import Permission, Role, RolePermission, UserRole
from .security import SecuritySettings, IPAccessEntry, SecurityEvent, SecurityAlert, PasswordHistory
