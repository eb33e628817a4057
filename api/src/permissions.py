"""
Read-only role -> permission lookup, built once at startup and stored on
the application state. Authentication happens upstream; the gateway
forwards the caller's workspace role in the X-Patr-Role header.
"""

from types import MappingProxyType
from typing import Dict, Iterable, Mapping

from fastapi import Header, HTTPException, Request

class PermissionTable:

    def __init__(self, role_permissions: Mapping[str, Iterable[str]]):
        self._roles: Mapping[str, frozenset] = MappingProxyType({
            role: frozenset(permissions) for role, permissions in role_permissions.items()
        })

    @classmethod
    def from_settings(cls, settings) -> "PermissionTable":
        return cls(settings.role_permissions)

    def allows(self, role: str, permission: str) -> bool:
        return permission in self._roles.get(role, frozenset())

    def roles(self) -> Dict[str, frozenset]:
        return dict(self._roles)

def require_permission(permission: str):
    """Dependency that rejects callers whose role lacks the permission."""

    async def check(request: Request, x_patr_role: str = Header(None)):
        table: PermissionTable = request.app.state.permissions
        if not x_patr_role or not table.allows(x_patr_role, permission):
            raise HTTPException(status_code=403, detail=f"Missing permission {permission}")
        return x_patr_role

    return check
