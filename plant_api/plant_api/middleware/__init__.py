"""Middleware components for the PLANT API."""

from __future__ import annotations

from plant_api.middleware.auth import AuthenticationMiddleware
from plant_api.middleware.logging import RequestLoggingMiddleware
from plant_api.middleware.rbac import (
    ROLE_PERMISSIONS,
    Permission,
    Role,
    get_user_role,
    require_permission,
    require_role,
)

__all__ = [
    "AuthenticationMiddleware",
    "Permission",
    "ROLE_PERMISSIONS",
    "RequestLoggingMiddleware",
    "Role",
    "get_user_role",
    "require_permission",
    "require_role",
]
