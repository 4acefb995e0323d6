"""
api/routes/v1/users.py -- Administrative user and group endpoints, dashboards.

Routes:
  GET    /api/v1/users                             -- list users (Admin)
  POST   /api/v1/users                             -- create user with temporary password (Admin)
  PUT    /api/v1/users/{username}/role             -- replace all groups with one role (Admin)
  GET    /api/v1/users/{username}/groups           -- list a user's groups (Admin)
  POST   /api/v1/users/{username}/groups/{group}   -- add to group, idempotent (Admin)
  DELETE /api/v1/users/{username}/groups/{group}   -- remove from group, idempotent (Admin)
  GET    /api/v1/roles                             -- the known group vocabulary (Admin)
  GET    /api/v1/admin/dashboard                   -- Admin
  GET    /api/v1/user/dashboard                    -- User or Admin

Group names in the path are checked against KNOWN_GROUPS by the group store;
an unknown name is a 400 unknown_group, never a silent no-op.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from api.models import GroupListResponse, MessageResponse, RoleResponse, RoleUpdate, UserCreate, UserResponse
from auth.dependencies import get_auth_service, require_group
from auth.models import Claims, PrincipalStatus
from core.config import get_settings

# Auth policy: every route below requires a group; see each Depends().
router = APIRouter()

require_admin = require_group("Admin")


@router.get("/users", response_model=list[UserResponse])
async def list_users(
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _admin: Claims = Depends(require_admin),
) -> list[UserResponse]:
    service = get_auth_service(request)
    principals = await service.list_users(limit, offset)
    return [
        UserResponse.from_principal(p, await service.list_groups_for_principal(p.username)) for p in principals
    ]


@router.post("/users", response_model=UserResponse, status_code=201)
async def create_user(
    request: Request,
    body: UserCreate,
    _admin: Claims = Depends(require_admin),
) -> UserResponse:
    """Create an unconfirmed account. Its first login answers a password-reset challenge.

    groups defaults to DEFAULT_GROUP when empty.
    """
    service = get_auth_service(request)
    principal = await service.register(
        body.username,
        body.email,
        body.temporary_password,
        temporary=True,
        groups=body.groups or None,
    )
    return UserResponse.from_principal(principal, await service.list_groups_for_principal(principal.username))


@router.put("/users/{username}/role", response_model=GroupListResponse)
async def set_role(
    request: Request,
    username: str,
    body: RoleUpdate,
    _admin: Claims = Depends(require_admin),
) -> GroupListResponse:
    """Remove every group the user holds, add role, and optionally set account status."""
    status = PrincipalStatus(body.status.value) if body.status is not None else None
    groups = await get_auth_service(request).set_user_role(username, body.role, status)
    return GroupListResponse(username=username, groups=groups)


@router.get("/users/{username}/groups", response_model=GroupListResponse)
async def list_user_groups(
    request: Request,
    username: str,
    _admin: Claims = Depends(require_admin),
) -> GroupListResponse:
    service = get_auth_service(request)
    await service.get_profile(username)
    return GroupListResponse(username=username, groups=await service.list_groups_for_principal(username))


@router.post("/users/{username}/groups/{group}", response_model=GroupListResponse)
async def add_user_to_group(
    request: Request,
    username: str,
    group: str,
    _admin: Claims = Depends(require_admin),
) -> GroupListResponse:
    groups = await get_auth_service(request).add_user_to_group(username, group)
    return GroupListResponse(username=username, groups=groups)


@router.delete("/users/{username}/groups/{group}", response_model=GroupListResponse)
async def remove_user_from_group(
    request: Request,
    username: str,
    group: str,
    _admin: Claims = Depends(require_admin),
) -> GroupListResponse:
    groups = await get_auth_service(request).remove_user_from_group(username, group)
    return GroupListResponse(username=username, groups=groups)


@router.get("/roles", response_model=list[RoleResponse])
async def list_roles(_admin: Claims = Depends(require_admin)) -> list[RoleResponse]:
    return [RoleResponse(name=name) for name in get_settings().known_groups]


# ---------------------------------------------------------------------------
# Dashboards
# ---------------------------------------------------------------------------


@router.get("/admin/dashboard", response_model=MessageResponse)
async def admin_dashboard(claims: Claims = Depends(require_admin)) -> MessageResponse:
    return MessageResponse(message=f"Welcome to the admin dashboard, {claims.subject}.")


@router.get("/user/dashboard", response_model=MessageResponse)
async def user_dashboard(claims: Claims = Depends(require_group("User", "Admin"))) -> MessageResponse:
    return MessageResponse(message=f"Welcome to the user dashboard, {claims.subject}.")
