"""
api/routes/v1/admin.py -- User and role administration REST endpoints.

Every route depends on role_required("admin") individually. Nothing here is
protected by the /admin prefix alone; a route added without the dependency
is public.

Routes:
  GET    /api/v1/admin/check                     -- is the caller an admin?
  GET    /api/v1/admin/users                     -- list users with their roles
  DELETE /api/v1/admin/users/{user_id}           -- soft-delete a user
  POST   /api/v1/admin/users/{user_id}/reset-password -- email the user a reset link
  POST   /api/v1/admin/users/{user_id}/roles     -- assign a role
  DELETE /api/v1/admin/users/{user_id}/roles     -- remove a role
  GET    /api/v1/admin/roles                     -- list roles with holder counts
  POST   /api/v1/admin/roles                     -- create a role
  DELETE /api/v1/admin/roles/{role_id}           -- soft-delete an unused, unprotected role

Role-change rules (auth.permissions):
  - an admin cannot remove their own admin role or delete themselves
  - the last admin can never lose the role or be deleted
  - "user" and "admin" cannot be deleted; roles in use cannot be deleted
Violations raise RoleChangeError, answered as 400 with the rule's code.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.models import AdminCheckResponse, MessageResponse, RoleAssignment, RoleCreate, RoleResponse, UserResponse
from auth.models import ADMIN_ROLE
from auth.passwords import send_reset_link_to
from auth.permissions import check_role_deletion, check_role_removal, check_user_deletion, role_required
from auth.store import UserStore

logger = logging.getLogger("launchkit.api.admin")

router = APIRouter()

require_admin = role_required(ADMIN_ROLE)


def _get_user_or_404(store: UserStore, user_id: str):
    user = store.get_by_id(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "User not found."})
    return user


def _get_role_by_name_or_404(store: UserStore, name: str):
    role = store.get_role_by_name(name)
    if role is None:
        raise HTTPException(status_code=404, detail={"code": "role_not_found", "message": f'Role "{name}" not found.'})
    return role


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@router.get("/admin/check", response_model=AdminCheckResponse)
async def admin_check(session: dict = Depends(require_admin)) -> AdminCheckResponse:
    """Admin check for client-side UIs. Non-admins never reach the body; they are redirected."""
    return AdminCheckResponse(is_admin=True, user_id=session["user"]["id"])


@router.get("/admin/users", response_model=list[UserResponse])
def list_users(request: Request, session: dict = Depends(require_admin)) -> list[UserResponse]:
    store: UserStore = request.app.state.user_store
    return [UserResponse.from_user(u, store.roles_for(u.id)) for u in store.list_users()]


@router.delete("/admin/users/{user_id}", status_code=204)
def delete_user(request: Request, user_id: str, session: dict = Depends(require_admin)) -> Response:
    """Soft-delete a user. The row stays; the user can no longer sign in."""
    store: UserStore = request.app.state.user_store
    _get_user_or_404(store, user_id)
    check_user_deletion(store, session["user"]["id"], user_id)
    store.soft_delete_user(user_id)
    logger.info("User %s deleted by %s", user_id, session["user"]["id"])
    return Response(status_code=204)


@router.post("/admin/users/{user_id}/reset-password", response_model=MessageResponse)
def send_password_reset(request: Request, user_id: str, session: dict = Depends(require_admin)) -> MessageResponse:
    """Email the user a single-use password reset link. The admin never sees the token."""
    store: UserStore = request.app.state.user_store
    user = _get_user_or_404(store, user_id)
    base_url = request.app.state.settings.base_url or str(request.base_url)
    send_reset_link_to(request.app.state.mailer, user, base_url)
    logger.info("Password reset link for %s sent by %s", user_id, session["user"]["id"])
    return MessageResponse(message="Password reset link sent.")


@router.post("/admin/users/{user_id}/roles", response_model=UserResponse)
def assign_role(
    request: Request,
    user_id: str,
    body: RoleAssignment,
    session: dict = Depends(require_admin),
) -> UserResponse:
    store: UserStore = request.app.state.user_store
    user = _get_user_or_404(store, user_id)
    _get_role_by_name_or_404(store, body.role_name)
    if not store.assign_role(user_id, body.role_name):
        raise HTTPException(
            status_code=400,
            detail={"code": "role_already_assigned", "message": "User already has this role."},
        )
    logger.info("Role %r assigned to %s by %s", body.role_name, user_id, session["user"]["id"])
    return UserResponse.from_user(user, store.roles_for(user_id))


@router.delete("/admin/users/{user_id}/roles", response_model=UserResponse)
def remove_role(
    request: Request,
    user_id: str,
    body: RoleAssignment,
    session: dict = Depends(require_admin),
) -> UserResponse:
    """Remove a role from a user, subject to the self-removal and last-admin rules."""
    store: UserStore = request.app.state.user_store
    user = _get_user_or_404(store, user_id)
    _get_role_by_name_or_404(store, body.role_name)
    check_role_removal(store, session["user"]["id"], user_id, body.role_name)
    if not store.remove_role(user_id, body.role_name):
        raise HTTPException(
            status_code=404,
            detail={"code": "role_not_assigned", "message": "User does not have this role."},
        )
    logger.info("Role %r removed from %s by %s", body.role_name, user_id, session["user"]["id"])
    return UserResponse.from_user(user, store.roles_for(user_id))


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


@router.get("/admin/roles", response_model=list[RoleResponse])
def list_roles(request: Request, session: dict = Depends(require_admin)) -> list[RoleResponse]:
    store: UserStore = request.app.state.user_store
    return [RoleResponse.from_role(r) for r in store.list_roles()]


@router.post("/admin/roles", response_model=RoleResponse, status_code=201)
def create_role(request: Request, body: RoleCreate, session: dict = Depends(require_admin)) -> RoleResponse:
    store: UserStore = request.app.state.user_store
    if store.get_role_by_name(body.name) is not None:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": f'Role "{body.name}" already exists.'},
        )
    role_id = store.create_role(body.name)
    logger.info("Role %r created by %s", body.name, session["user"]["id"])
    return RoleResponse.from_role(store.get_role(role_id))


@router.delete("/admin/roles/{role_id}", status_code=204)
def delete_role(request: Request, role_id: str, session: dict = Depends(require_admin)) -> Response:
    store: UserStore = request.app.state.user_store
    role = store.get_role(role_id)
    if role is None:
        raise HTTPException(status_code=404, detail={"code": "role_not_found", "message": "Role not found."})
    check_role_deletion(store, role)
    store.delete_role(role_id)
    logger.info("Role %r deleted by %s", role.name, session["user"]["id"])
    return Response(status_code=204)
