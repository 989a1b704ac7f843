"""
auth/permissions.py -- Route guard and role-change rules.

require_role() is the only authorization enforcement point. Every admin page
and every admin API route must depend on it (via role_required("admin"));
nothing is inherited from URL prefixes or parent routers.

The guard never produces a 403. It raises GuardRedirect, which the
application's exception handler turns into a 302:
  - no session                 -> /auth/signin?callbackUrl=<path>
  - session lacks the role     -> /
Role membership is read from the store on every call, not from the token's
roles claim, so a revoked role stops working on the very next request.

check_role_removal() / check_role_deletion() are the write-path rules layered
on top of the guard for the role-management endpoints.

Layer rule: no imports from web/ or api/.
"""

from __future__ import annotations

from typing import TYPE_CHECKING
from urllib.parse import quote

from fastapi import Request

from auth.dependencies import try_get_session
from auth.models import ADMIN_ROLE, PROTECTED_ROLES, Role
from auth.redirects import SIGNIN_PATH

if TYPE_CHECKING:
    from auth.store import UserStore


class GuardRedirect(Exception):
    """Raised by the route guard; carries the Location the browser is sent to."""

    def __init__(self, location: str) -> None:
        super().__init__(location)
        self.location = location


class RoleChangeError(Exception):
    """A role write that would break a self-protection rule."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


# ---------------------------------------------------------------------------
# Route guard
# ---------------------------------------------------------------------------


def require_role(request: Request, role_name: str) -> dict:
    """Return the session if the signed-in user holds role_name; otherwise redirect.

    Store errors propagate (the request fails with 500, never open).
    """
    session = try_get_session(request)
    if session is None:
        raise GuardRedirect(f"{SIGNIN_PATH}?callbackUrl={quote(request.url.path, safe='/')}")

    store: UserStore = request.app.state.user_store
    user_id = session["user"].get("id")
    if not user_id or not store.has_role(user_id, role_name):
        raise GuardRedirect("/")
    return session


def role_required(role_name: str):
    """Build a FastAPI dependency that runs require_role(request, role_name).

    Usage:
        @router.get("/admin/users")
        def users(session: dict = Depends(role_required("admin"))): ...
    """

    def dependency(request: Request) -> dict:
        return require_role(request, role_name)

    dependency.__name__ = f"require_{role_name}_role"
    return dependency


# ---------------------------------------------------------------------------
# Write-path rules
# ---------------------------------------------------------------------------


def check_role_removal(store: UserStore, actor_id: str, target_user_id: str, role_name: str) -> None:
    """Raise RoleChangeError if removing role_name from target_user_id is forbidden.

    - Nobody may remove their own admin role.
    - The last live admin assignment in the system may not be removed, no
      matter which admin asks.
    """
    if role_name != ADMIN_ROLE:
        return
    if actor_id == target_user_id:
        raise RoleChangeError("self_admin_removal", "You cannot remove your own admin role.")
    if store.count_role_holders(ADMIN_ROLE) <= 1:
        raise RoleChangeError("last_admin", "Cannot remove the last admin.")


def check_user_deletion(store: UserStore, actor_id: str, target_user_id: str) -> None:
    """Soft-deleting a user must not remove the actor or the last admin."""
    if actor_id == target_user_id:
        raise RoleChangeError("self_deletion", "You cannot delete your own account.")
    if store.has_role(target_user_id, ADMIN_ROLE) and store.count_role_holders(ADMIN_ROLE) <= 1:
        raise RoleChangeError("last_admin", "Cannot delete the last admin.")


def check_role_deletion(store: UserStore, role: Role) -> None:
    """System roles can never be deleted; other roles only once nobody holds them."""
    if role.name in PROTECTED_ROLES:
        raise RoleChangeError("protected_role", f'Cannot delete the "{role.name}" role.')
    if store.count_role_holders(role.name) > 0:
        raise RoleChangeError("role_in_use", "Cannot delete a role with assigned users.")
