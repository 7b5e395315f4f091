from __future__ import annotations

import uuid
from datetime import datetime
from typing import Callable, List, Optional

from vibeauth.logging import get_logger
from vibeauth.service.errors import ConflictError, NotFoundError
from vibeauth.storage.adapter import DatabaseAdapter, run_in_transaction
from vibeauth.storage.errors import ConstraintViolation
from vibeauth.storage.models import Permission, Role, to_db_time, utcnow

logger = get_logger(__name__)


class PermissionStore:
    """Roles, permissions and the two junctions between them and users.

    Grants and assignments are idempotent. Role membership here is separate
    from the single ``role`` column on the user record.
    """

    def __init__(self, db: DatabaseAdapter, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.db = db
        self._clock = clock or utcnow

    def _now(self) -> str:
        return to_db_time(self._clock())

    def _role_id(self, name: str) -> str:
        row = self.db.query_one("SELECT id FROM vibekit_roles WHERE name = ?", (name,))
        if not row:
            raise NotFoundError("Role not found", detail={"role": name})
        return row["id"]

    def _permission_id(self, name: str) -> str:
        row = self.db.query_one("SELECT id FROM vibekit_permissions WHERE name = ?", (name,))
        if not row:
            raise NotFoundError("Permission not found", detail={"permission": name})
        return row["id"]

    # Permissions

    async def create_permission(self, name: str, description: Optional[str] = None) -> Permission:
        permission = Permission(id=str(uuid.uuid4()), name=name, description=description, created_at=self._clock())
        try:
            self.db.execute(
                "INSERT INTO vibekit_permissions (id, name, description, created_at) VALUES (?, ?, ?, ?)",
                (permission.id, name, description, to_db_time(permission.created_at)),
            )
        except ConstraintViolation as exc:
            raise ConflictError("Permission already exists", detail={"permission": name}) from exc
        return permission

    async def delete_permission(self, name: str) -> bool:
        row = self.db.query_one("SELECT id FROM vibekit_permissions WHERE name = ?", (name,))
        if not row:
            return False

        def _delete(tx: DatabaseAdapter) -> None:
            tx.execute("DELETE FROM vibekit_role_permissions WHERE permission_id = ?", (row["id"],))
            tx.execute("DELETE FROM vibekit_permissions WHERE id = ?", (row["id"],))

        run_in_transaction(self.db, _delete)
        return True

    async def list_permissions(self) -> List[Permission]:
        result = self.db.query("SELECT * FROM vibekit_permissions ORDER BY name")
        return [Permission.from_row(row) for row in result.rows]

    # Roles

    async def create_role(self, name: str, description: Optional[str] = None) -> Role:
        role = Role(id=str(uuid.uuid4()), name=name, description=description, created_at=self._clock())
        try:
            self.db.execute(
                "INSERT INTO vibekit_roles (id, name, description, created_at) VALUES (?, ?, ?, ?)",
                (role.id, name, description, to_db_time(role.created_at)),
            )
        except ConstraintViolation as exc:
            raise ConflictError("Role already exists", detail={"role": name}) from exc
        return role

    async def get_role(self, name: str) -> Optional[Role]:
        row = self.db.query_one("SELECT * FROM vibekit_roles WHERE name = ?", (name,))
        return Role.from_row(row) if row else None

    async def delete_role(self, name: str) -> bool:
        row = self.db.query_one("SELECT id FROM vibekit_roles WHERE name = ?", (name,))
        if not row:
            return False

        def _delete(tx: DatabaseAdapter) -> None:
            tx.execute("DELETE FROM vibekit_role_permissions WHERE role_id = ?", (row["id"],))
            tx.execute("DELETE FROM vibekit_user_roles WHERE role_id = ?", (row["id"],))
            tx.execute("DELETE FROM vibekit_roles WHERE id = ?", (row["id"],))

        run_in_transaction(self.db, _delete)
        logger.info("role_deleted", role=name)
        return True

    async def list_roles(self) -> List[Role]:
        result = self.db.query("SELECT * FROM vibekit_roles ORDER BY name")
        return [Role.from_row(row) for row in result.rows]

    # Grants

    async def grant_permission(self, role: str, permission: str) -> None:
        role_id = self._role_id(role)
        permission_id = self._permission_id(permission)
        self.db.execute(
            "INSERT OR IGNORE INTO vibekit_role_permissions (id, role_id, permission_id, created_at) "
            "VALUES (?, ?, ?, ?)",
            (str(uuid.uuid4()), role_id, permission_id, self._now()),
        )

    async def revoke_permission(self, role: str, permission: str) -> bool:
        result = self.db.execute(
            "DELETE FROM vibekit_role_permissions WHERE "
            "role_id = (SELECT id FROM vibekit_roles WHERE name = ?) AND "
            "permission_id = (SELECT id FROM vibekit_permissions WHERE name = ?)",
            (role, permission),
        )
        return result.row_count > 0

    async def get_role_permissions(self, role: str) -> List[Permission]:
        result = self.db.query(
            "SELECT p.* FROM vibekit_permissions p "
            "JOIN vibekit_role_permissions rp ON rp.permission_id = p.id "
            "JOIN vibekit_roles r ON r.id = rp.role_id "
            "WHERE r.name = ? ORDER BY p.name",
            (role,),
        )
        return [Permission.from_row(row) for row in result.rows]

    # Assignments

    async def assign_role(self, user_id: str, role: str) -> None:
        role_id = self._role_id(role)
        self.db.execute(
            "INSERT OR IGNORE INTO vibekit_user_roles (id, user_id, role_id, created_at) "
            "VALUES (?, ?, ?, ?)",
            (str(uuid.uuid4()), user_id, role_id, self._now()),
        )
        logger.info("role_assigned", user_id=user_id, role=role)

    async def remove_role(self, user_id: str, role: str) -> bool:
        result = self.db.execute(
            "DELETE FROM vibekit_user_roles WHERE user_id = ? AND "
            "role_id = (SELECT id FROM vibekit_roles WHERE name = ?)",
            (user_id, role),
        )
        return result.row_count > 0

    async def get_user_roles(self, user_id: str) -> List[Role]:
        result = self.db.query(
            "SELECT r.* FROM vibekit_roles r "
            "JOIN vibekit_user_roles ur ON ur.role_id = r.id "
            "WHERE ur.user_id = ? ORDER BY r.name",
            (user_id,),
        )
        return [Role.from_row(row) for row in result.rows]

    async def get_user_permissions(self, user_id: str) -> List[Permission]:
        result = self.db.query(
            "SELECT DISTINCT p.* FROM vibekit_permissions p "
            "JOIN vibekit_role_permissions rp ON rp.permission_id = p.id "
            "JOIN vibekit_user_roles ur ON ur.role_id = rp.role_id "
            "WHERE ur.user_id = ? ORDER BY p.name",
            (user_id,),
        )
        return [Permission.from_row(row) for row in result.rows]

    async def user_has_permission(self, user_id: str, permission: str) -> bool:
        row = self.db.query_one(
            "SELECT EXISTS ("
            "SELECT 1 FROM vibekit_user_roles ur "
            "JOIN vibekit_role_permissions rp ON rp.role_id = ur.role_id "
            "JOIN vibekit_permissions p ON p.id = rp.permission_id "
            "WHERE ur.user_id = ? AND p.name = ?"
            ") AS granted",
            (user_id, permission),
        )
        return bool(row and row["granted"])

    async def user_has_role(self, user_id: str, role: str) -> bool:
        row = self.db.query_one(
            "SELECT EXISTS ("
            "SELECT 1 FROM vibekit_user_roles ur "
            "JOIN vibekit_roles r ON r.id = ur.role_id "
            "WHERE ur.user_id = ? AND r.name = ?"
            ") AS granted",
            (user_id, role),
        )
        return bool(row and row["granted"])
