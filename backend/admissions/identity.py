import logging
import sqlite3
from dataclasses import dataclass

from .config import DEFAULT_TENANT_ID, DEFAULT_TENANT_SLUG

logger = logging.getLogger(__name__)

AGENT_FLOW_ROLES = {"agent", "staff", "admin"}


class IdentityNotFoundError(LookupError):
    """Raised when the acting user has no profile row."""


@dataclass(frozen=True)
class ActingIdentity:
    """Read-only view of the signed-in user, passed explicitly into the workflow."""

    user_id: str
    role: str = "student"
    tenant_id: str | None = None
    full_name: str = ""
    email: str = ""
    phone: str = ""

    @property
    def is_student(self) -> bool:
        return self.role == "student"

    @property
    def is_agent_flow(self) -> bool:
        return self.role in AGENT_FLOW_ROLES


def load_identity(db: sqlite3.Connection, user_id: str) -> ActingIdentity:
    row = db.execute(
        "SELECT id, role, tenant_id, full_name, email, phone FROM profiles WHERE id = ?",
        (user_id,),
    ).fetchone()
    if row is None:
        raise IdentityNotFoundError(f"Profile not found for user {user_id}")
    return ActingIdentity(
        user_id=str(row["id"]),
        role=str(row["role"] or "student").strip().lower(),
        tenant_id=str(row["tenant_id"]) if row["tenant_id"] else None,
        full_name=str(row["full_name"] or ""),
        email=str(row["email"] or ""),
        phone=str(row["phone"] or ""),
    )


def resolve_tenant_id(db: sqlite3.Connection, identity: ActingIdentity | None) -> str:
    if identity is not None and identity.tenant_id:
        return identity.tenant_id
    try:
        row = db.execute("SELECT id FROM tenants WHERE slug = ?", (DEFAULT_TENANT_SLUG,)).fetchone()
    except sqlite3.Error:
        logger.exception("Failed to resolve tenant for slug=%s", DEFAULT_TENANT_SLUG)
        row = None
    if row is not None and row[0]:
        return str(row[0])
    return DEFAULT_TENANT_ID
