"""
Application-level authorization.

The access matrix is keyed by (collection, action). Each rule receives the
caller and the row the action targets: the stored record for select, update
and delete, the new record for insert. For ``order_item`` the row is the
parent order, since ownership lives there.
"""
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel

from errors import PermissionDeniedError, ValidationError

Row = Optional[Dict[str, Any]]


class Caller(BaseModel):
    user_id: Optional[str] = None
    is_admin: bool = False

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None


ANONYMOUS = Caller()
ROLES = ("customer", "admin")


def _anyone(caller: Caller, row: Row) -> bool:
    return True


def _admin(caller: Caller, row: Row) -> bool:
    return caller.is_admin


def _owner(caller: Caller, row: Row) -> bool:
    return caller.is_authenticated and row is not None and row.get("user_id") == caller.user_id


def _active(caller: Caller, row: Row) -> bool:
    return bool(row and row.get("is_active"))


def _either(*rules: Callable[[Caller, Row], bool]) -> Callable[[Caller, Row], bool]:
    return lambda caller, row: any(rule(caller, row) for rule in rules)


_active_or_admin = _either(_active, _admin)
_owner_or_admin = _either(_owner, _admin)

ACCESS_MATRIX: Dict[Tuple[str, str], Callable[[Caller, Row], bool]] = {
    ("product", "select"): _active_or_admin,
    ("product", "insert"): _admin,
    ("product", "update"): _admin,
    ("product", "delete"): _admin,
    ("category", "select"): _active,
    ("category", "insert"): _admin,
    ("category", "update"): _admin,
    ("category", "delete"): _admin,
    ("coupon", "select"): _active_or_admin,
    ("coupon", "insert"): _admin,
    ("coupon", "update"): _admin,
    ("coupon", "delete"): _admin,
    ("cart_item", "select"): _owner,
    ("cart_item", "insert"): _owner,
    ("cart_item", "update"): _owner,
    ("cart_item", "delete"): _owner,
    ("wishlist", "select"): _owner,
    ("wishlist", "insert"): _owner,
    ("wishlist", "delete"): _owner,
    ("order", "select"): _owner_or_admin,
    ("order", "insert"): _owner,
    ("order", "update"): _admin,
    ("order_item", "select"): _owner_or_admin,
    ("order_item", "insert"): _owner,
    ("review", "select"): _anyone,
    ("review", "insert"): _owner,
    ("review", "update"): _owner,
    ("review", "delete"): _owner,
    ("user_profile", "select"): _anyone,
    ("user_profile", "insert"): _owner,
    ("user_profile", "update"): _owner,
    ("user_role", "select"): _owner_or_admin,
    ("user_role", "insert"): _admin,
    ("user_role", "delete"): _admin,
}


def is_allowed(caller: Caller, collection: str, action: str, row: Row = None) -> bool:
    rule = ACCESS_MATRIX.get((collection, action))
    return rule is not None and rule(caller, row)


def authorize(caller: Caller, collection: str, action: str, row: Row = None) -> None:
    if not is_allowed(caller, collection, action, row):
        raise PermissionDeniedError(f"Not allowed to {action} {collection.replace('_', ' ')}")


def has_role(store, user_id: Optional[str], role: str) -> bool:
    if not user_id:
        return False
    return bool(store.query("user_role", {"user_id": user_id, "role": role}, limit=1))


def caller_for(store, user_id: Optional[str]) -> Caller:
    if not user_id:
        return ANONYMOUS
    return Caller(user_id=user_id, is_admin=has_role(store, user_id, "admin"))


def list_roles(store, caller: Caller, user_id: str) -> List[str]:
    authorize(caller, "user_role", "select", {"user_id": user_id})
    return sorted(r["role"] for r in store.query("user_role", {"user_id": user_id}))


def grant_role(store, caller: Caller, user_id: str, role: str) -> None:
    if role not in ROLES:
        raise ValidationError(f"Unknown role: {role}")
    record = {"user_id": user_id, "role": role}
    authorize(caller, "user_role", "insert", record)
    if not store.query("user_role", record, limit=1):
        store.insert("user_role", record)
