"""
Role-based row filtering.

Predicates are returned together with their bind parameters so user and
team ids never get interpolated into SQL text.
"""
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from workforce_api.services.security import CurrentUser

GLOBAL_TABLES = frozenset({"projects", "teams", "classification_rules", "pending_classifications"})
# tables whose rows belong to a single user through a user_id column
USER_SCOPED_TABLES = ("daily_usage", "app_usage", "project_time", "agent_audit_log")

ALLOW_ALL = "1=1"
DENY_ALL = "1=0"


@dataclass
class RBACFilter:
    clause: str
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_unrestricted(self) -> bool:
        return self.clause == ALLOW_ALL


def build_rbac_filter(user: CurrentUser, table: Optional[str] = None, alias: Optional[str] = None) -> RBACFilter:
    """
    Predicate restricting `table` (qualified by `alias` when given) to the rows
    `user` may see: admin all, manager own team, employee own rows.
    """
    if table in GLOBAL_TABLES:
        return RBACFilter(ALLOW_ALL)

    prefix = f"{alias}." if alias else ""
    role = (user.role or "").lower()
    if role == "admin":
        return RBACFilter(ALLOW_ALL)
    if role == "manager":
        if table == "users":
            return RBACFilter(f"{prefix}team_id = :rbac_team_id", {"rbac_team_id": user.team_id})
        return RBACFilter(
            f"{prefix}user_id IN (SELECT id FROM users WHERE team_id = :rbac_team_id)",
            {"rbac_team_id": user.team_id},
        )
    if role == "employee":
        if table == "users":
            return RBACFilter(f"{prefix}id = :rbac_user_id", {"rbac_user_id": user.id})
        return RBACFilter(f"{prefix}user_id = :rbac_user_id", {"rbac_user_id": user.id})
    return RBACFilter(DENY_ALL)


# clause keywords that may directly follow a table name and are never its alias
_CLAUSE_WORDS = (
    "JOIN", "INNER", "LEFT", "RIGHT", "FULL", "CROSS", "NATURAL", "OUTER", "LATERAL",
    "ON", "USING", "WHERE", "GROUP", "ORDER", "LIMIT", "HAVING", "UNION", "INTERSECT",
    "EXCEPT", "OFFSET", "WINDOW", "FETCH", "FOR",
)
_TABLE_ITEM = (
    r"([a-zA-Z_][\w.]*)"
    rf"(?:\s+(?:AS\s+)?(?!(?:{'|'.join(_CLAUSE_WORDS)})\b)([a-zA-Z_]\w*))?"
)
_TABLE_REF_RE = re.compile(rf"\b(?:FROM|JOIN)\s+{_TABLE_ITEM}", re.IGNORECASE)
# further items of a comma-separated FROM list
_NEXT_ITEM_RE = re.compile(rf"\s*,\s*{_TABLE_ITEM}", re.IGNORECASE)
_SET_OPERATION_RE = re.compile(r"(?i)\b(UNION|INTERSECT|EXCEPT)\b")


def _ref(match) -> Dict[str, Optional[str]]:
    return {"table": match.group(1).split(".")[-1].lower(), "alias": match.group(2)}


def table_references(sql: str) -> List[Dict[str, Optional[str]]]:
    """(table, alias) pairs in FROM/JOIN order. EXTRACT(field FROM col) is skipped."""
    cleaned = re.sub(r"(?is)\bEXTRACT\s*\(\s*\w+\s+FROM\s+[^)]*\)", "EXTRACT()", sql or "")
    refs: List[Dict[str, Optional[str]]] = []
    for m in _TABLE_REF_RE.finditer(cleaned):
        refs.append(_ref(m))
        pos = m.end()
        while True:
            nxt = _NEXT_ITEM_RE.match(cleaned, pos)
            if nxt is None:
                break
            refs.append(_ref(nxt))
            pos = nxt.end()
    return refs


def is_global_query(sql: str) -> bool:
    """True only when every table the statement touches is a global table."""
    tables = {ref["table"] for ref in table_references(sql)}
    return bool(tables) and tables <= GLOBAL_TABLES


def rbac_filter_for_sql(user: CurrentUser, sql: str) -> RBACFilter:
    """Pick the first user-owned table in the statement and filter on it."""
    if is_global_query(sql):
        return RBACFilter(ALLOW_ALL)
    refs = table_references(sql)
    multi = len(refs) > 1
    for ref in refs:
        if ref["table"] in USER_SCOPED_TABLES or ref["table"] == "users":
            qualifier = ref["alias"] or (ref["table"] if multi else None)
            return build_rbac_filter(user, ref["table"], qualifier)
    return build_rbac_filter(user)


def can_access_user_data(user: CurrentUser, target_user_id: str, target_team_id: Optional[str] = None) -> bool:
    role = (user.role or "").lower()
    if role == "admin":
        return True
    if role == "manager":
        return target_team_id is not None and target_team_id == user.team_id
    if role == "employee":
        return target_user_id == user.id
    return False


def get_accessible_team_ids(user: CurrentUser) -> Optional[List[str]]:
    """None means every team."""
    role = (user.role or "").lower()
    if role == "admin":
        return None
    return [user.team_id] if user.team_id else []



def rbac_coverage_error(user: CurrentUser, sql: str) -> Optional[str]:
    """
    Reason a single spliced predicate would leave user-owned rows unfiltered,
    or None when it covers the statement.

    The predicate lands on one table reference, so row-filtered users may not
    combine result sets or read a user-owned table through a second reference.
    """
    if (user.role or "").lower() == "admin" or is_global_query(sql):
        return None
    if _SET_OPERATION_RE.search(sql or ""):
        return "UNION, INTERSECT and EXCEPT are not allowed in row-filtered queries"
    refs = table_references(sql)
    scoped = [r["table"] for r in refs if r["table"] in USER_SCOPED_TABLES]
    if len(scoped) > 1:
        return f"Row-filtered queries may read only one user-owned table once, got: {', '.join(scoped)}"
    if not scoped and sum(1 for r in refs if r["table"] == "users") > 1:
        return "Row-filtered queries may reference users only once"
    return None
