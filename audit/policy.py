# audit/policy.py
"""
Static evaluation of IAM policy documents.

- Pure functions over plain dicts shaped like the JSON IAM accepts.
- Covers the subset of IAM the report bucket policy and the job role use:
  Principal/NotPrincipal, Action/NotAction, Resource/NotResource and the
  String*, Arn* and Bool condition operators.
- Evaluation order follows IAM: an explicit Deny wins over any Allow, and
  nothing matching means an implicit deny.
"""

import re
from functools import lru_cache
from typing import Any, Dict, List, Optional

ALLOW = "ALLOW"
DENY = "DENY"
IMPLICIT_DENY = "IMPLICIT_DENY"

_ACCOUNT_ID = re.compile(r"^\d{12}$")
_ROOT_ARN = re.compile(r"^arn:aws[a-z-]*:iam::(\d{12}):root$")


def as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


@lru_cache(maxsize=256)
def _glob_regex(pattern: str):
    parts = []
    for ch in pattern:
        if ch == "*":
            parts.append(".*")
        elif ch == "?":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("".join(parts), re.DOTALL)


def string_like(value: str, pattern: str) -> bool:
    """
    IAM StringLike matching: `*` matches any run of characters, `?` exactly one.
    """
    return _glob_regex(pattern).fullmatch(value) is not None


def action_matches(action: str, patterns: Any) -> bool:
    """Action names are case-insensitive in IAM."""
    return any(string_like(action.lower(), str(p).lower()) for p in as_list(patterns))


def resource_matches(resource: str, patterns: Any) -> bool:
    return any(string_like(resource, str(p)) for p in as_list(patterns))


def _account_of(arn: str) -> Optional[str]:
    parts = arn.split(":")
    if len(parts) >= 5 and parts[0] == "arn":
        return parts[4] or None
    return None


def principal_matches(principal_arn: str, principal: Any) -> bool:
    """
    Return True if `principal_arn` is covered by a policy Principal block.

    An account id or account root ARN covers every principal in that account.
    Service principals are compared by name.
    """
    if principal == "*":
        return True
    if not isinstance(principal, dict):
        return False
    for p in as_list(principal.get("AWS")):
        p = str(p)
        if p == "*" or p == principal_arn:
            return True
        root = _ROOT_ARN.match(p)
        account = root.group(1) if root else (p if _ACCOUNT_ID.match(p) else None)
        if account and account == _account_of(principal_arn):
            return True
    return principal_arn in [str(s) for s in as_list(principal.get("Service"))]


def _condition_values(operator: str, values: Any) -> List[str]:
    vals = [str(v) for v in as_list(values)]
    if operator == "Bool":
        return [v.lower() for v in vals]
    return vals


def _operator_matches(operator: str, actual: Optional[str], expected: List[str]) -> Optional[bool]:
    """
    Evaluate one condition key. Returns None for operators this module does not know.
    """
    if operator in ("StringEquals", "ArnEquals"):
        return actual is not None and actual in expected
    if operator in ("StringNotEquals", "ArnNotEquals"):
        return actual is None or actual not in expected
    if operator in ("StringLike", "ArnLike"):
        return actual is not None and any(string_like(actual, e) for e in expected)
    if operator in ("StringNotLike", "ArnNotLike"):
        return actual is None or not any(string_like(actual, e) for e in expected)
    if operator == "Bool":
        return actual is not None and actual.lower() in expected
    return None


def conditions_hold(conditions: Optional[Dict[str, Any]], context: Dict[str, str],
                    effect: str = "Allow") -> bool:
    """
    Return True if every condition block holds for `context`.

    Unsupported operators are treated conservatively: they never widen an
    Allow and never narrow a Deny.
    """
    for operator, block in (conditions or {}).items():
        for key, values in block.items():
            result = _operator_matches(operator, context.get(key), _condition_values(operator, values))
            if result is None:
                result = effect == "Deny"
            if not result:
                return False
    return True


def statement_applies(stmt: Dict[str, Any], principal_arn: str, action: str,
                      resource: str, context: Dict[str, str]) -> bool:
    if "Principal" in stmt and not principal_matches(principal_arn, stmt["Principal"]):
        return False
    if "NotPrincipal" in stmt and principal_matches(principal_arn, stmt["NotPrincipal"]):
        return False
    if "Action" in stmt and not action_matches(action, stmt["Action"]):
        return False
    if "NotAction" in stmt and action_matches(action, stmt["NotAction"]):
        return False
    if "Resource" in stmt and not resource_matches(resource, stmt["Resource"]):
        return False
    if "NotResource" in stmt and resource_matches(resource, stmt["NotResource"]):
        return False
    return conditions_hold(stmt.get("Condition"), context, stmt.get("Effect", "Allow"))


def evaluate(policy: Dict[str, Any], principal_arn: str, action: str, resource: str,
             context: Optional[Dict[str, str]] = None) -> str:
    """
    Evaluate a single policy document for one request.

    Returns ALLOW, DENY (explicit) or IMPLICIT_DENY. The request context
    defaults to an encrypted request from `principal_arn`.
    """
    ctx = {"aws:PrincipalArn": principal_arn, "aws:SecureTransport": "true"}
    ctx.update(context or {})
    allowed = False
    for stmt in as_list(policy.get("Statement")):
        if not statement_applies(stmt, principal_arn, action, resource, ctx):
            continue
        if stmt.get("Effect") == "Deny":
            return DENY
        if stmt.get("Effect") == "Allow":
            allowed = True
    return ALLOW if allowed else IMPLICIT_DENY


def is_denied(policy: Dict[str, Any], principal_arn: str, action: str, resource: str,
              context: Optional[Dict[str, str]] = None) -> bool:
    return evaluate(policy, principal_arn, action, resource, context) == DENY


def trusted_principals(assume_role_policy: Dict[str, Any]) -> Dict[str, List[str]]:
    """
    Collect principals allowed to call sts:AssumeRole, keyed by principal type.
    A bare "*" principal is reported under "AWS".
    """
    found: Dict[str, List[str]] = {}
    for stmt in as_list(assume_role_policy.get("Statement")):
        if stmt.get("Effect") != "Allow" or not action_matches("sts:AssumeRole", stmt.get("Action")):
            continue
        principal = stmt.get("Principal")
        if principal == "*":
            found.setdefault("AWS", []).append("*")
            continue
        for kind, values in (principal or {}).items():
            found.setdefault(kind, []).extend(str(v) for v in as_list(values))
    return found


def trusted_service_principals(assume_role_policy: Dict[str, Any]) -> List[str]:
    return trusted_principals(assume_role_policy).get("Service", [])


def trust_policy_only_allows(assume_role_policy: Dict[str, Any], service: str) -> bool:
    """
    True if the only principal able to assume the role is `service`.
    """
    principals = trusted_principals(assume_role_policy)
    return set(principals) == {"Service"} and set(principals["Service"]) == {service}


def default_deny_leaks(policy: Dict[str, Any], principals: List[str], actions: List[str],
                       resources: List[str]) -> List[str]:
    """
    Requests from `principals` that the policy does not explicitly deny,
    formatted as "principal action resource".
    """
    return [
        f"{principal} {action} {resource}"
        for principal in principals
        for action in actions
        for resource in resources
        if not is_denied(policy, principal, action, resource)
    ]


def denied_principals(policy: Dict[str, Any], principals: List[str], action: str,
                      resource: str) -> List[str]:
    return [p for p in principals if p and is_denied(policy, p, action, resource)]
