"""
auth/guard.py -- Authorization guard.

Two gates, always applied in this order:

  authenticate(token)         -- precondition: the request carries a valid
                                 token with a subject. Produces Claims.
  require_group(claims, ...)  -- capability: the caller currently holds at
                                 least one of the required groups.

The group check asks the GroupMembershipStore for the caller's current
groups rather than trusting the token's group snapshot, so a revoked group
stops working on the next request instead of at token expiry.

Framework-neutral on purpose: auth/dependencies.py adapts it to FastAPI.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Iterable

from auth.errors import InsufficientPrivileges, InvalidToken, MissingSubject, MissingToken, SubjectMissing, TokenError
from auth.groups import GroupMembershipStore
from auth.models import Claims, GroupDecision
from auth.tokens import TokenService


def extract_bearer_token(authorization: str | None) -> str | None:
    """Return the token from an "Authorization: Bearer <token>" header value, or None."""
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


def normalize_required(required: str | Iterable[str]) -> tuple[str, ...]:
    """Accept one group name or several; return a de-duplicated tuple in given order."""
    if isinstance(required, str):
        required = (required,)
    return tuple(dict.fromkeys(required))


def validate_required(required: str | Iterable[str], known_groups: Iterable[str]) -> tuple[str, ...]:
    """Declaration-time check: at least one group, all from the vocabulary.

    Raises ValueError so a route declaring a typo'd group fails at startup,
    not with a silent deny at request time.
    """
    groups = normalize_required(required)
    if not groups:
        raise ValueError("require_group needs at least one group.")
    known = set(known_groups)
    unknown = [g for g in groups if g not in known]
    if unknown:
        raise ValueError(f"require_group names unknown groups: {unknown!r}")
    return groups


class AuthorizationGuard:
    """Maps a presented token to an allow/deny decision.

    Usage:
        guard = AuthorizationGuard(tokens, group_store)
        claims = guard.authenticate(raw_token)
        await guard.require_group(claims, "Admin")
    """

    def __init__(self, tokens: TokenService, groups: GroupMembershipStore) -> None:
        self.tokens = tokens
        self.groups = groups

    def authenticate(self, token: str | None) -> Claims:
        if not token:
            raise MissingToken()
        try:
            claims = self.tokens.verify(token)
        except SubjectMissing as exc:
            raise MissingSubject(str(exc)) from exc
        except TokenError as exc:
            raise InvalidToken(exc) from exc
        if not claims.subject:
            raise MissingSubject()
        return claims

    async def evaluate(self, claims: Claims, required: str | Iterable[str]) -> GroupDecision:
        """Decide without raising. Short-circuits on the first matching group."""
        if not claims.subject:
            raise MissingSubject()
        required_groups = normalize_required(required)
        actual = await self.groups.get_groups(claims.subject)
        allowed = any(group in actual for group in required_groups)
        return GroupDecision(allowed=allowed, required=required_groups, actual=tuple(sorted(actual)))

    async def require_group(self, claims: Claims, required: str | Iterable[str]) -> GroupDecision:
        """Raise InsufficientPrivileges unless the caller holds one of the required groups.

        The error carries the caller's own groups for diagnosability; it never
        describes anyone else.
        """
        decision = await self.evaluate(claims, required)
        if not decision.allowed:
            raise InsufficientPrivileges(decision.required, decision.actual)
        return decision
