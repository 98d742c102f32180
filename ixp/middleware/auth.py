"""
IXP Authentication Middleware

Token authentication for dispatched requests. The transport layer places
the caller's token in request metadata; this middleware resolves it to a
Principal or rejects the request.
"""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

import structlog

from ixp.core.context import RequestContext
from ixp.core.errors import AuthenticationError, AuthorizationError
from ixp.middleware.types import MiddlewareDescriptor, MiddlewarePhase, Next

logger = structlog.get_logger(__name__)


@dataclass
class Principal:
    """Authenticated caller."""
    id: str
    name: Optional[str] = None
    roles: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "roles": list(self.roles)}


@dataclass
class AuthToken:
    """Authentication token."""
    token: str
    principal_id: str
    expires_at: datetime

    def is_expired(self) -> bool:
        return datetime.now() > self.expires_at


class TokenStore:
    """
    In-memory token store.

    Tokens are opaque random strings; API keys are kept as SHA-256 digests.
    """

    def __init__(self, default_ttl_hours: int = 24):
        self.default_ttl = timedelta(hours=default_ttl_hours)
        self._tokens: Dict[str, AuthToken] = {}
        self._principals: Dict[str, Principal] = {}
        self._api_keys: Dict[str, str] = {}  # sha256(key) -> principal id

    def create_token(self, principal: Principal, ttl: Optional[timedelta] = None) -> AuthToken:
        token = AuthToken(
            token=secrets.token_urlsafe(32),
            principal_id=principal.id,
            expires_at=datetime.now() + (ttl or self.default_ttl),
        )
        self._tokens[token.token] = token
        self._principals[principal.id] = principal
        return token

    def add_api_key(self, api_key: str, principal: Principal) -> None:
        self._api_keys[hashlib.sha256(api_key.encode()).hexdigest()] = principal.id
        self._principals[principal.id] = principal

    def revoke_token(self, token_str: str) -> bool:
        return self._tokens.pop(token_str, None) is not None

    def resolve(self, token_str: str) -> Optional[Principal]:
        """Return the principal for a token or API key, or None."""
        token = self._tokens.get(token_str)
        if token is not None:
            if token.is_expired():
                del self._tokens[token_str]
                return None
            return self._principals.get(token.principal_id)

        principal_id = self._api_keys.get(hashlib.sha256(token_str.encode()).hexdigest())
        if principal_id is not None:
            return self._principals.get(principal_id)
        return None

    def cleanup_expired(self) -> int:
        now = datetime.now()
        expired = [t for t, token in self._tokens.items() if token.expires_at < now]
        for token_str in expired:
            del self._tokens[token_str]
        return len(expired)


TokenResolver = Callable[[str], Union[Optional[Principal], Awaitable[Optional[Principal]]]]


def extract_token(metadata: Dict[str, Any], token_key: str = "token") -> Optional[str]:
    """Token from metadata[token_key] or a "Bearer <token>" authorization entry."""
    token = metadata.get(token_key)
    if token:
        return str(token)

    authorization = metadata.get("authorization") or metadata.get("Authorization")
    if isinstance(authorization, str) and authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return None


def create_auth_middleware(
    resolver: Union[TokenStore, TokenResolver],
    required_role: Optional[str] = None,
    public_intents: Iterable[str] = (),
    token_key: str = "token",
    name: str = "auth",
    order: int = 20,
    phase: MiddlewarePhase = MiddlewarePhase.REQUEST,
) -> MiddlewareDescriptor:
    """
    Middleware rejecting requests without a valid token.

    The resolved principal is stored in ``context.state["principal"]``.

    Raises (inside the chain):
        AuthenticationError: Missing, invalid or expired token
        AuthorizationError: Principal lacks ``required_role``
    """
    resolve = resolver.resolve if isinstance(resolver, TokenStore) else resolver
    public = frozenset(public_intents)

    async def authenticate(context: RequestContext, next: Next) -> None:
        if context.intent_name in public:
            await next()
            return

        token = extract_token(context.metadata, token_key)
        if not token:
            logger.info(
                "Request rejected: no token",
                request_id=context.request_id,
                intent=context.intent_name,
            )
            raise AuthenticationError()

        principal = resolve(token)
        if hasattr(principal, "__await__"):
            principal = await principal
        if principal is None:
            raise AuthenticationError("Invalid or expired token")

        if required_role and not principal.has_role(required_role):
            raise AuthorizationError(
                f"Role '{required_role}' required", {"role": required_role}
            )

        context.state["principal"] = principal
        await next()

    return MiddlewareDescriptor(name=name, handler=authenticate, phase=phase, order=order)
