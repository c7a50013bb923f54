"""
Marketplace Service — 認証・認可

HTTP サーバなしでテストできる純粋関数として実装する。
  authorize(header, verifier) … Bearer トークンを検証して Identity を返す
  require_role(identity, role, *allowed) … ロールが許可されていなければ 403

トークンは PyJWT で検証する。本番は JWKS (RS256)、
開発・テストは共有シークレット (HS256)。
"""

from dataclasses import dataclass

import jwt

from .config import Settings
from .errors import AuthenticationError, AuthorizationError


@dataclass(frozen=True)
class Identity:
    email: str
    name: str = ""


class TokenVerifier:
    def __init__(
        self,
        jwks_url: str = "",
        secret: str = "",
        audience: str = "",
        issuer: str = "",
    ) -> None:
        if not jwks_url and not secret:
            raise ValueError("TokenVerifier needs a JWKS URL or a shared secret")
        self.secret = secret
        self.audience = audience or None
        self.issuer = issuer or None
        self._jwks = jwt.PyJWKClient(jwks_url) if jwks_url and not secret else None

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenVerifier":
        return cls(
            jwks_url=settings.auth_jwks_url,
            secret=settings.auth_secret,
            audience=settings.auth_audience,
            issuer=settings.auth_issuer,
        )

    def verify(self, token: str) -> dict:
        options = {"verify_aud": self.audience is not None}
        if self._jwks is not None:
            key = self._jwks.get_signing_key_from_jwt(token).key
            algorithms = ["RS256"]
        else:
            key = self.secret
            algorithms = ["HS256"]
        return jwt.decode(
            token,
            key,
            algorithms=algorithms,
            audience=self.audience,
            issuer=self.issuer,
            options=options,
        )


def authorize(authorization: str | None, verifier: TokenVerifier) -> Identity:
    if not authorization:
        raise AuthenticationError()
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise AuthenticationError()

    try:
        claims = verifier.verify(token.strip())
    except jwt.PyJWTError as e:
        raise AuthenticationError(reason=str(e)) from e

    email = claims.get("email")
    if not email:
        raise AuthenticationError(reason="token has no email claim")
    return Identity(email=email.lower(), name=claims.get("name", ""))


def require_role(identity: Identity, role: str, *allowed: str) -> Identity:
    if role not in allowed:
        raise AuthorizationError(
            f"{identity.email} has role {role}, requires {' or '.join(allowed)}",
            role=role,
        )
    return identity
