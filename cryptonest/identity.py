"""
Identity Verification Module

Turns a bearer credential issued by the external identity provider into a
verified identity. The subject id is the durable user key everywhere else.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import jwt

from .config import CryptoNestConfig
from .exceptions import AuthenticationError


@dataclass(frozen=True)
class Identity:
    """Verified caller"""
    subject_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    is_admin: bool = False


class IdentityVerifier(ABC):
    """Contract for bearer credential verification"""

    @abstractmethod
    def verify(self, token: str) -> Identity:
        """Return the identity behind token or raise AuthenticationError"""
        pass


class JWTIdentityVerifier(IdentityVerifier):
    """
    Verifies signed JWTs with PyJWT.

    Requires sub and exp claims. The admin flag comes from a configurable
    claim that may hold a single role or a list of roles.
    """

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        audience: Optional[str] = None,
        issuer: Optional[str] = None,
        admin_role_claim: str = "role",
        admin_role_value: str = "admin"
    ):
        self.secret = secret
        self.algorithm = algorithm
        self.audience = audience
        self.issuer = issuer
        self.admin_role_claim = admin_role_claim
        self.admin_role_value = admin_role_value

    @classmethod
    def from_config(cls, config: CryptoNestConfig) -> 'JWTIdentityVerifier':
        return cls(
            secret=config.jwt_secret,
            algorithm=config.jwt_algorithm,
            audience=config.jwt_audience,
            issuer=config.jwt_issuer,
            admin_role_claim=config.admin_role_claim,
            admin_role_value=config.admin_role_value
        )

    def verify(self, token: str) -> Identity:
        if not token:
            raise AuthenticationError("Not authenticated")

        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options={
                    "require": ["sub", "exp"],
                    "verify_aud": self.audience is not None
                }
            )
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token expired")
        except jwt.InvalidTokenError:
            raise AuthenticationError("Invalid token")

        subject_id = payload.get("sub")
        if not subject_id or not isinstance(subject_id, str):
            raise AuthenticationError("Invalid token")

        roles = payload.get(self.admin_role_claim) or []
        if isinstance(roles, str):
            roles = [roles]

        return Identity(
            subject_id=subject_id,
            email=payload.get("email"),
            display_name=payload.get("name") or payload.get("display_name"),
            is_admin=self.admin_role_value in roles
        )
