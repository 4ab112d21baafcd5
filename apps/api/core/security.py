"""
Capa de seguridad:
- La autenticación la gestiona un proveedor externo; aquí solo se verifican
  sus JWT HS256 con la clave compartida SECRET_KEY.
- Claims usados: sub (id de usuario), role ("admin" | "user"), email (opcional).

NUNCA loguear ni exponer: SECRET_KEY ni los tokens recibidos.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

ALGORITHM = "HS256"
ROLES = frozenset({"admin", "user"})


@dataclass(frozen=True)
class AuthContext:
    """Identidad autenticada del llamador."""

    user_id: str
    role: str
    email: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def create_access_token(
    secret_key: str,
    user_id: str,
    role: str = "user",
    email: str | None = None,
    expires_minutes: int = 60,
) -> str:
    """
    Emite un JWT con el mismo formato que el proveedor de auth.
    Lo usan los tests y las herramientas de desarrollo.
    """
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    payload = {"sub": user_id, "role": role, "exp": expire}
    if email:
        payload["email"] = email
    return jwt.encode(payload, secret_key, algorithm=ALGORITHM)


def verify_token(token: str, secret_key: str) -> AuthContext:
    """
    Valida el JWT y retorna la identidad.
    Lanza ValueError si el token es inválido, expirado o con claims incorrectos.
    """
    try:
        payload = jwt.decode(token, secret_key, algorithms=[ALGORITHM])
    except JWTError as exc:
        raise ValueError(f"Token inválido: {exc}") from exc

    sub = payload.get("sub")
    if not sub:
        raise ValueError("Token sin subject")
    role = payload.get("role", "user")
    if role not in ROLES:
        raise ValueError(f"Rol desconocido en el token: {role}")
    return AuthContext(user_id=str(sub), role=role, email=payload.get("email"))
