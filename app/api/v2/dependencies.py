import logging
import re
from typing import Generator, Optional, Union
from urllib.parse import unquote

from fastapi import Depends, HTTPException, Request, WebSocket, status
from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy.orm import Session
from starlette.datastructures import State

from app.core import security
from app.db.session import SessionLocal
from app.models.user.user_model import User, UserRole

log = logging.getLogger(__name__)

ScopeType = Union[Request, WebSocket]

_TOKEN_PREFIXES = {"bearer", "token"}


def _get_state_container(scope: ScopeType | None) -> Optional[State]:
    if scope is None:
        return None

    state = getattr(scope, "state", None)
    if state is None:
        state = State()
        setattr(scope, "state", state)
    return state


def _resolve_scope(
    request: Request = None,  # type: ignore[assignment]
    websocket: WebSocket = None,  # type: ignore[assignment]
) -> ScopeType | None:
    return request or websocket


def get_db(
    scope: ScopeType | None = Depends(_resolve_scope),
) -> Generator[Session, None, None]:
    """Une seule session SQLAlchemy par requête.

    L'authentification et la route demandent toutes deux ``get_db`` : la
    session est posée sur ``request.state`` avec un compteur de références et
    n'est fermée qu'à la sortie de la dernière dépendance, sinon l'utilisateur
    authentifié serait détaché avant d'arriver dans la route.
    """

    if scope is None:
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()
        return

    state = _get_state_container(scope)
    db = getattr(state, "_db_session", None)
    if db is None:
        db = SessionLocal()
        setattr(state, "_db_session", db)
        setattr(state, "_db_refcount", 0)

    setattr(state, "_db_refcount", getattr(state, "_db_refcount", 0) + 1)

    try:
        yield db
    finally:
        refcount = getattr(state, "_db_refcount", 1) - 1
        if refcount <= 0:
            try:
                db.close()
            finally:
                for attr in ("_db_session", "_db_refcount"):
                    if hasattr(state, attr):
                        delattr(state, attr)
        else:
            setattr(state, "_db_refcount", refcount)


def _normalize_token_value(raw_token: str | None) -> str | None:
    """Extrait un JWT propre depuis un cookie, un en-tête ou un paramètre.

    Accepte les valeurs entre guillemets, percent-encodées (``Bearer%20...``)
    et les préfixes ``Bearer``/``Token`` quelle que soit la casse.
    """

    if raw_token is None:
        return None

    token = raw_token.strip().strip('"').strip("'")
    if not token:
        return None

    token = unquote(token)

    match = re.match(r"^(bearer|token)[\s,:]+(.+)$", token, flags=re.IGNORECASE)
    if match:
        token = match.group(2)
    else:
        parts = token.split()
        if len(parts) >= 2 and parts[0].lower().rstrip(",") in _TOKEN_PREFIXES:
            token = parts[1]

    token = token.strip()
    return token or None


def _decode_user_from_token(token: str | None, db: Session) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
    )

    token = _normalize_token_value(token)
    if not token:
        log.warning("Validation échouée: Pas de token fourni.")
        raise credentials_exception

    try:
        payload = jwt.decode(token, security.SECRET_KEY, algorithms=[security.ALGORITHM])
        user_id_str = payload.get("sub")
        if user_id_str is None:
            log.warning("Validation échouée: Le token ne contient pas de 'sub'.")
            raise credentials_exception
        user_id = int(user_id_str)
    except ExpiredSignatureError:
        log.warning("Validation échouée: Le token a expiré.")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="token_expired")
    except (JWTError, ValueError, TypeError):
        log.warning("Validation échouée: Le token est invalide ou mal formé.")
        raise credentials_exception

    user = db.get(User, user_id)
    if user is None:
        log.warning("Validation échouée: Utilisateur %s non trouvé.", user_id)
        raise credentials_exception

    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="inactive_user")

    return user


def _authenticate(candidates, db: Session) -> User:
    last_unauthorized_error: HTTPException | None = None

    for candidate in candidates:
        token = _normalize_token_value(candidate)
        if not token:
            continue
        try:
            return _decode_user_from_token(token, db)
        except HTTPException as exc:
            if exc.status_code != status.HTTP_401_UNAUTHORIZED:
                raise
            last_unauthorized_error = exc

    if last_unauthorized_error is not None:
        raise last_unauthorized_error
    return _decode_user_from_token(None, db)


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    return _authenticate(
        (
            request.headers.get("Authorization"),
            request.cookies.get("access_token"),
            request.headers.get("X-Access-Token"),
            request.query_params.get("access_token"),
        ),
        db,
    )


def _iter_websocket_token_candidates(websocket: WebSocket) -> list[str | None]:
    candidates: list[str | None] = [
        websocket.cookies.get("access_token"),
        websocket.headers.get("Authorization"),
        websocket.headers.get("X-Access-Token"),
        websocket.query_params.get("access_token"),
        websocket.query_params.get("token"),
    ]

    # Les navigateurs ne permettent pas d'en-tête Authorization sur un WebSocket :
    # le token peut arriver via ``Sec-WebSocket-Protocol: bearer, <jwt>``.
    protocol_header = websocket.headers.get("sec-websocket-protocol")
    if protocol_header:
        protocols = [part.strip() for part in protocol_header.split(",") if part.strip()]
        if len(protocols) >= 2 and protocols[0].lower().rstrip(":") in _TOKEN_PREFIXES:
            candidates.append(" ".join(protocols[:2]))
        candidates.extend(protocols)

    return candidates


def get_current_user_from_websocket(websocket: WebSocket, db: Session) -> User:
    return _authenticate(_iter_websocket_token_candidates(websocket), db)


def require_manager(current_user: User = Depends(get_current_user)) -> User:
    """Réservé aux managers et administrateurs (attribution manuelle de récompenses)."""
    if current_user.role not in (UserRole.MANAGER, UserRole.ADMIN):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="manager_role_required")
    return current_user
