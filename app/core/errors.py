"""Taxonomie d'erreurs du sous-système progression / récompenses.

Chaque erreur porte un ``code`` stable (renvoyé tel quel au frontend comme
``detail``) et le ``status_code`` HTTP correspondant. Les appels orientés
"action utilisateur" ne lèvent pas : ils renvoient un :class:`OperationResult`.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar

from sqlalchemy.exc import (
    DBAPIError,
    IntegrityError,
    NoSuchTableError,
    OperationalError,
    ProgrammingError,
    SQLAlchemyError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MISSING_RELATION_CODES = {"42P01", "42703"}
_MISSING_RELATION_MARKERS = ("no such table", "does not exist", "no such column")
_MISSING_TABLE_CODE = "42P01"
_PG_MISSING_TABLE = re.compile(r"^\s*relation \"[^\"]+\" does not exist", re.MULTILINE)


class IncentivesError(Exception):
    """Base des erreurs métier ; ``code`` est stable et destiné au client."""

    code: str = "incentives_error"
    status_code: int = 500

    def __init__(self, code: str | None = None, message: str | None = None, *, status_code: int | None = None):
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.message = message or self.code
        super().__init__(self.message)

    def __str__(self) -> str:  # pragma: no cover - human readable message
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ValidationError(IncentivesError):
    code = "invalid_input"
    status_code = 400


class NoContentError(ValidationError):
    """Le cours n'a encore ni leçon ni quiz : aucune progression calculable."""

    code = "no_content"
    status_code = 422


class NotFoundError(IncentivesError):
    code = "not_found"
    status_code = 404


class StoreUnavailableError(IncentivesError):
    code = "store_unavailable"
    status_code = 503


class SchemaMissingError(StoreUnavailableError):
    code = "schema_missing"


class ConflictError(IncentivesError):
    code = "conflict"
    status_code = 409


class UnexpectedError(IncentivesError):
    code = "unexpected_error"
    status_code = 500


def _sqlstate(exc: DBAPIError) -> Optional[str]:
    orig = getattr(exc, "orig", None)
    for attr in ("sqlstate", "pgcode"):
        value = getattr(orig, attr, None)
        if value:
            return str(value)
    return None


def is_missing_relation(exc: BaseException) -> bool:
    """True quand l'erreur signale une table/colonne non migrée."""
    if isinstance(exc, NoSuchTableError):
        return True
    if isinstance(exc, DBAPIError):
        if _sqlstate(exc) in _MISSING_RELATION_CODES:
            return True
        message = str(getattr(exc, "orig", exc)).lower()
        return any(marker in message for marker in _MISSING_RELATION_MARKERS)
    return False


def is_missing_table(exc: BaseException) -> bool:
    """True seulement pour une table absente ; une colonne manquante ne rend pas
    la table entière indisponible."""
    if isinstance(exc, NoSuchTableError):
        return True
    if isinstance(exc, DBAPIError):
        sqlstate = _sqlstate(exc)
        if sqlstate is not None:
            return sqlstate == _MISSING_TABLE_CODE
        message = str(getattr(exc, "orig", exc))
        return "no such table" in message.lower() or bool(_PG_MISSING_TABLE.search(message))
    return False


def classify_store_error(exc: BaseException) -> IncentivesError:
    """Traduit une exception (SQLAlchemy ou autre) dans la taxonomie métier."""
    if isinstance(exc, IncentivesError):
        return exc
    if isinstance(exc, IntegrityError):
        return ConflictError(message=str(exc.orig))
    if is_missing_relation(exc):
        return SchemaMissingError(
            message="Required database table missing. Please run the migration scripts."
        )
    if isinstance(exc, (OperationalError, ProgrammingError, DBAPIError)):
        return StoreUnavailableError(message=str(getattr(exc, "orig", exc)))
    if isinstance(exc, SQLAlchemyError):
        return StoreUnavailableError(message=str(exc))
    return UnexpectedError(message=str(exc) or exc.__class__.__name__)


@dataclass
class OperationResult(Generic[T]):
    """Résultat structuré ``{success, error}`` renvoyé au lieu de lever."""

    success: bool
    data: Optional[T] = None
    error: Optional[IncentivesError] = None
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def ok(cls, data: Optional[T] = None, warnings: list[str] | None = None) -> "OperationResult[T]":
        return cls(success=True, data=data, warnings=list(warnings or []))

    @classmethod
    def fail(cls, exc: BaseException) -> "OperationResult[T]":
        return cls(success=False, error=classify_store_error(exc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error.to_dict() if self.error else None,
            "warnings": self.warnings,
        }
