"""Sonde de capacités : "telle table existe-t-elle ?" vérifié une fois puis mis en cache.

Les schémas partiellement migrés sont un cas normal en production (tables de
succès ou de streak ajoutées après coup). Plutôt que de tester l'existence d'une
table à chaque appel, on interroge une seule fois l'inspecteur SQLAlchemy par
moteur et on garde le résultat jusqu'à invalidation explicite.
"""
from __future__ import annotations

import logging
import threading
import weakref
from dataclasses import dataclass

from sqlalchemy import inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


class Capability:
    ACHIEVEMENTS = "achievements"
    USER_ACHIEVEMENTS = "user_achievements"
    POINT_TRANSACTIONS = "point_transactions"
    USER_POINTS = "user_points"
    LOGIN_STREAKS = "user_login_streaks"
    LESSON_COMPLETIONS = "user_lessons"
    QUIZ_RESULTS = "user_quiz_results"
    COURSE_PROGRESS = "user_courses"
    REWARDS = "rewards"
    USER_REWARDS = "user_rewards"


@dataclass(frozen=True)
class CapabilityStatus:
    name: str
    available: bool


class CapabilityProbe:
    def __init__(self) -> None:
        self._cache: dict[str, bool] = {}
        self._lock = threading.Lock()

    def check(self, db: Session, name: str) -> CapabilityStatus:
        with self._lock:
            cached = self._cache.get(name)
        if cached is not None:
            return CapabilityStatus(name=name, available=cached)

        try:
            # Inspecte via la connexion de la session pour ne pas ouvrir (et
            # rollbacker) une connexion parallèle.
            available = inspect(db.connection()).has_table(name)
        except SQLAlchemyError as exc:
            logger.warning("Sonde '%s' impossible (%s) ; capacité considérée absente.", name, exc)
            return CapabilityStatus(name=name, available=False)

        if not available:
            logger.warning("Table '%s' absente : la fonctionnalité dépendante est désactivée.", name)

        with self._lock:
            self._cache[name] = available
        return CapabilityStatus(name=name, available=available)

    def is_available(self, db: Session, name: str) -> bool:
        return self.check(db, name).available

    def mark_unavailable(self, name: str) -> None:
        """Enregistre une absence découverte à l'exécution (erreur "relation does not exist")."""
        with self._lock:
            self._cache[name] = False

    def invalidate(self, name: str | None = None) -> None:
        with self._lock:
            if name is None:
                self._cache.clear()
            else:
                self._cache.pop(name, None)


_probes: "weakref.WeakKeyDictionary[Engine, CapabilityProbe]" = weakref.WeakKeyDictionary()
_probes_lock = threading.Lock()


def get_capability_probe(db: Session) -> CapabilityProbe:
    """Retourne la sonde partagée du moteur lié à ``db``."""
    bind = db.get_bind()
    engine = getattr(bind, "engine", bind)
    with _probes_lock:
        probe = _probes.get(engine)
        if probe is None:
            probe = CapabilityProbe()
            _probes[engine] = probe
        return probe
