"""Valide les variables d'environnement requises.

Usage::

    python -m scripts.check_env

Importe :mod:`app.core.config` ; en cas d'erreur le détail est déjà affiché par
la configuration et le script sort avec le code 1.
"""

from __future__ import annotations

import sys

from pydantic import ValidationError

try:
    from app.core.config import settings
except ValidationError:
    print("Environment validation failed, see details above.", file=sys.stderr)
    sys.exit(1)
else:
    print("Environment variables OK.")
    for name, value in settings.model_dump().items():
        if "key" in name.lower() or "password" in name.lower():
            print(f"- {name}: <hidden>")
        elif name == "DATABASE_URL":
            # masque les identifiants éventuels
            print(f"- {name}: {value.split('@')[-1]}")
        else:
            print(f"- {name}: {value}")
