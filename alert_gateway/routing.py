from __future__ import annotations

import re
from enum import Enum

from .tokens import TokenRecord


class Environment(str, Enum):
    DEV = "DEV"
    QUALIF = "QUALIF"
    PREPROD = "PREPROD"
    PROD = "PROD"
    DISASTER_RECOVERY = "DR"
    UNKNOWN = "UNKNOWN"


class TeamPolicy(str, Enum):
    ENVIRONMENT = "environment"
    FIXED_INDEX = "fixed-index"


# Checked in order, first match wins.
ENVIRONMENT_KEYWORDS: list[tuple[Environment, tuple[str, ...]]] = [
    (Environment.PROD, ("production", "prod", "prd")),
    (Environment.PREPROD, ("pp", "preprod", "pre-prod", "staging", "stage")),
    (Environment.QUALIF, ("qualif", "qa", "uat", "test")),
    (Environment.DEV, ("dev", "develop", "sandbox")),
    (Environment.DISASTER_RECOVERY, ("dr", "disaster", "backup")),
]

# Position of each environment in a token's teamIDs.
TEAM_POSITIONS: dict[Environment, int] = {
    Environment.DEV: 0,
    Environment.QUALIF: 1,
    Environment.PREPROD: 2,
    Environment.PROD: 3,
    Environment.DISASTER_RECOVERY: 4,
}

DEFAULT_PREFERRED_INDEX = 3


def _keyword_pattern(keywords: tuple[str, ...]) -> re.Pattern[str]:
    # Any character other than an ASCII letter or digit separates words,
    # so "my_dev_ns" is DEV while "developer" is not.
    alternatives = "|".join(re.escape(keyword) for keyword in keywords)
    return re.compile(rf"(?<![a-z0-9])(?:{alternatives})(?![a-z0-9])")


_PATTERNS = [(env, _keyword_pattern(keywords)) for env, keywords in ENVIRONMENT_KEYWORDS]


def infer_environment(instance_or_namespace: str | None, code_ap: str | None) -> Environment:
    text = f"{instance_or_namespace or ''} {code_ap or ''}".lower()
    for env, pattern in _PATTERNS:
        if pattern.search(text):
            return env
    return Environment.UNKNOWN


def _team_at(team_ids: tuple[str, ...], index: int | None) -> str | None:
    if index is None or index < 0 or index >= len(team_ids):
        return None
    value = team_ids[index].strip()
    return value or None


def normalize_fallback_index(fallback_index: int, size: int) -> int:
    if fallback_index < 0 or fallback_index >= size:
        return 0
    return fallback_index


def select_team(
    record: TokenRecord,
    environment: Environment,
    fallback_index: int = 0,
    policy: TeamPolicy = TeamPolicy.ENVIRONMENT,
    preferred_index: int = DEFAULT_PREFERRED_INDEX,
) -> str | None:
    """Pick the team identifier to route an alert to.

    With the ``environment`` policy the inferred environment selects its
    conventional position (DEV, QUALIF, PREPROD, PROD, DR). With the
    ``fixed-index`` policy the environment is ignored and ``preferred_index``
    is tried instead. Either way an out-of-range or blank value falls back to
    ``fallback_index`` (0 when it is out of range). Returns None when no
    usable identifier exists.
    """
    team_ids = record.team_ids
    if not team_ids:
        return None

    if policy == TeamPolicy.FIXED_INDEX:
        primary = preferred_index
    else:
        primary = TEAM_POSITIONS.get(environment)

    team = _team_at(team_ids, primary)
    if team is not None:
        return team

    return _team_at(team_ids, normalize_fallback_index(fallback_index, len(team_ids)))
