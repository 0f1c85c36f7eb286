"""Runtime settings for the import pipeline.

Settings come from environment variables, optionally loaded from a ``.env``
file. Database connection variables (``SUPABASE_DB_URL`` and friends) are
read by SupabaseClient itself.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import FrozenSet, Mapping, Optional, Union

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


@dataclass
class Settings:
    """Tunable pipeline parameters.

    Attributes:
        max_attempts: Attempts for the atomic write and restore calls
        retry_base_delay: Seconds before the first retry; doubles each attempt
        retry_max_delay: Upper bound on the delay between attempts
        snapshot_retention: Non-baseline import records kept for rollback
        min_year: Oldest plausible vehicle year
        max_year_offset: Years past the current one accepted for end years
        import_actor: Value stamped into ``updated_by`` by imports
        automation_actors: Actors whose edits never block a rollback
    """
    max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 5.0
    snapshot_retention: int = 3
    min_year: int = 1900
    max_year_offset: int = 2
    import_actor: str = "import"
    automation_actors: FrozenSet[str] = field(
        default_factory=lambda: frozenset({"import", "rollback", "system"})
    )

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.snapshot_retention < 1:
            raise ValueError("snapshot_retention must be at least 1")
        if self.retry_base_delay < 0 or self.retry_max_delay < 0:
            raise ValueError("retry delays cannot be negative")
        # The import actor is always an automation actor
        self.automation_actors = frozenset(self.automation_actors) | {self.import_actor}

    @property
    def max_year(self) -> int:
        return date.today().year + self.max_year_offset

    @classmethod
    def from_env(
        cls,
        env_file: Optional[Union[str, Path]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "Settings":
        """Build settings from the environment.

        Args:
            env_file: Optional ``.env`` path; loaded with python-dotenv when it
                exists (existing variables are not overridden)
            environ: Mapping to read instead of ``os.environ``

        Raises:
            ValueError: If a variable holds an unparsable value
        """
        if env_file is not None and Path(env_file).exists():
            load_dotenv(env_file)
            logger.debug(f"Loaded environment from {env_file}")

        env = os.environ if environ is None else environ
        defaults = cls()

        actor = env.get("CATALOGSYNC_IMPORT_ACTOR", defaults.import_actor)
        return cls(
            max_attempts=_read_int(env, "CATALOGSYNC_MAX_ATTEMPTS", defaults.max_attempts),
            retry_base_delay=_read_float(env, "CATALOGSYNC_RETRY_BASE_DELAY", defaults.retry_base_delay),
            retry_max_delay=_read_float(env, "CATALOGSYNC_RETRY_MAX_DELAY", defaults.retry_max_delay),
            snapshot_retention=_read_int(env, "CATALOGSYNC_SNAPSHOT_RETENTION", defaults.snapshot_retention),
            min_year=_read_int(env, "CATALOGSYNC_MIN_YEAR", defaults.min_year),
            max_year_offset=_read_int(env, "CATALOGSYNC_MAX_YEAR_OFFSET", defaults.max_year_offset),
            import_actor=actor,
        )


def _read_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _read_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
