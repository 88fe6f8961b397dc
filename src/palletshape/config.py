"""Settings for the pallet store and the backfill command.

Three values are configurable: where the pallet database lives, how
verbose logging is, and how long a unit of work waits for another writer.
They come from environment variables or a ``.env`` file in the working
directory; command-line flags may override them.
"""

from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings

#: Level names accepted by ``logging.basicConfig``.
LOG_LEVELS: frozenset[str] = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


class AppConfig(BaseSettings):
    """Pallet store settings.

    Attributes:
        pallet_db_path: SQLite file holding the ``factory`` and ``pallet``
            tables.  Its parent directory is created by the CLI if missing.
        log_level: Root logging level for the backfill command.
        lock_timeout_seconds: Seconds a unit of work waits for another
            connection's write lock before raising ``TransientStoreError``.
    """

    pallet_db_path: Path = Path("data/pallets.db")
    log_level: str = "INFO"
    lock_timeout_seconds: float = 5.0

    model_config = {"env_prefix": "", "case_sensitive": False}

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalise *v* to an upper-case level name from :data:`LOG_LEVELS`.

        Raises:
            ValueError: If *v* names no logging level.
        """
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(LOG_LEVELS)}; got {v!r}")
        return level

    @field_validator("lock_timeout_seconds")
    @classmethod
    def validate_lock_timeout(cls, v: float) -> float:
        """Reject zero or negative lock timeouts.

        Raises:
            ValueError: If *v* is not strictly positive.
        """
        if v <= 0:
            raise ValueError(f"lock_timeout_seconds must be > 0; got {v!r}")
        return v


def get_config() -> AppConfig:
    """Build the settings from ``PALLET_DB_PATH``, ``LOG_LEVEL`` and
    ``LOCK_TIMEOUT_SECONDS`` (any case), falling back to ``./.env`` and then
    to the defaults on :class:`AppConfig`.
    """
    return AppConfig(_env_file=".env", _env_file_encoding="utf-8")
