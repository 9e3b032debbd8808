"""
Application-wide configuration via pydantic-settings.

All paths are resolved at load time to absolute Path objects.
Override any setting via environment variable prefixed with PIPING_
e.g., set PIPING_DB_ECHO=true to enable SQLAlchemy query logging, or
PIPING_DB_URL=postgresql+psycopg://... to point at a server database.

The project root is the directory containing the piping_revisions/ package.
"""

from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="PIPING_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # --- Application metadata ---
    app_name: str = "Piping Revision Lifecycle Engine"
    app_version: str = "0.1.0"

    # --- Paths (resolved in model_post_init) ---
    project_root: Path = Path(__file__).resolve().parent.parent.parent

    # --- Database ---
    db_path: Optional[Path] = None    # resolved in model_post_init
    db_url: Optional[str] = None      # takes precedence over db_path when set
    db_echo: bool = False             # set True to log all SQL queries

    # --- Logging ---
    log_level: str = "INFO"
    log_json: bool = False

    # --- Maintenance ---
    system_actor_id: str = "SYSTEM_USER"

    def model_post_init(self, __context) -> None:
        """Resolve None paths to absolute paths derived from project_root."""
        if self.db_path is None:
            object.__setattr__(self, "db_path", self.project_root / "piping_revisions.db")

    @property
    def database_url(self) -> str:
        return self.db_url or f"sqlite:///{self.db_path}"


# Module-level singleton. Import this object; never instantiate Settings directly.
settings = Settings()
