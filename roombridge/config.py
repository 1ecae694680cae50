"""Application configuration"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # Database
    database_url: str = "sqlite:///./roombridge.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 9993

    # Homeserver / application service registration
    homeserver_url: str = "http://localhost:8008"
    server_name: str = "localhost"
    # Token we present to the homeserver.
    as_token: str = ""
    # Token the homeserver presents to us on transaction pushes.
    hs_token: str = ""
    bot_localpart: str = "gitlab"
    # Virtual users for GitLab actors are named @{prefix}{username}:{server_name}
    virtual_user_prefix: str = "_gitlab_"

    # Echo suppression
    # How long an inbound note webhook waits before consulting the comment ledger,
    # giving a concurrent room->GitLab post time to mark its note id first.
    comment_grace_period_ms: int = 500
    # 0 keeps every ledger entry for the process lifetime.
    ledger_max_entries: int = 0
    # Entries younger than this are never pruned, even above ledger_max_entries.
    ledger_min_retention_seconds: int = 600
    ledger_prune_interval_minutes: int = 10

    # Logging
    log_level: str = "INFO"

    # Auth (optional)
    # When enabled, admin routes are protected by HTTP Basic auth. /health, the
    # GitLab webhook and the appservice transaction endpoints are exempt since
    # they carry their own tokens.
    auth_enabled: bool = False
    auth_username: str | None = None
    auth_password: str | None = None

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def bot_user_id(self) -> str:
        return f"@{self.bot_localpart}:{self.server_name}"


settings = Settings()
