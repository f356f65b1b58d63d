from datetime import timedelta
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

_current: Optional["Settings"] = None


class Settings(BaseSettings):
    """Configuration for the vault, read from the environment and ``.env``.

    reference: https://docs.pydantic.dev/latest/concepts/pydantic_settings/
    use secret files!: https://docs.pydantic.dev/latest/concepts/pydantic_settings/#secrets
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    database_url: str = Field(default="sqlite:///data/vault.db")
    """ SQLAlchemy url of the catalog. ``postgresql://`` urls use psycopg 3. """
    echo_sql: bool = Field(default=False)

    blobstore_mode: Literal["memory", "localfile", "s3"] = Field(default="localfile")
    local_data_path: Path = Field(default=Path("data"))
    s3_bucket: str = Field(default="vaultstore")
    s3_endpoint_url: Optional[str] = Field(default=None)
    aws_access_key_id: Optional[str] = Field(default=None)
    aws_secret_access_key: Optional[SecretStr] = Field(default=None)
    aws_region: Optional[str] = Field(default=None)

    max_upload_bytes: int = Field(default=10 * 2**20)
    """ Largest single file we accept. Zero or less means no limit. """
    default_quota_bytes: int = Field(default=10 * 2**20)
    """ Quota given to new owners. Zero or less means no limit. """
    list_page_size: int = Field(default=200)
    share_token_bytes: int = Field(default=32)
    share_default_ttl: Optional[timedelta] = Field(default=None)
    """ If set, shares created without an explicit expiry expire after this long. """

    jwt_secret: SecretStr = Field(default=SecretStr("change-me"))
    jwt_algorithm: str = Field(default="HS256")
    jwt_expires: timedelta = Field(default=timedelta(days=30))
    """ Default expiration time for JWT tokens that we issue. """

    @classmethod
    def current(cls) -> "Settings":
        """The process-wide settings, loaded from the environment on first use."""
        global _current
        if _current is None:
            _current = cls()
        return _current

    @classmethod
    def set_current(cls, settings: Optional["Settings"]):
        global _current
        _current = settings
