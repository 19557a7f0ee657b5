"""
Connection settings for the PostgreSQL pool.

Values not given explicitly fall back to environment variables
(``DATABASE_HOST``, ``DATABASE_PORT``, ``DATABASE_NAME``, ``DATABASE_USER``,
``DATABASE_PASS``) and then to libpq-style defaults.
"""

import os
from typing import Any, Dict, Optional

from psycopg2.extensions import parse_dsn
from pydantic import BaseModel, ConfigDict, Field, model_validator

ENV_VARS = {
    "host": "DATABASE_HOST",
    "port": "DATABASE_PORT",
    "database": "DATABASE_NAME",
    "user": "DATABASE_USER",
    "password": "DATABASE_PASS",
}

DEFAULTS = {
    "host": "localhost",
    "port": 5432,
    "database": "postgres",
    "user": "postgres",
    "password": "",
}


class ConnectionConfig(BaseModel):
    """
    Pool and connection parameters.

    ``statement_timeout_ms`` is sent as a server-side ``statement_timeout`` so
    that a hung statement cannot hold its lease forever; ``default_schema``
    becomes the connection's ``search_path``.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    host: str
    port: int
    database: str
    user: str
    password: str = ""
    connection_min: int = Field(1, ge=0)
    connection_max: int = Field(10, ge=1)
    connect_timeout: Optional[int] = Field(None, ge=0)
    ssl: bool = False
    default_schema: Optional[str] = None
    statement_timeout_ms: Optional[int] = Field(None, ge=0)
    application_name: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _fill_from_env(cls, data: Any) -> Any:
        data = dict(data or {})
        for key, env_var in ENV_VARS.items():
            if data.get(key) in (None, ""):
                data[key] = os.getenv(env_var) or DEFAULTS[key]
        return data

    @model_validator(mode="after")
    def _check_pool_bounds(self) -> "ConnectionConfig":
        if self.connection_min > self.connection_max:
            raise ValueError("connection_min must not exceed connection_max")
        return self

    @classmethod
    def from_dsn(cls, dsn: str, **overrides) -> "ConnectionConfig":
        """Build a config from a libpq DSN or URI; keyword overrides win."""
        parsed = parse_dsn(dsn)
        params: Dict[str, Any] = {
            "host": parsed.get("host"),
            "port": parsed.get("port"),
            "database": parsed.get("dbname"),
            "user": parsed.get("user"),
            "password": parsed.get("password"),
        }
        if parsed.get("connect_timeout"):
            params["connect_timeout"] = parsed["connect_timeout"]
        if parsed.get("sslmode") in ("require", "verify-ca", "verify-full"):
            params["ssl"] = True
        if parsed.get("application_name"):
            params["application_name"] = parsed["application_name"]
        params.update(overrides)
        return cls(**params)

    def to_connect_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for :func:`psycopg2.connect` / the pool."""
        kwargs: Dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "dbname": self.database,
            "user": self.user,
            "password": self.password,
        }
        if self.connect_timeout is not None:
            kwargs["connect_timeout"] = self.connect_timeout
        if self.ssl:
            kwargs["sslmode"] = "require"
        if self.application_name:
            kwargs["application_name"] = self.application_name

        options = []
        if self.default_schema:
            options.append(f"-c search_path={self.default_schema}")
        if self.statement_timeout_ms is not None:
            options.append(f"-c statement_timeout={self.statement_timeout_ms}")
        if options:
            kwargs["options"] = " ".join(options)
        return kwargs
