"""
Validated connection settings for an integration.

The ORM row stores source settings as loose JSONB documents; a run always
works from these models so that missing or malformed settings surface as a
ConfigurationError before any connection is opened. Credentials are held as
SecretStr so they render as ``**********`` in logs and reprs.
"""

from pydantic import BaseModel, Field, SecretStr, validator, ValidationError
from typing import Optional, List, Dict, Any

from core.exceptions import ConfigurationError
from models.base import IntegrationType


class FTPConfig(BaseModel):
    """FTP server connection settings"""
    host: str = Field(..., min_length=1)
    port: int = 21
    username: str = "anonymous"
    password: SecretStr = SecretStr("")
    secure: bool = False
    remote_path: str = "/"
    file_pattern: str = "*.csv"

    @validator("remote_path")
    def normalize_remote_path(cls, v):
        v = (v or "/").strip()
        return v if v.startswith("/") else f"/{v}"


class PaginationConfig(BaseModel):
    """How to walk a paginated endpoint"""
    type: str = "none"
    page_param: str = "page"
    offset_param: str = "offset"
    limit_param: str = "limit"
    cursor_param: str = "cursor"
    cursor_path: Optional[str] = None
    total_path: Optional[str] = None
    page_size: int = Field(100, ge=1)
    max_pages: int = Field(100, ge=1)
    start_page: int = 1

    @validator("type")
    def check_type(cls, v):
        v = (v or "none").lower()
        if v not in ("none", "page", "offset", "cursor"):
            raise ValueError(f"Unsupported pagination type: {v}")
        return v


class APIEndpoint(BaseModel):
    """One endpoint to pull records from; each endpoint is one unit of work"""
    path: str
    name: Optional[str] = None
    method: str = "GET"
    data_path: Optional[str] = None
    query_params: Dict[str, Any] = Field(default_factory=dict)

    @property
    def label(self) -> str:
        return self.name or self.path


class APIConfig(BaseModel):
    """Paginated HTTP API settings"""
    base_url: str = Field(..., min_length=1)
    auth_type: str = "none"
    auth_header: str = "X-API-Key"
    api_key: Optional[SecretStr] = None
    token: Optional[SecretStr] = None
    username: Optional[str] = None
    password: Optional[SecretStr] = None
    endpoints: List[APIEndpoint] = Field(default_factory=list)
    pagination: PaginationConfig = Field(default_factory=PaginationConfig)
    data_path: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    rate_limit: int = Field(60, ge=1)
    timeout: Optional[float] = None

    @validator("auth_type")
    def check_auth_type(cls, v):
        v = (v or "none").lower()
        if v == "apikey":
            v = "api-key"
        if v not in ("none", "api-key", "bearer", "basic"):
            raise ValueError(f"Unsupported auth type: {v}")
        return v

    @validator("base_url")
    def strip_trailing_slash(cls, v):
        return v.rstrip("/")


class IntegrationConfig(BaseModel):
    """Everything a run needs to know about its integration"""
    id: int
    name: str
    type: IntegrationType
    ftp: Optional[FTPConfig] = None
    api: Optional[APIConfig] = None
    column_mapping: Dict[str, str] = Field(default_factory=dict)
    default_currency: str = "USD"

    @validator("column_mapping", pre=True)
    def clean_column_mapping(cls, v):
        """Drop empty override entries"""
        if not v:
            return {}
        return {k: str(h).strip() for k, h in v.items() if h and str(h).strip()}

    @classmethod
    def from_model(cls, integration) -> "IntegrationConfig":
        """
        Build a validated config from an Integration ORM row.

        Raises:
            ConfigurationError: If required source settings are missing or invalid
        """
        try:
            config = cls(
                id=integration.id,
                name=integration.name,
                type=integration.type,
                ftp=integration.ftp_config,
                api=integration.api_config,
                column_mapping=integration.column_mapping or {},
                default_currency=integration.default_currency or "USD",
            )
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid configuration for integration {integration.name}",
                context={
                    "integration_id": integration.id,
                    "fields": [".".join(str(p) for p in err["loc"]) for err in e.errors()],
                },
                original_exception=e
            )

        if config.type == IntegrationType.FTP and config.ftp is None:
            raise ConfigurationError(
                "FTP integration has no FTP settings",
                context={"integration_id": integration.id}
            )
        if config.type == IntegrationType.API:
            if config.api is None or not config.api.endpoints:
                raise ConfigurationError(
                    "API integration has no endpoints configured",
                    context={"integration_id": integration.id}
                )
        return config

    def safe_dict(self) -> Dict[str, Any]:
        """Config without credentials, for logs and API responses."""
        return self.dict(exclude={
            "ftp": {"password"},
            "api": {"api_key", "token", "password"},
        })
