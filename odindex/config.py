import os
from typing import List, Optional

import yaml
from dotenv import load_dotenv

DEFAULT_CACHE_CONTROL = "max-age=0, s-maxage=60, stale-while-revalidate"
DEFAULT_SCOPES = ["User.Read", "Files.Read.All"]


class ConfigurationError(Exception):
    pass


class Settings:
    def __init__(self,
                 protected_routes: Optional[List[str]] = None,
                 base_directory: str = "/",
                 kv_prefix: str = "",
                 max_items: int = 100,
                 cache_control_header: str = DEFAULT_CACHE_CONTROL,
                 secret_key: Optional[str] = None,
                 client_id: Optional[str] = None,
                 tenant_id: str = "common",
                 scopes: Optional[List[str]] = None,
                 redis_url: Optional[str] = None,
                 log_level: str = "INFO"):
        self.protected_routes = list(protected_routes or [])
        self.base_directory = base_directory
        self.kv_prefix = kv_prefix
        self.max_items = max_items
        self.cache_control_header = cache_control_header
        self.secret_key = secret_key
        self.client_id = client_id
        self.tenant_id = tenant_id
        self.scopes = scopes or list(DEFAULT_SCOPES)
        self.redis_url = redis_url
        self.log_level = log_level

    def __repr__(self):
        return f"<Settings routes={len(self.protected_routes)} base=\"{self.base_directory}\">"

    @classmethod
    def from_yaml(cls, stream, **overrides):
        data = yaml.safe_load(stream) or {}

        routes = data.get("protected_routes") or []
        if not isinstance(routes, list):
            raise ConfigurationError("protected_routes must be a list of paths")

        kwargs = dict(
            protected_routes=routes,
            base_directory=data.get("base_directory", "/") or "/",
            kv_prefix=data.get("kv_prefix", "") or "",
            max_items=int(data.get("max_items", 100)),
            cache_control_header=data.get("cache_control_header", DEFAULT_CACHE_CONTROL),
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    @classmethod
    def from_env(cls):
        load_dotenv()

        overrides = dict(
            secret_key=os.getenv("SECRET_KEY"),
            client_id=os.getenv("AZURE_CLIENT_ID"),
            tenant_id=os.getenv("AZURE_TENANT_ID", "common"),
            redis_url=os.getenv("REDIS_URL"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

        site_config = os.getenv("SITE_CONFIG", "site.yml")
        if os.path.exists(site_config):
            with open(site_config, "r", encoding="utf-8") as f:
                return cls.from_yaml(f, **overrides)

        return cls(**overrides)
