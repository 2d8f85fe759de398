from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

GRAPH_HOST = "https://graph.facebook.com"
DIALOG_HOST = "https://www.facebook.com"


@dataclass(frozen=True)
class Settings:
    app_id: str = ""
    app_secret: str = ""
    redirect_uri: str = "http://localhost:8080/auth/meta/callback"
    scopes: str = "ads_read,ads_management,business_management"
    graph_version: str = "v21.0"
    ad_account_id: str = ""
    http_timeout: float = 30.0
    log_level: str = "INFO"
    port: int = 8080

    @property
    def graph_url(self) -> str:
        return f"{GRAPH_HOST}/{self.graph_version}"

    @property
    def dialog_url(self) -> str:
        return f"{DIALOG_HOST}/{self.graph_version}/dialog/oauth"

    @property
    def oauth_configured(self) -> bool:
        return bool(self.app_id and self.app_secret)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        """Build settings from the process environment (and a .env file if present)."""
        load_dotenv(env_file)
        return cls(
            app_id=os.getenv("META_APP_ID", "").strip(),
            app_secret=os.getenv("META_APP_SECRET", "").strip(),
            redirect_uri=os.getenv("META_REDIRECT_URI", cls.redirect_uri).strip(),
            scopes=os.getenv("META_SCOPES", cls.scopes).strip(),
            graph_version=os.getenv("META_GRAPH_VERSION", cls.graph_version).strip(),
            ad_account_id=os.getenv("META_AD_ACCOUNT_ID", "").strip(),
            http_timeout=float(os.getenv("META_HTTP_TIMEOUT", "30")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            port=int(os.getenv("PORT", "8080")),
        )
