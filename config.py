"""
Settings for the Yahoo mail/calendar MCP server.

Environment variables are loaded from a .env file located next to this
module.  ``YAHOO_CLIENT_ID`` and ``YAHOO_CLIENT_SECRET`` are required.
``YAHOO_EMAIL`` names the mailbox; without it the mail tools are disabled.
The rest default to Yahoo's public endpoints.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from models import MailboxConfig

DEFAULT_AUTH_BASE_URL = "https://api.login.yahoo.com/"
DEFAULT_REDIRECT_URI = "http://localhost:3000/oauth/callback"
DEFAULT_IMAP_HOST = "imap.mail.yahoo.com"
DEFAULT_IMAP_PORT = 993
DEFAULT_CALDAV_URL = "https://caldav.calendar.yahoo.com"
DEFAULT_TOKEN_DIR = Path.home() / ".yahoo-mail-mcp"


def _require_env(name: str, default: Optional[str] = None) -> str:
    """Helper to fetch a required environment variable."""
    value = os.environ.get(name, default)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value.strip()


def _optional_env(name: str, default: str) -> str:
    return (os.environ.get(name) or default).strip()


@dataclass(frozen=True)
class Settings:
    client_id: str
    client_secret: str
    redirect_uri: str = DEFAULT_REDIRECT_URI
    auth_base_url: str = DEFAULT_AUTH_BASE_URL
    imap_host: str = DEFAULT_IMAP_HOST
    imap_port: int = DEFAULT_IMAP_PORT
    caldav_url: str = DEFAULT_CALDAV_URL
    token_dir: Path = DEFAULT_TOKEN_DIR
    mail_address: Optional[str] = None
    server_host: str = "127.0.0.1"
    server_port: int = 3000
    log_level: str = "INFO"

    def mailbox_config(self) -> MailboxConfig:
        if not self.mail_address:
            raise RuntimeError("Missing required environment variable: YAHOO_EMAIL")
        return MailboxConfig(host=self.imap_host, port=self.imap_port, mail_address=self.mail_address)


def load_settings(dotenv_path: Optional[Path] = None) -> Settings:
    """Read settings from the environment (after loading the .env file)."""
    load_dotenv(dotenv_path=dotenv_path or Path(__file__).with_name(".env"), override=False)

    mail_address = os.environ.get("YAHOO_EMAIL", "").strip()

    return Settings(
        client_id=_require_env("YAHOO_CLIENT_ID"),
        client_secret=_require_env("YAHOO_CLIENT_SECRET"),
        redirect_uri=_optional_env("YAHOO_REDIRECT_URI", DEFAULT_REDIRECT_URI),
        auth_base_url=_optional_env("YAHOO_AUTH_BASE_URL", DEFAULT_AUTH_BASE_URL),
        imap_host=_optional_env("YAHOO_IMAP_HOST", DEFAULT_IMAP_HOST),
        imap_port=int(_optional_env("YAHOO_IMAP_PORT", str(DEFAULT_IMAP_PORT))),
        caldav_url=_optional_env("YAHOO_CALDAV_URL", DEFAULT_CALDAV_URL),
        token_dir=Path(_optional_env("YAHOO_TOKEN_DIR", str(DEFAULT_TOKEN_DIR))).expanduser(),
        mail_address=mail_address or None,
        server_host=_optional_env("HOST", "127.0.0.1"),
        server_port=int(_optional_env("PORT", "3000")),
        log_level=_optional_env("LOG_LEVEL", "INFO").upper(),
    )
