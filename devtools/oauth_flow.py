"""Interactive helper that completes the Yahoo OAuth2 authorization once."""

import logging
import secrets
import sys

from config import load_settings
from errors import TokenExchangeError
from oauth import OAuth2CredentialManager, TokenStore, token_preview


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    settings = load_settings()
    manager = OAuth2CredentialManager(
        client_id=settings.client_id,
        client_secret=settings.client_secret,
        redirect_uri=settings.redirect_uri,
        auth_base_url=settings.auth_base_url,
        store=TokenStore(settings.token_dir),
    )
    try:
        state = secrets.token_urlsafe(16)
        print("Open this URL in your browser and approve access:\n")
        print(manager.get_authorization_url(state) + "\n")
        print(f"Yahoo will redirect to {settings.redirect_uri}?code=...&state={state}")
        code = input("Paste the value of the 'code' parameter: ").strip()
        if not code:
            print("No authorization code provided", file=sys.stderr)
            return 1
        try:
            tokens = manager.exchange_code_for_credentials(code)
        except TokenExchangeError as exc:
            print(exc, file=sys.stderr)
            if exc.error == "invalid_grant":
                print(
                    "The code has expired, was already used, or the redirect URI does not match. "
                    "Start the flow again with a fresh code.",
                    file=sys.stderr,
                )
            return 1
        print("Access token:", token_preview(tokens.access_token))
        print("Refresh token:", token_preview(tokens.refresh_token))
        print("Stored in:", TokenStore(settings.token_dir).path)
        return 0
    finally:
        manager.close()


if __name__ == "__main__":
    sys.exit(main())
