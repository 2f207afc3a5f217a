"""
Exception hierarchy shared by the credential manager and the protocol clients.

Every public operation of the mail and calendar clients either returns its
result or raises one of the classes below.  Invalid caller arguments raise
plain ``ValueError``.
"""

from __future__ import annotations

from typing import Optional


class YahooMCPError(Exception):
    """Base class for all errors raised by this package."""


# ---------------------------------------------------------------- Credentials

class CredentialError(YahooMCPError):
    """Problems with the OAuth2 credential lifecycle."""


class NoCredentialsError(CredentialError):
    """No credential set exists in memory or on disk."""

    def __init__(self, message: str = "No tokens available. Please authenticate first.") -> None:
        super().__init__(message)


class TokenExchangeError(CredentialError):
    """The authorization-code exchange was rejected or malformed."""

    def __init__(self, description: str, *, error: Optional[str] = None, status_code: Optional[int] = None) -> None:
        super().__init__(f"Token exchange failed: {description}")
        self.description = description
        self.error = error
        self.status_code = status_code


class TokenRefreshError(CredentialError):
    """The refresh-token exchange failed; the user has to re-authorize."""

    def __init__(self, description: str, *, error: Optional[str] = None, status_code: Optional[int] = None) -> None:
        super().__init__(f"Token refresh failed: {description}")
        self.description = description
        self.error = error
        self.status_code = status_code


# -------------------------------------------------------------------- Mailbox

class MailboxError(YahooMCPError):
    """The mail server rejected a command."""


class MailboxConnectionError(MailboxError, ConnectionError):
    """The mail server could not be reached or the session dropped."""


class AuthenticationError(MailboxError):
    """The mail server rejected the XOAUTH2 credential."""


class NotFoundError(MailboxError):
    """A message (or the folder holding it) does not exist."""


# ------------------------------------------------------------------- Calendar

class CalendarError(YahooMCPError):
    """The calendar server could not be queried."""


class CalendarNotFoundError(CalendarError):
    def __init__(self, calendar_id: str) -> None:
        super().__init__(f"Calendar not found: {calendar_id}")
        self.calendar_id = calendar_id


class DateFormatError(CalendarError, ValueError):
    def __init__(self, value: str) -> None:
        super().__init__(f"Invalid iCalendar date format: {value!r}")
        self.value = value
