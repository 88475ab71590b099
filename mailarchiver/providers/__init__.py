"""
Mailbox Transports Package

Uniform access to remote mailboxes for sync, restore and old message
deletion.

Supported Transports:
- IMAP (aioimaplib, username/password)
- Microsoft Graph (httpx, app-only OAuth 2.0)
"""

from mailarchiver.providers.base import (
    AuthenticationError,
    MailArchiveError,
    MailFolder,
    MailTransport,
    MessageRef,
    QueryRejectedError,
    RateLimitError,
    RemoteMessage,
    TransportError,
)

__all__ = [
    "AuthenticationError",
    "MailArchiveError",
    "MailFolder",
    "MailTransport",
    "MessageRef",
    "QueryRejectedError",
    "RateLimitError",
    "RemoteMessage",
    "TransportError",
]
