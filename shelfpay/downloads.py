"""Secure download links: signed, time-limited JWT capabilities.

A token names one book file for one order. It is not persisted: anyone holding
it can redeem it any number of times until it expires 24 hours after issue.
"""

from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from .errors import FileUnavailable, InvalidDownloadToken
from .model.store import DocumentStore
from .model.types import BOOKS

logger = logging.getLogger(__name__)

DOWNLOAD_LINK_SECRET = os.environ.get(
    "DOWNLOAD_LINK_SECRET", "dev-download-secret-change-me"
)
BASE_URL = os.environ.get("BASE_URL", "http://localhost:8000")

_ALGORITHM = "HS256"
TOKEN_TTL = timedelta(hours=24)


@dataclass(frozen=True)
class DownloadClaims:
    file_id: str
    file_name: str
    book_id: str
    order_reference: str
    download_id: str
    issued_at: int
    expires_at: int


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def download_expiration(now: Optional[datetime] = None) -> datetime:
    """When a link issued at ``now`` stops working."""
    return _now(now) + TOKEN_TTL


def issue_download_token(
    file_id: str,
    file_name: str,
    book_id: str,
    order_reference: str,
    *,
    now: Optional[datetime] = None,
    secret: Optional[str] = None,
) -> str:
    issued = _now(now)
    payload = {
        "fileId": file_id,
        "fileName": file_name,
        "bookId": book_id,
        "orderReference": order_reference,
        "downloadId": secrets.token_urlsafe(16),
        "iat": int(issued.timestamp()),
        "exp": int((issued + TOKEN_TTL).timestamp()),
    }
    return jwt.encode(payload, secret or DOWNLOAD_LINK_SECRET,
                      algorithm=_ALGORITHM)


def issue_download_url(
    file_id: str,
    file_name: str,
    book_id: str,
    order_reference: str,
    *,
    now: Optional[datetime] = None,
    base_url: Optional[str] = None,
) -> str:
    """Fully qualified redemption URL: ``{BASE_URL}/download/{token}``."""
    token = issue_download_token(
        file_id, file_name, book_id, order_reference, now=now
    )
    return f"{(base_url or BASE_URL).rstrip('/')}/download/{token}"


def verify_download_token(
    token: str, *, secret: Optional[str] = None
) -> DownloadClaims:
    """Check signature and expiry. Any failure is an InvalidDownloadToken."""
    try:
        claims = jwt.decode(
            token, secret or DOWNLOAD_LINK_SECRET, algorithms=[_ALGORITHM]
        )
    except JWTError as e:
        logger.info("Rejected download token: %s", type(e).__name__)
        raise InvalidDownloadToken() from e

    try:
        return DownloadClaims(
            file_id=str(claims.get("fileId") or ""),
            file_name=str(claims.get("fileName") or ""),
            book_id=str(claims["bookId"]),
            order_reference=str(claims.get("orderReference") or ""),
            download_id=str(claims.get("downloadId") or ""),
            issued_at=int(claims["iat"]),
            expires_at=int(claims["exp"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidDownloadToken() from e


async def resolve_download(store: DocumentStore, token: str) -> str:
    """Verify ``token`` and return the file location to redirect to."""
    claims = verify_download_token(token)

    book = await store.get(BOOKS, claims.book_id)
    if book is None:
        logger.warning("Download for missing book %s (order %s)",
                       claims.book_id, claims.order_reference)
        raise FileUnavailable("File not found")

    file_url = (book.get("digitalFile") or {}).get("url")
    if not file_url:
        logger.warning("Book %s has no digital file (order %s)",
                       claims.book_id, claims.order_reference)
        raise FileUnavailable()

    logger.info("Download redeemed: book=%s order=%s download=%s",
                claims.book_id, claims.order_reference, claims.download_id)
    return file_url
