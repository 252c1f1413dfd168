"""HTTP Basic auth for the audit API.

One credential pair, API_USERNAME / API_PASSWORD. The username that
passes is returned to the routes so rejections can be attributed in logs.
"""

from __future__ import annotations

import logging
import secrets

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from auditchain.config import settings

logger = logging.getLogger(__name__)

security = HTTPBasic(realm="auditchain")


def _matches(given: str, expected: str) -> bool:
    return secrets.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))


async def verify_client(
    credentials: HTTPBasicCredentials = Depends(security),  # noqa: B008
) -> str:
    """FastAPI dependency: the authenticated client's username.

    503 while no password is configured, 401 on a wrong username or password.
    """
    expected_password = settings.security.api_password
    if not expected_password:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="API_PASSWORD not configured",
        )

    # Both comparisons always run.
    username_ok = _matches(credentials.username, settings.security.api_username)
    password_ok = _matches(credentials.password, expected_password)
    if not (username_ok and password_ok):
        logger.warning("Rejected API credentials for user %r", credentials.username)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": 'Basic realm="auditchain"'},
        )

    return credentials.username
