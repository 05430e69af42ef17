from __future__ import annotations

from typing import Optional
from urllib.parse import parse_qs, urlparse

import boto3

from cumulus.constants import STATE_PREFIX
from cumulus.errors import ConfigurationError
from cumulus.state.base import StateBackend
from cumulus.state.local import LocalBackend
from cumulus.state.s3 import S3Backend

SUPPORTED_SCHEMES = ["s3", "file"]


def new_backend(
    url: str, region: str, session: Optional[boto3.Session] = None
) -> StateBackend:
    """
    Resolves a backend URL into a state backend.

    Supported forms:
        s3://<bucket>[/<path>][?lock-table=<table>]
        file://<directory>

    Args:
        url (str): The backend URL.
        region (str): The region of the backend resources.
        session (boto3.Session, optional): The AWS session to use for cloud backends.

    Returns:
        StateBackend: The backend. It is not initialized yet.

    Raises:
        ConfigurationError: If the URL is malformed or uses an unsupported scheme.
    """
    parsed = urlparse(url)
    scheme = parsed.scheme.lower()

    if scheme == "s3":
        if not parsed.netloc:
            raise ConfigurationError(f"Missing bucket name in backend URL: {url}")
        query = parse_qs(parsed.query)
        lock_table = query.get("lock-table", [None])[0]
        path = parsed.path.strip("/")
        prefix = f"{path}/{STATE_PREFIX}" if path else STATE_PREFIX
        return S3Backend(
            parsed.netloc,
            region,
            lock_table_name=lock_table,
            prefix=prefix,
            session=session,
        )

    if scheme == "file":
        root = f"{parsed.netloc}{parsed.path}"
        if not root:
            raise ConfigurationError(f"Missing directory in backend URL: {url}")
        return LocalBackend(root)

    raise ConfigurationError(
        f"Unsupported backend type: '{parsed.scheme or url}'. "
        f"Expected one of: {', '.join(f'{s}://' for s in SUPPORTED_SCHEMES)}"
    )
