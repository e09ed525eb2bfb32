"""Shared HTTP plumbing: one requests session and failure classification."""

from __future__ import annotations

from typing import Any, Mapping

import requests

from aerosync.errors import DataValidationError, TransientFetchError, classify_http_error
from utils.logging_utils import get_tagged_logger, mask_url_secrets

logger = get_tagged_logger(__name__, tag="data_sources/http_client")

session = requests.Session()
session.headers.update({"User-Agent": "aerosync/0.1"})


def request_json(
    url: str,
    *,
    params: Mapping[str, Any] | None = None,
    timeout: float = 10.0,
    source: str | None = None,
    http: Any = None,
) -> Any:
    """GET `url` and return the decoded JSON body.

    Network problems become TransientFetchError, HTTP error statuses are
    classified by `classify_http_error`, and undecodable bodies become
    DataValidationError.
    """
    client = http or session
    try:
        resp = client.get(url, params=params, timeout=timeout)
    except requests.Timeout as exc:
        raise TransientFetchError(f"Timed out after {timeout}s", source=source) from exc
    except requests.ConnectionError as exc:
        raise TransientFetchError(f"Connection error: {exc}", source=source) from exc
    except requests.RequestException as exc:
        raise TransientFetchError(f"Request failed: {exc}", source=source) from exc

    status_code = getattr(resp, "status_code", 200)
    if status_code >= 400:
        headers = getattr(resp, "headers", None) or {}
        logger.warning(
            "Upstream returned an error status",
            extra={"source": source, "status_code": status_code, "url": mask_url_secrets(str(getattr(resp, "url", url)))},
        )
        raise classify_http_error(status_code, source=source, retry_after=headers.get("Retry-After"))

    try:
        return resp.json()
    except ValueError as exc:
        raise DataValidationError("Response body is not valid JSON", source=source) from exc
