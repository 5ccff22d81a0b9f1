from __future__ import annotations

import logging

import requests
import trafilatura

logger = logging.getLogger(__name__)

_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)


def _download_html(url: str, timeout_seconds: float) -> str:
    response = requests.get(
        url,
        headers={"User-Agent": _USER_AGENT},
        timeout=timeout_seconds,
    )
    response.raise_for_status()
    if not response.encoding:
        response.encoding = "utf-8"
    return response.text


def extract_title(html: str) -> str:
    metadata = trafilatura.extract_metadata(html)
    if metadata is not None and getattr(metadata, "title", None):
        return str(metadata.title).strip()
    return ""


def extract_full_text(url: str, timeout_seconds: float = 12.0) -> tuple[str, str]:
    """
    Fetch a page and reduce it to its main text.

    Returns:
        (title, text). Both are empty strings when the page cannot be fetched
        or has no extractable content.
    """
    try:
        html = _download_html(url, timeout_seconds=max(1.0, float(timeout_seconds)))
        if html:
            text = trafilatura.extract(
                html,
                include_comments=False,
                include_tables=False,
            )
            if text:
                return extract_title(html), text
    except requests.RequestException as exc:
        logger.warning("[extractor] url=%s network_error=%s", url, exc)
    except Exception as exc:
        logger.warning("[extractor] url=%s extract_failed=%s", url, exc)

    return "", ""
