"""
OpenAI-compatible client construction.

Shared by the completion and embedding services so both talk to the same
endpoint with the same TLS and retry settings.
"""

import logging
from typing import Optional

import httpx
import urllib3
from openai import OpenAI

logger = logging.getLogger("eventsight.llm.client")


def build_openai_client(
    api_key: Optional[str],
    base_url: Optional[str] = None,
    timeout: float = 60.0,
    max_retries: int = 3,
    verify_ssl: bool = True,
) -> Optional[OpenAI]:
    """Return a configured client, or None when no API key is set."""
    if not api_key:
        logger.warning("No LLM API key configured; LLM features are disabled")
        return None

    if not verify_ssl:
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    http_client = httpx.Client(verify=verify_ssl, timeout=timeout)
    client_kwargs = {
        "api_key": api_key,
        "http_client": http_client,
        "max_retries": max_retries,
    }
    if base_url:
        client_kwargs["base_url"] = base_url

    logger.info("OpenAI-compatible client initialized (base_url=%s)", base_url or "default")
    return OpenAI(**client_kwargs)
