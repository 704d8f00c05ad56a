from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI

from .errors import AgentNotFoundError

logger = logging.getLogger(__name__)

_REQUEST_TIMEOUT: int = 600
_MAX_RETRIES: int = 3


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Return OPENAI_API_KEY, loading ``<repo_root>/.env`` first when present.

    Raises:
        AgentNotFoundError: If no key is configured.
    """
    env_path = (repo_root if repo_root is not None else Path.cwd()) / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise AgentNotFoundError("OPENAI_API_KEY is required for the deepagents backend")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _REQUEST_TIMEOUT,
    max_retries: int = _MAX_RETRIES,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Build the chat model that drives the in-process coding agent."""
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    kwargs: dict[str, Any] = {
        "model": model_name,
        "temperature": temperature,
        "timeout": timeout,
        "max_retries": max_retries,
    }
    logger.debug("Creating chat model %s", model_name)
    return ChatOpenAI(**kwargs)
