"""Process configuration read from the environment (and a repo-root .env).

Azure-style variable names are used for the two external services:

    AZURE_OPENAI_ENDPOINT               completion endpoint; unset → unconfigured
    AZURE_OPENAI_DEPLOYMENT_NAME        deployment (azure) or model id (openai)
    AZURE_OPENAI_API_VERSION
    AZURE_OPENAI_FORMAT                 "azure" (default) or "openai"
    AZURE_OPENAI_API_KEY                key auth; otherwise ...
    AZURE_OPENAI_AD_TOKEN               ... static bearer token; otherwise managed identity
    AZURE_CONTENT_SAFETY_ENDPOINT       moderation endpoint; unset → every message refused
    AZURE_CONTENT_SAFETY_KEY            key auth; otherwise managed identity
    AZURE_CONTENT_SAFETY_PROMPT_SHIELD  "true" to add jailbreak detection
    AZURE_CLIENT_ID                     user-assigned managed identity
    SYSTEM_PROMPT
    CHAT_HISTORY_MAX                    transcript bound (default 50)
    SAFECHAT_HTTP_TIMEOUT               seconds, per backend call (default 30)
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from safechat.completion import (
    CompletionBackend,
    HttpCompletionBackend,
    UnconfiguredCompletionBackend,
)
from safechat.credentials import (
    ApiKeyCredential,
    BearerTokenCredential,
    Credential,
    ManagedIdentityCredential,
)
from safechat.history import DEFAULT_MAX_MESSAGES
from safechat.moderation import (
    HttpModerationBackend,
    ModerationBackend,
    UnconfiguredModerationBackend,
)
from safechat.orchestrator import DEFAULT_SYSTEM_PROMPT

logger = logging.getLogger(__name__)

ENV_FILE = Path(__file__).parent.parent / ".env"


def _flag(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    openai_endpoint: str = ""
    openai_deployment: str = "gpt-4o"
    openai_api_version: str = "2024-10-21"
    openai_format: Literal["azure", "openai"] = "azure"
    openai_api_key: str = ""
    openai_ad_token: str = ""
    content_safety_endpoint: str = ""
    content_safety_key: str = ""
    content_safety_prompt_shield: bool = False
    managed_identity_client_id: str = ""
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    history_max: int = Field(default=DEFAULT_MAX_MESSAGES, ge=1)
    http_timeout: float = Field(default=30.0, gt=0)

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv(ENV_FILE)
        fields: dict = {
            "openai_endpoint": os.getenv("AZURE_OPENAI_ENDPOINT", ""),
            "openai_deployment": os.getenv("AZURE_OPENAI_DEPLOYMENT_NAME", "") or "gpt-4o",
            "openai_api_key": os.getenv("AZURE_OPENAI_API_KEY", ""),
            "openai_ad_token": os.getenv("AZURE_OPENAI_AD_TOKEN", ""),
            "content_safety_endpoint": os.getenv("AZURE_CONTENT_SAFETY_ENDPOINT", ""),
            "content_safety_key": os.getenv("AZURE_CONTENT_SAFETY_KEY", ""),
            "content_safety_prompt_shield": _flag(os.getenv("AZURE_CONTENT_SAFETY_PROMPT_SHIELD")),
            "managed_identity_client_id": os.getenv("AZURE_CLIENT_ID", ""),
        }
        if os.getenv("AZURE_OPENAI_API_VERSION"):
            fields["openai_api_version"] = os.environ["AZURE_OPENAI_API_VERSION"]
        if os.getenv("AZURE_OPENAI_FORMAT"):
            fields["openai_format"] = os.environ["AZURE_OPENAI_FORMAT"].strip().lower()
        if os.getenv("SYSTEM_PROMPT"):
            fields["system_prompt"] = os.environ["SYSTEM_PROMPT"]
        if os.getenv("CHAT_HISTORY_MAX"):
            fields["history_max"] = os.environ["CHAT_HISTORY_MAX"]
        if os.getenv("SAFECHAT_HTTP_TIMEOUT"):
            fields["http_timeout"] = os.environ["SAFECHAT_HTTP_TIMEOUT"]
        return cls.model_validate(fields)


def build_completion_backend(settings: Settings) -> CompletionBackend:
    if not settings.openai_endpoint:
        logger.warning("Completion endpoint is missing. Chat functionality will be limited.")
        return UnconfiguredCompletionBackend()

    credential: Credential
    if settings.openai_api_key:
        credential = ApiKeyCredential(settings.openai_api_key, header="api-key")
        auth = "API key"
    elif settings.openai_ad_token:
        credential = BearerTokenCredential(settings.openai_ad_token)
        auth = "bearer token"
    else:
        credential = ManagedIdentityCredential(client_id=settings.managed_identity_client_id)
        auth = "managed identity"

    logger.info(
        "Completion backend initialized with deployment %s using %s",
        settings.openai_deployment, auth,
    )
    return HttpCompletionBackend(
        endpoint=settings.openai_endpoint,
        deployment=settings.openai_deployment,
        credential=credential,
        provider_format=settings.openai_format,
        api_version=settings.openai_api_version,
        timeout=settings.http_timeout,
    )


def build_moderation_backend(settings: Settings) -> ModerationBackend:
    if not settings.content_safety_endpoint:
        logger.warning("Content safety endpoint is missing. Safety checks will block requests.")
        return UnconfiguredModerationBackend()

    credential: Credential
    if settings.content_safety_key:
        credential = ApiKeyCredential(settings.content_safety_key, header="Ocp-Apim-Subscription-Key")
    else:
        credential = ManagedIdentityCredential(client_id=settings.managed_identity_client_id)

    logger.info("Content safety backend initialized")
    return HttpModerationBackend(
        endpoint=settings.content_safety_endpoint,
        credential=credential,
        prompt_shield=settings.content_safety_prompt_shield,
        timeout=settings.http_timeout,
    )
