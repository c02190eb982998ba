"""Clients for the black-box auth and audit services."""

import httpx

from notifly.common.config import settings
from notifly.common.errors import InvalidApiKey
from notifly.common.logging import logger


class HttpCredentialVerifier:
    """`VerifyCredential(token) -> tenant_id | None` over the auth service."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None) -> None:
        self.base_url = (base_url or settings.auth_service_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.collaborator_timeout_seconds

    async def verify(self, token: str) -> str | None:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(f"{self.base_url}/api/auth/verify-api-key", json={"apiKey": token})
        if resp.status_code in (401, 403, 404):
            return None
        resp.raise_for_status()
        tenant_id = resp.json().get("tenantId")
        return tenant_id if isinstance(tenant_id, str) and tenant_id else None


class StaticCredentialVerifier:
    """Credential map from `TENANT_API_KEYS`, used for local runs and tests."""

    def __init__(self, keys: dict[str, str]) -> None:
        self.keys = dict(keys)

    async def verify(self, token: str) -> str | None:
        return self.keys.get(token)


def build_credential_verifier():
    static_keys = settings.static_api_keys
    if static_keys:
        return StaticCredentialVerifier(static_keys)
    return HttpCredentialVerifier()


def bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise InvalidApiKey("missing bearer credential")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise InvalidApiKey("malformed bearer credential")
    return token.strip()


async def resolve_tenant(verifier, authorization: str | None) -> str:
    """Resolve a bearer header to exactly one tenant or raise `INVALID_API_KEY`."""

    token = bearer_token(authorization)
    try:
        tenant_id = await verifier.verify(token)
    except httpx.HTTPError as exc:
        logger.error("credential_verification_failed error=%s", exc)
        raise InvalidApiKey("credential could not be verified") from exc
    if not tenant_id:
        raise InvalidApiKey("invalid API key")
    return tenant_id


class AuditLogger:
    """Fire-and-forget audit events; failures never fail the caller."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None) -> None:
        self.base_url = (base_url if base_url is not None else settings.audit_service_url or "").rstrip("/")
        self.timeout = timeout if timeout is not None else settings.collaborator_timeout_seconds

    async def log_event(
        self,
        tenant_id: str,
        action: str,
        resource_type: str,
        resource_id: str,
        changes: dict | None = None,
    ) -> None:
        if not self.base_url:
            logger.info(
                "audit action=%s resource_type=%s resource_id=%s tenant_id=%s",
                action,
                resource_type,
                resource_id,
                tenant_id,
            )
            return
        body = {
            "tenantId": tenant_id,
            "action": action,
            "resourceType": resource_type,
            "resourceId": resource_id,
            "changes": changes or {},
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(f"{self.base_url}/audit/events", json=body)
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("audit_write_failed action=%s resource_id=%s error=%s", action, resource_id, exc)
