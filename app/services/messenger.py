"""Instagram Graph API send adapter."""

from typing import Optional, Protocol

import httpx

from app.logging_config import get_logger
from app.services.result import PERMANENT, TRANSIENT, Result

logger = get_logger("messenger")

# Graph API throttling codes that come back as HTTP 400
RATE_LIMIT_ERROR_CODES = {4, 17, 32, 613}


class Messenger(Protocol):
    async def send(
        self,
        account_id: str,
        recipient_id: str,
        text: str,
        *,
        access_token: str,
        comment_id: Optional[str] = None,
    ) -> Result[str]:
        ...

    async def reply_to_comment(self, comment_id: str, text: str, *, access_token: str) -> Result[str]:
        ...


def classify_response(response: httpx.Response) -> str:
    if response.status_code == 429 or response.status_code >= 500:
        return TRANSIENT
    try:
        body = response.json()
    except ValueError:
        body = None
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        error = {}
    if error.get("code") in RATE_LIMIT_ERROR_CODES:
        return TRANSIENT
    return PERMANENT


class InstagramMessenger:
    """Send DMs, comment private replies and public comment replies."""

    def __init__(
        self,
        graph_url: str = "https://graph.instagram.com/v18.0",
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.graph_url = graph_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def _post(self, path: str, payload: dict, access_token: str) -> Result[dict]:
        url = f"{self.graph_url}/{path}"
        try:
            if self._client is not None:
                response = await self._client.post(
                    url, params={"access_token": access_token}, json=payload, timeout=self.timeout_seconds
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(url, params={"access_token": access_token}, json=payload)
        except httpx.HTTPError as e:
            logger.warning(
                "Instagram API request failed",
                extra={"context": {"path": path, "error": str(e) or type(e).__name__}},
            )
            return Result.failure(f"request_failed:{type(e).__name__}", TRANSIENT)

        if response.status_code != 200:
            code = classify_response(response)
            logger.warning(
                "Instagram API error",
                extra={
                    "context": {
                        "path": path,
                        "status_code": response.status_code,
                        "error_kind": code,
                        "body": response.text[:300],
                    }
                },
            )
            return Result.failure(f"http_{response.status_code}", code)

        try:
            return Result.success(response.json())
        except ValueError:
            return Result.success({})

    async def send(
        self,
        account_id: str,
        recipient_id: str,
        text: str,
        *,
        access_token: str,
        comment_id: Optional[str] = None,
    ) -> Result[str]:
        """Send a DM, or a private reply to `comment_id` when given."""
        recipient = {"comment_id": comment_id} if comment_id else {"id": recipient_id}
        payload = {"recipient": recipient, "message": {"text": text}}
        result = await self._post(f"{account_id}/messages", payload, access_token)
        if not result.ok:
            return Result.failure(result.error or "send_failed", result.error_code or TRANSIENT)

        message_id = (result.value or {}).get("message_id") or ""
        logger.info(
            "Instagram message sent",
            extra={"context": {"account_id": account_id, "recipient": recipient, "message_id": message_id}},
        )
        return Result.success(message_id)

    async def reply_to_comment(self, comment_id: str, text: str, *, access_token: str) -> Result[str]:
        result = await self._post(f"{comment_id}/replies", {"message": text}, access_token)
        if not result.ok:
            return Result.failure(result.error or "reply_failed", result.error_code or TRANSIENT)
        return Result.success((result.value or {}).get("id") or "")
