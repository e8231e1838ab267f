"""
Conversation Service Integration
Sends user text plus the previous context to Watson Assistant and returns the
updated context, the detected entities and the generated output text
"""

import asyncio
import math
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional

import httpx

from config import (
    CONVERSATION_URL,
    CONVERSATION_API_KEY,
    CONVERSATION_USERNAME,
    CONVERSATION_PASSWORD,
    CONVERSATION_WORKSPACE_ID,
    CONVERSATION_VERSION,
    HTTP_TIMEOUT,
    HTTP_MAX_RETRIES,
)
from souschef.errors import GatewayError
from souschef.models import NluResponse


def retry_after_seconds(value: Optional[str], default: float) -> float:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP-date)"""
    if not value:
        return default
    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        return max(0.0, seconds) if math.isfinite(seconds) else default
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class WatsonAssistant:
    """Client for the Watson Assistant v1 `message` API"""

    def __init__(
        self,
        url: str = CONVERSATION_URL,
        workspace_id: str = CONVERSATION_WORKSPACE_ID,
        api_key: str = CONVERSATION_API_KEY,
        username: str = CONVERSATION_USERNAME,
        password: str = CONVERSATION_PASSWORD,
        version: str = CONVERSATION_VERSION,
        timeout: float = HTTP_TIMEOUT,
        max_retries: int = HTTP_MAX_RETRIES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url.rstrip("/")
        self.workspace_id = workspace_id
        self.version = version
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        # IAM api keys authenticate as the literal user "apikey"
        self.auth = ("apikey", api_key) if api_key else (username, password)
        self._transport = transport

    async def message(
        self,
        text: str,
        context: Optional[dict] = None,
        workspace_id: Optional[str] = None,
    ) -> NluResponse:
        """Send one user turn; raises GatewayError on any failure"""
        workspace = workspace_id or self.workspace_id
        if not workspace:
            raise GatewayError(
                "Conversation workspace not configured. "
                "Please set CONVERSATION_WORKSPACE_ID in your .env file."
            )

        url = f"{self.url}/v1/workspaces/{workspace}/message"
        payload = {"input": {"text": text}, "context": context or {}}

        last_error = None

        for attempt in range(self.max_retries):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    response = await client.post(
                        url,
                        params={"version": self.version},
                        auth=self.auth,
                        json=payload,
                    )

                    if response.status_code == 429:
                        retry_after = retry_after_seconds(response.headers.get("Retry-After"), 2 ** attempt)
                        if attempt < self.max_retries - 1:
                            await asyncio.sleep(retry_after)
                            continue
                        raise GatewayError(f"Rate limited by the conversation service ({retry_after}s)")

                    if response.status_code != 200:
                        error_detail = response.text
                        try:
                            error_detail = response.json().get("error", error_detail)
                        except ValueError:
                            pass
                        raise GatewayError(f"Conversation API error ({response.status_code}): {error_detail}")

                    try:
                        data = response.json()
                    except ValueError as e:
                        raise GatewayError("Invalid conversation response: not JSON") from e
                    return NluResponse.from_dict(data)

            except httpx.TimeoutException:
                last_error = GatewayError(f"Conversation request timed out after {self.timeout} seconds")
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(2 ** attempt)
                    continue

            except httpx.RequestError as e:
                last_error = GatewayError(f"Network error: {str(e)}")
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(2 ** attempt)
                    continue

        if last_error:
            raise last_error
        raise GatewayError("Failed to get a conversation response after multiple attempts")
