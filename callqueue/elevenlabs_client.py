"""Minimal ElevenLabs client for starting outbound SIP-trunk calls."""
from typing import Optional, Dict, Any
import requests

from callqueue import settings
from callqueue.errors import DispatchError
from callqueue.logging_conf import logger
from callqueue.queue.models import Agent, PhoneNumber, CallHandle


class ElevenLabsClient:
    """Starts outbound calls through an ElevenLabs conversational agent."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        self.base_url = (base_url or settings.ELEVENLABS_API_URL).rstrip("/")
        self.timeout = timeout or settings.DISPATCH_TIMEOUT
        self.session = requests.Session()
        self.session.headers.update({
            "xi-api-key": api_key or settings.ELEVENLABS_API_KEY or "",
            "Content-Type": "application/json",
            "Accept": "application/json",
        })

    def initiate_call(
        self,
        agent: Agent,
        phone_number: PhoneNumber,
        client_data: Optional[Dict[str, Any]] = None,
    ) -> CallHandle:
        """
        Ask the agent to dial a phone number.

        Args:
            agent: Agent whose ElevenLabs agent and caller number are used
            phone_number: Target to call
            client_data: Optional conversation initiation data passed to the agent

        Returns:
            Handle with the conversation ID (and SIP call ID when provided)

        Raises:
            DispatchError if the request fails or the provider rejects the call
        """
        payload = {
            "agent_id": agent.agent_id,
            "agent_phone_number_id": agent.phone_number_id,
            "to_number": phone_number.phone,
        }
        if client_data:
            payload["conversation_initiation_client_data"] = client_data

        data = self._post("/v1/convai/sip-trunk/outbound-call", payload)

        if data.get("success") is False:
            raise DispatchError(data.get("message") or "Call was not accepted")

        handle = CallHandle(
            conversation_id=data.get("conversation_id"),
            call_sid=data.get("callSid") or data.get("sip_call_id"),
        )
        logger.info(f"Call to {phone_number.phone} accepted: {handle.conversation_id}")
        return handle

    def _post(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST to the API and return the decoded body, raising DispatchError on failure."""
        url = f"{self.base_url}{endpoint}"

        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
        except requests.exceptions.Timeout:
            raise DispatchError(f"Calling API timed out after {self.timeout}s")
        except requests.exceptions.RequestException as e:
            raise DispatchError(f"Calling API request failed: {e}") from e

        if response.status_code >= 400:
            raise DispatchError(self._error_message(response))

        try:
            return response.json()
        except ValueError:
            raise DispatchError(f"Calling API returned invalid JSON (status {response.status_code})")

    def _error_message(self, response: requests.Response) -> str:
        """Pull the provider's error message out of an error response."""
        try:
            body = response.json()
        except ValueError:
            return f"Calling API error {response.status_code}"

        detail = body.get("detail") if isinstance(body, dict) else None
        if isinstance(detail, dict):
            message = detail.get("message")
        elif isinstance(detail, str):
            message = detail
        else:
            message = body.get("message") if isinstance(body, dict) else None

        return message or f"Calling API error {response.status_code}"
