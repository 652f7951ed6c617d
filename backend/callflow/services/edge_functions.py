import os
import httpx
from typing import Dict, Any, Optional
import logging

from .outcome_classifier import DispositionResult, normalize_disposition

# Set up logger
logger = logging.getLogger(__name__)


class EdgeFunctionClient:
    """Invokes sibling Supabase edge functions (disposition router, transcript analysis)."""

    def __init__(self) -> None:
        self.base_url = (os.getenv("SUPABASE_URL") or "").rstrip("/")
        self.api_key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
        self.timeout = float(os.getenv("EDGE_FUNCTION_TIMEOUT", "30"))
        self.simulated = not self.base_url or not self.api_key or len(self.api_key.strip()) == 0

        if self.simulated:
            logger.info("EdgeFunctionClient initialized in simulation mode (no Supabase configuration)")

    async def invoke(self, name: str, body: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if self.simulated:
            logger.info(f"[SIMULATED] Invoking edge function {name}")
            return None

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    f"{self.base_url}/functions/v1/{name}",
                    headers=headers,
                    json=body,
                    timeout=self.timeout
                )
                logger.info(f"Edge function {name} response: {response.status_code}")
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Edge function {name} HTTP error: {e.response.status_code} - {e.response.text}")
            raise
        except httpx.RequestError as e:
            logger.error(f"Edge function {name} request error: {str(e)}")
            raise

    async def route_disposition(self, lead_id: str, user_id: str, disposition: str, transcript: str) -> Optional[Dict[str, Any]]:
        """Hand the outcome to the disposition router for the user's automation rules."""
        return await self.invoke("disposition-router", {
            "action": "process_disposition",
            "leadId": lead_id,
            "userId": user_id,
            "dispositionName": disposition,
            "callOutcome": disposition,
            "transcript": transcript,
        })

    async def analyze_transcript(self, transcript: str, user_id: str, call_log_id: Optional[str] = None) -> Optional[DispositionResult]:
        data = await self.invoke("analyze-call-transcript", {
            "callId": call_log_id,
            "transcript": transcript,
            "userId": user_id,
        })
        analysis = (data or {}).get("analysis")
        if not analysis:
            return None
        return DispositionResult(
            disposition=normalize_disposition(analysis.get("disposition")) or "contacted",
            confidence=analysis.get("confidence") or 0.5,
            summary=analysis.get("summary") or "",
        )
