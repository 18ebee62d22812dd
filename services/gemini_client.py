# services/gemini_client.py
import aiohttp
import time
import asyncio
import json
import logging
from typing import Optional, Dict, Any

from constants import GEMINI_API_URL

logger = logging.getLogger(__name__)


async def api_post(url: str, session: aiohttp.ClientSession, json_data: Dict, headers: Optional[Dict] = None) -> Optional[Dict]:
    """Makes a generic async POST request."""
    try:
        async with session.post(url, json=json_data, headers=headers) as response:
            response.raise_for_status()
            return await response.json()
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.error("API POST request failed: %s", e)
        return None

class GeminiClient:
    """Chat-completion style access to Gemini, returning parsed JSON objects."""

    def __init__(self, session: aiohttp.ClientSession, api_key: str, base_url: str = GEMINI_API_URL, temperature: float = 0.3):
        self.session = session
        self.api_key = api_key
        self.base_url = base_url
        self.temperature = temperature
        self.headers = {'Content-Type': 'application/json', 'x-goog-api-key': self.api_key}
        self._last_request_time = 0.0
        self._rate_limit_delay = 10  # 10 seconds delay between requests to avoid 429 errors

    async def _wait_for_rate_limit(self):
        """Ensures requests respect the rate limit by pausing if necessary."""
        elapsed = time.time() - self._last_request_time
        if elapsed < self._rate_limit_delay:
            await asyncio.sleep(self._rate_limit_delay - elapsed)
        self._last_request_time = time.time()

    async def generate_json(self, prompt: str) -> Optional[Dict[str, Any]]:
        """Sends ``prompt`` and returns the model's JSON object, or None on any failure.

        The result is untrusted: callers must validate its shape.
        """
        if not self.api_key:
            logger.info("Gemini API key not configured.")
            return None

        await self._wait_for_rate_limit() # Wait before making the request

        request_body = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self.temperature,
                "responseMimeType": "application/json",
            },
        }

        response_json = await api_post(self.base_url, self.session, json_data=request_body, headers=self.headers)

        if response_json is None:  # Handle cases where api_post returned None due to error
            return None

        try:
            candidate = response_json['candidates'][0]['content']['parts'][0]['text'].strip()
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            logger.warning("Error parsing Gemini response: %s", e)
            return None

        return self._parse_candidate(candidate)

    def _parse_candidate(self, raw_text: str) -> Optional[Dict[str, Any]]:
        text = self._strip_code_fences(raw_text.strip())
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Gemini returned non-JSON output.")
            return None
        if not isinstance(payload, dict):
            return None
        return payload

    @staticmethod
    def _strip_code_fences(text: str) -> str:
        if text.startswith("```"):
            lines = text.splitlines()
            if len(lines) >= 3 and lines[0].startswith("```") and lines[-1].startswith("```"):
                inner = "\n".join(lines[1:-1]).strip()
                if inner.startswith("json"):
                    inner = inner[4:].strip()
                return inner
        return text
