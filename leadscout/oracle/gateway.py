import json
import logging
import os
import re
import time
from typing import Any, Dict, Optional

from openai import AsyncOpenAI, OpenAIError

from ..cancellation import CancellationToken, with_cancellation
from ..config import ORACLE_DEFAULT_MODEL
from ..errors import OracleError, OracleParseError

logger = logging.getLogger(__name__)

"""
OracleGateway: the one way leadscout talks to an LLM.

Guarantees:

1. Every call is logged with context_type, model, latency and success.
2. `context_type` follows a small enum so logs can be filtered:

  - "extract"          -> structured field extraction from raw text
  - "cross_reference"  -> multi-source validation / merge
  - "analyze"          -> narrative business analysis
  - "qualify"          -> lead scoring and tiering

3. Responses are parsed as a single JSON object. Anything else raises
   OracleParseError; transport failures raise OracleError. Callers pair
   every call with a rule-based fallback.
4. Calls are raced against the job's CancellationToken.
"""

ALLOWED_CONTEXT_TYPES = {
    "extract",
    "cross_reference",
    "analyze",
    "qualify",
}

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.I)


def _normalize_context_type(raw: Optional[str]) -> str:
    if raw is None:
        return "extract"
    if raw not in ALLOWED_CONTEXT_TYPES:
        logger.warning(
            "OracleGateway called with non-standard context_type=%r. Consider one of: %s",
            raw,
            sorted(ALLOWED_CONTEXT_TYPES),
        )
    return raw


def parse_json_object(text: str) -> Dict[str, Any]:
    """Strip markdown fences and parse one JSON object."""
    cleaned = _FENCE_RE.sub("", (text or "").strip()).strip()
    if not cleaned:
        raise OracleParseError("empty response")
    try:
        data = json.loads(cleaned)
    except ValueError:
        # tolerate chatter around the object
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start < 0 or end <= start:
            raise OracleParseError("response is not JSON")
        try:
            data = json.loads(cleaned[start : end + 1])
        except ValueError as e:
            raise OracleParseError(f"response is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise OracleParseError(f"expected a JSON object, got {type(data).__name__}")
    return data


def _build_client() -> AsyncOpenAI:
    """
    Lazily construct the client.

    Avoids crashing at import-time when OPENAI_API_KEY is missing.
    """
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        raise OpenAIError("OPENAI_API_KEY is not set. Set it in the environment before running enrichment.")
    return AsyncOpenAI(api_key=api_key, base_url=os.getenv("OPENAI_BASE_URL") or None)


class OracleGateway:
    def __init__(self, client_instance: Optional[AsyncOpenAI] = None, model: str = ORACLE_DEFAULT_MODEL):
        self._client: Optional[AsyncOpenAI] = client_instance
        self.model = model

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = _build_client()
        return self._client

    async def complete_json(
        self,
        *,
        system: str,
        prompt: str,
        context_type: Optional[str] = None,
        token: Optional[CancellationToken] = None,
        temperature: float = 0.3,
        max_tokens: int = 1500,
    ) -> Dict[str, Any]:
        ctx = _normalize_context_type(context_type)
        if token is not None:
            token.throw_if_cancelled()

        start = time.perf_counter()
        success = False
        try:
            response = await with_cancellation(
                token,
                self.client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": prompt},
                    ],
                    temperature=temperature,
                    max_tokens=max_tokens,
                ),
            )
            text = response.choices[0].message.content or ""
            data = parse_json_object(text)
            success = True
            return data
        except OpenAIError as e:
            raise OracleError(f"{type(e).__name__}: {e}") from e
        except (IndexError, AttributeError) as e:
            raise OracleError(f"malformed completion: {e}") from e
        finally:
            latency_ms = int((time.perf_counter() - start) * 1000)
            logger.info(
                "oracle call context_type=%s model=%s success=%s latency_ms=%d",
                ctx,
                self.model,
                success,
                latency_ms,
            )
