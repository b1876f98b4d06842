"""
LLM Gateway client for importance judgments.

Posts an OpenAI-style chat completion and returns the raw text of the first
choice. Connection errors are retried once; timeouts and HTTP errors
propagate so the caller can fail open.
"""
import time
from typing import Any, Dict, List, Optional

import httpx
import structlog
import tenacity

from inbox_digest.config import LLMConfig

logger = structlog.get_logger()


class JudgmentGateway:
    """Client for the LLM Gateway API."""
    
    def __init__(self, config: LLMConfig, metrics=None, client: Optional[httpx.Client] = None):
        self.config = config
        self.metrics = metrics
        self.last_latency_ms = 0
        self.client = client or httpx.Client(
            timeout=httpx.Timeout(self.config.timeout_s),
            headers=self.config.headers
        )
    
    def complete(self, prompt: str, trace_id: str) -> str:
        """Send ``prompt`` as a single user message; return the response text ("" if none)."""
        messages = [{"role": "user", "content": prompt}]
        result = self._make_request_with_retry(messages, trace_id)
        content = (result.get("choices") or [{}])[0].get("message", {}).get("content") or ""
        if not content:
            logger.warning("Empty LLM response", trace_id=trace_id)
        return content
    
    @tenacity.retry(
        stop=tenacity.stop_after_attempt(2),
        wait=tenacity.wait_fixed(1),
        retry=tenacity.retry_if_exception_type(httpx.ConnectError),
        reraise=True
    )
    def _make_request_with_retry(self, messages: List[Dict[str, str]], trace_id: str) -> Dict[str, Any]:
        start_time = time.time()
        
        payload = {
            "model": self.config.model,
            "messages": messages,
            "temperature": 0.1,
            "max_tokens": self.config.max_tokens,
        }
        
        headers = dict(self.config.headers)
        token = self.config.get_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        
        try:
            response = self.client.post(self.config.endpoint, json=payload, headers=headers)
            self.last_latency_ms = int((time.time() - start_time) * 1000)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error("LLM request failed with HTTP error",
                         status_code=e.response.status_code,
                         error=str(e)[:200],
                         trace_id=trace_id)
            raise
        
        if self.metrics:
            self.metrics.record_llm_latency(self.last_latency_ms)
        
        result = response.json()
        usage = result.get("usage") or {}
        logger.info("LLM request successful",
                    latency_ms=self.last_latency_ms,
                    tokens_in=usage.get("prompt_tokens", 0),
                    tokens_out=usage.get("completion_tokens", 0),
                    trace_id=trace_id)
        return result
    
    def close(self):
        """Close the HTTP client."""
        self.client.close()
