"""
Classification oracle client.

Every pipeline stage sends a batch of strings as ``{"tags": [...]}`` together
with a stage-specific system prompt to a chat-completion service and expects a
JSON array back. This module holds the transports (Ollama's native chat API
and OpenAI-compatible endpoints), the response-cleaning contract shared by all
stages, and the client that ties them together with retries and caching.
"""

import json
import logging
import random
import re
import time
from typing import Any, Dict, List, Optional, Sequence

import httpx
import openai
from openai import OpenAI

from caching.cache_manager import OracleResponseCache
from utils.exceptions import (
    MalformedOracleResponse, OracleCommunicationError, OracleTimeoutError
)

logger = logging.getLogger(__name__)

_FENCED_BLOCK_RE = re.compile(r'```(?:json)?\s*([\s\S]*?)```', re.IGNORECASE)


def clean_model_output(raw: str) -> str:
    """
    Extract the JSON text from a model response.

    Strips a fenced code block if present; if the text then does not start
    with ``[`` or ``{``, slices from the first ``[`` to the last ``]``.
    """
    text = (raw or "").strip()

    fenced = _FENCED_BLOCK_RE.search(text)
    if fenced:
        text = fenced.group(1).strip()

    if not text.startswith(("[", "{")):
        first_bracket = text.find("[")
        last_bracket = text.rfind("]")
        if first_bracket != -1 and last_bracket > first_bracket:
            text = text[first_bracket:last_bracket + 1].strip()

    return text


def parse_json_array(raw: str) -> List[Any]:
    """
    Parse model output into a JSON array.

    Raises:
        MalformedOracleResponse: If the cleaned text is not JSON or not an array
    """
    cleaned = clean_model_output(raw)

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise MalformedOracleResponse(cleaned, f"model output is not valid JSON ({e})")

    if not isinstance(data, list):
        raise MalformedOracleResponse(
            cleaned, f"expected a JSON array from model, got {type(data).__name__}"
        )

    return data


class OllamaChatTransport:
    """Ollama native chat API: POST {host}/api/chat."""

    def __init__(self, host: str, timeout: float = 120.0, http_client: httpx.Client = None):
        self.host = host.rstrip('/')
        self.timeout = timeout
        self._http = http_client or httpx.Client(timeout=timeout)

    def chat(self, model: str, messages: List[Dict[str, str]], options: Dict[str, Any]) -> str:
        """
        Send one non-streaming chat request and return the message content.

        Raises:
            OracleTimeoutError: If the request times out
            OracleCommunicationError: For connection failures and non-2xx responses
            MalformedOracleResponse: If the response body lacks message content
        """
        body = {
            'model': model,
            'messages': messages,
            'stream': False,
            'options': options,
        }

        try:
            response = self._http.post(f"{self.host}/api/chat", json=body, timeout=self.timeout)
        except httpx.TimeoutException:
            raise OracleTimeoutError(self.timeout)
        except httpx.HTTPError as e:
            raise OracleCommunicationError(f"Oracle request to {self.host} failed: {e}")

        if not response.is_success:
            raise OracleCommunicationError(
                f"HTTP error from oracle: {response.reason_phrase}",
                status_code=response.status_code,
                body=response.text
            )

        try:
            data = response.json()
        except ValueError:
            raise MalformedOracleResponse(response.text, "oracle response body is not JSON")

        message = data.get('message') if isinstance(data, dict) else None
        content = message.get('content') if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise MalformedOracleResponse(response.text, "oracle response has no message content")

        return content

    def list_models(self) -> List[str]:
        """Model names the service reports via GET {host}/api/tags."""
        try:
            response = self._http.get(f"{self.host}/api/tags", timeout=min(self.timeout, 10.0))
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise OracleCommunicationError(f"Could not list models at {self.host}: {e}")

        models = data.get('models', []) if isinstance(data, dict) else []
        return [m['name'] for m in models if isinstance(m, dict) and isinstance(m.get('name'), str)]

    def close(self):
        self._http.close()


class OpenAIChatTransport:
    """OpenAI-compatible chat completions (OpenAI itself or Ollama's /v1 endpoint)."""

    def __init__(self, host: str, timeout: float = 120.0, api_key: str = None, client: OpenAI = None):
        base_url = host.rstrip('/')
        if not base_url.endswith('/v1'):
            base_url += '/v1'
        self.base_url = base_url
        self.timeout = timeout
        # Ollama ignores the key but the SDK requires one
        self.client = client or OpenAI(
            base_url=base_url, api_key=api_key or "ollama", timeout=timeout, max_retries=0
        )

    def chat(self, model: str, messages: List[Dict[str, str]], options: Dict[str, Any]) -> str:
        params = {'model': model, 'messages': messages}
        for key in ('temperature', 'top_p'):
            if key in options:
                params[key] = options[key]

        try:
            response = self.client.chat.completions.create(**params)
        except openai.APITimeoutError:
            raise OracleTimeoutError(self.timeout)
        except openai.APIStatusError as e:
            raise OracleCommunicationError(
                f"HTTP error from oracle: {e.message}",
                status_code=e.status_code,
                body=e.response.text if e.response is not None else None
            )
        except openai.APIConnectionError as e:
            raise OracleCommunicationError(f"Oracle request to {self.base_url} failed: {e}")

        if not response.choices:
            raise MalformedOracleResponse(str(response), "no choices in oracle response")

        content = response.choices[0].message.content
        if content is None:
            raise MalformedOracleResponse(
                str(response.choices[0]), "oracle response has no message content"
            )
        return content

    def list_models(self) -> List[str]:
        try:
            return [m.id for m in self.client.models.list()]
        except openai.OpenAIError as e:
            raise OracleCommunicationError(f"Could not list models at {self.base_url}: {e}")

    def close(self):
        self.client.close()


class OracleClient:
    """
    Sends stage batches to the oracle and returns the parsed JSON array.

    Transport failures may be retried with exponential backoff; malformed
    output is never retried and fails the call.
    """

    def __init__(
        self,
        transport,
        model: str,
        temperature: float = 0.0,
        top_p: float = 0.1,
        max_retries: int = 0,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        response_cache: Optional[OracleResponseCache] = None
    ):
        """
        Initialize the oracle client.

        Args:
            transport: OllamaChatTransport or OpenAIChatTransport
            model: Model name sent with every request
            temperature: Sampling temperature (0 for deterministic output)
            top_p: Nucleus sampling cutoff
            max_retries: Retry attempts for retryable transport failures
            base_delay: Base delay for exponential backoff (seconds)
            max_delay: Maximum delay between retries (seconds)
            response_cache: Optional cache of raw response text
        """
        self.transport = transport
        self.model = model
        self.temperature = temperature
        self.top_p = top_p
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.response_cache = response_cache

        # Statistics
        self.total_requests = 0
        self.successful_requests = 0
        self.failed_requests = 0
        self.retried_requests = 0
        self.cache_hits = 0

    @property
    def options(self) -> Dict[str, Any]:
        return {'temperature': self.temperature, 'top_p': self.top_p}

    def request_array(self, system_prompt: str, tags: Sequence[str], stage: str = "oracle") -> List[Any]:
        """
        Run one stage call over ``tags`` and return the decoded JSON array.

        Empty input returns an empty list without contacting the oracle.

        Raises:
            OracleCommunicationError: For transport failures (after retries)
            MalformedOracleResponse: If the output is not a JSON array
        """
        tags = list(tags)
        if not tags:
            return []

        payload = json.dumps({'tags': tags}, ensure_ascii=False, separators=(',', ':'))
        messages = [
            {'role': 'system', 'content': system_prompt},
            {'role': 'user', 'content': payload},
        ]

        cache_key = None
        if self.response_cache is not None:
            cache_key = OracleResponseCache.generate_cache_key(
                system_prompt, self.model, payload, **self.options
            )
            cached = self.response_cache.get(cache_key)
            if cached is not None:
                try:
                    data = parse_json_array(cached)
                    self.cache_hits += 1
                    logger.debug(f"{stage}: using cached oracle response for {len(tags)} tags")
                    return data
                except MalformedOracleResponse:
                    logger.debug(f"{stage}: ignoring unparsable cached response")

        self.total_requests += 1
        logger.debug(f"{stage}: sending {len(tags)} tags to {self.model}")

        content = self._chat_with_retries(messages, stage)

        try:
            data = parse_json_array(content)
        except MalformedOracleResponse as e:
            self.failed_requests += 1
            logger.error(f"{stage}: model returned invalid JSON: {e.reason}\n{e.snippet}")
            raise

        self.successful_requests += 1
        if cache_key is not None:
            self.response_cache.put(cache_key, content, self.model)

        logger.debug(f"{stage}: received {len(data)} records")
        return data

    def _chat_with_retries(self, messages: List[Dict[str, str]], stage: str) -> str:
        for attempt in range(self.max_retries + 1):
            try:
                return self.transport.chat(self.model, messages, self.options)
            except OracleCommunicationError as e:
                if attempt < self.max_retries and self._is_retryable(e):
                    delay = self._calculate_backoff_delay(attempt)
                    logger.warning(
                        f"{stage}: oracle call failed ({e}); retrying in {delay:.1f}s "
                        f"(attempt {attempt + 1}/{self.max_retries})"
                    )
                    self.retried_requests += 1
                    time.sleep(delay)
                    continue
                self.failed_requests += 1
                raise
            except MalformedOracleResponse:
                self.failed_requests += 1
                raise

        # Loop always returns or raises
        raise OracleCommunicationError("Max retries exceeded")

    @staticmethod
    def _is_retryable(error: OracleCommunicationError) -> bool:
        """Timeouts, connection failures, rate limits and server errors."""
        status = error.status_code
        return status is None or status == 429 or 500 <= status < 600

    def _calculate_backoff_delay(self, attempt: int) -> float:
        """Calculate exponential backoff delay with jitter."""
        delay = self.base_delay * (2 ** attempt)
        delay += delay * 0.25 * random.random()
        return min(delay, self.max_delay)

    def is_model_available(self) -> bool:
        """Whether the service lists the configured model; False if it cannot be asked."""
        try:
            names = self.transport.list_models()
        except OracleCommunicationError as e:
            logger.warning(f"Could not check model availability: {e}")
            return False
        return any(self.model in name for name in names)

    def get_statistics(self) -> Dict[str, Any]:
        """Get client usage statistics."""
        success_rate = (
            self.successful_requests / self.total_requests * 100
            if self.total_requests > 0 else 0
        )

        return {
            'total_requests': self.total_requests,
            'successful_requests': self.successful_requests,
            'failed_requests': self.failed_requests,
            'retried_requests': self.retried_requests,
            'cache_hits': self.cache_hits,
            'success_rate_percent': round(success_rate, 2)
        }

    def close(self):
        close = getattr(self.transport, 'close', None)
        if close:
            close()


def create_oracle_client(
    config: Dict[str, Any],
    response_cache: Optional[OracleResponseCache] = None
) -> OracleClient:
    """Build the transport and client described by the ``api`` config section."""
    api_config = config['api']
    timeout = float(api_config['timeout_seconds'])

    if api_config.get('provider', 'ollama') == 'openai':
        transport = OpenAIChatTransport(
            api_config['host'], timeout=timeout, api_key=api_config.get('api_key')
        )
    else:
        transport = OllamaChatTransport(api_config['host'], timeout=timeout)

    return OracleClient(
        transport,
        model=api_config['model'],
        temperature=api_config.get('temperature', 0.0),
        top_p=api_config.get('top_p', 0.1),
        max_retries=api_config.get('max_retries', 0),
        response_cache=response_cache
    )
