from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import requests
from requests import Response, Session
from requests.exceptions import RequestException, Timeout

from .config import GEMINI_BASE_URL
from .models import CompletionResult, ContentPart, ErrorKind, GenerationConfig

logger = logging.getLogger(__name__)

_TIMEOUT_STATUS_CODES = {408}


class GeminiError(RuntimeError):
    """Raised when a generation request fails; ``kind`` says how the policy should react."""

    def __init__(self, message: str, *, kind: ErrorKind, status_code: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.kind.is_transient or self.kind is ErrorKind.MALFORMED_RESPONSE


@dataclass(slots=True)
class GeminiSettings:
    base_url: str = GEMINI_BASE_URL
    timeout: float = 60.0
    system_prompt: str = ""


def classify_status(status_code: int) -> ErrorKind:
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code in _TIMEOUT_STATUS_CODES:
        return ErrorKind.TIMEOUT
    if 500 <= status_code < 600:
        return ErrorKind.SERVER_ERROR
    return ErrorKind.CLIENT_ERROR


def redact_api_key(api_key: Optional[str]) -> str:
    if not api_key or len(api_key) < 10:
        return "[REDACTED]"
    return f"{api_key[:8]}...{api_key[-4:]}"


class GeminiClient:
    """Executes exactly one ``generateContent`` call per invocation. Retries live in the policy."""

    def __init__(self, settings: Optional[GeminiSettings] = None, session: Optional[Session] = None):
        self.settings = settings or GeminiSettings()
        if not self.settings.base_url:
            raise ValueError("Gemini base URL is required.")
        self._session = session or requests.Session()

    def execute(
        self,
        model_id: str,
        parts: Sequence[ContentPart],
        generation_config: GenerationConfig,
        credential: Optional[str],
        timeout: Optional[float] = None,
    ) -> CompletionResult:
        if not credential:
            raise GeminiError("No API key available", kind=ErrorKind.CONFIGURATION)
        if not model_id:
            raise GeminiError("No model available", kind=ErrorKind.CONFIGURATION)
        payload = self.build_request_body(parts, generation_config)
        url = self._url(f"models/{model_id}:generateContent")
        request_timeout = timeout if timeout is not None else self.settings.timeout
        # requests only bounds each socket read; the deadline covers the whole exchange.
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="gemini-call")
        future = executor.submit(
            self._session.post,
            url,
            json=payload,
            headers=self._headers(credential),
            timeout=request_timeout,
        )
        try:
            response: Response = future.result(timeout=request_timeout)
        except FutureTimeoutError as exc:
            logger.warning("Gemini call to %s exceeded %gs; abandoning it.", model_id, request_timeout)
            raise GeminiError(f"Request timeout after {request_timeout:g}s", kind=ErrorKind.TIMEOUT) from exc
        except Timeout as exc:
            raise GeminiError(f"Request timeout after {request_timeout:g}s", kind=ErrorKind.TIMEOUT) from exc
        except RequestException as exc:
            raise GeminiError(f"Failed to reach Gemini: {exc}", kind=ErrorKind.SERVER_ERROR) from exc
        finally:
            executor.shutdown(wait=False)

        if response.status_code >= 400:
            message = self._error_message(response)
            raise GeminiError(message, kind=classify_status(response.status_code), status_code=response.status_code)

        try:
            data = response.json()
        except ValueError as exc:
            raise GeminiError(
                f"Invalid JSON response from Gemini: {self._clip_text(response.text)}",
                kind=ErrorKind.MALFORMED_RESPONSE,
                status_code=response.status_code,
            ) from exc
        return self._parse_completion(data, model_id, response.status_code)

    def build_request_body(self, parts: Sequence[ContentPart], generation_config: GenerationConfig) -> Dict[str, Any]:
        payload_parts: List[Dict[str, Any]] = [part.to_payload() for part in parts]
        system_prompt = (self.settings.system_prompt or "").strip()
        if system_prompt:
            for item in payload_parts:
                if "text" in item:
                    item["text"] = f"{system_prompt}\n\n{item['text']}"
                    break
            else:
                payload_parts.insert(0, {"text": system_prompt})
        return {
            "contents": [{"parts": payload_parts}],
            "generationConfig": generation_config.to_payload(),
        }

    def list_models(self, credential: str, timeout: float = 20.0) -> List[Dict[str, Any]]:
        if not credential:
            raise GeminiError("No API key available", kind=ErrorKind.CONFIGURATION)
        try:
            response = self._session.get(self._url("models"), headers=self._headers(credential), timeout=timeout)
        except RequestException as exc:
            raise GeminiError(f"Failed to list models: {exc}", kind=ErrorKind.SERVER_ERROR) from exc
        if response.status_code >= 400:
            raise GeminiError(
                f"Failed to list models: {response.status_code}",
                kind=classify_status(response.status_code),
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise GeminiError("Model list is not valid JSON", kind=ErrorKind.MALFORMED_RESPONSE) from exc
        models = data.get("models") if isinstance(data, dict) else None
        return [entry for entry in models or [] if isinstance(entry, dict)]

    def test_api_key(self, api_key: str, timeout: float = 20.0) -> bool:
        try:
            self.list_models(api_key, timeout=timeout)
        except GeminiError as exc:
            logger.info("API key %s rejected: %s", redact_api_key(api_key), exc)
            return False
        return True

    def _parse_completion(self, data: Any, model_id: str, status_code: int) -> CompletionResult:
        try:
            candidate = data["candidates"][0]
            parts = candidate["content"]["parts"]
            text = "".join(str(part.get("text") or "") for part in parts if isinstance(part, dict))
        except (KeyError, IndexError, TypeError) as exc:
            raise GeminiError(
                f"Invalid response format from API: {self._clip_text(str(data))}",
                kind=ErrorKind.MALFORMED_RESPONSE,
                status_code=status_code,
            ) from exc
        if not text.strip():
            finish_reason = candidate.get("finishReason") if isinstance(candidate, dict) else None
            raise GeminiError(
                f"Empty completion from {model_id} (finish reason: {finish_reason or 'unknown'})",
                kind=ErrorKind.MALFORMED_RESPONSE,
                status_code=status_code,
            )
        return CompletionResult(text=text, finish_reason=candidate.get("finishReason"), model=model_id)

    def _error_message(self, response: Response) -> str:
        reason = getattr(response, "reason", "") or ""
        fallback = f"API request failed: {response.status_code} {reason}".strip()
        try:
            data = response.json()
        except ValueError:
            return fallback
        if isinstance(data, dict):
            block = data.get("error")
            if isinstance(block, dict) and block.get("message"):
                return f"{response.status_code}: {block['message']}"
        return fallback

    @staticmethod
    def _headers(credential: str) -> Dict[str, str]:
        return {"Content-Type": "application/json", "x-goog-api-key": credential}

    def _url(self, path: str) -> str:
        base = self.settings.base_url.rstrip("/")
        return f"{base}/{path.lstrip('/')}"

    @staticmethod
    def _clip_text(text: str, limit: int = 800) -> str:
        snippet = (text or "").strip()
        if not snippet:
            return "<empty response>"
        if len(snippet) <= limit:
            return snippet
        return f"{snippet[:limit]}…"
