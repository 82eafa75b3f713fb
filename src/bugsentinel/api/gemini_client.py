"""Client for the generative model used for code analysis and refactoring."""

import asyncio
import hashlib
import json
import logging
import re
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

import aiohttp
import backoff

from bugsentinel.config.api import AIConfig
from bugsentinel.data.services.sync_types import (
    AnalysisResult,
    CodeSuggestion,
    RefactorResult,
    ServiceResult,
)

from .error_handling import (
    AIServiceUnavailableError,
    MalformedResponseError,
    RateLimitExceededError,
    TransientRemoteError,
    categorize_error,
    error_message,
)

_module_logger = logging.getLogger(__name__)

_JSON_BLOCK = re.compile(r"\{[\s\S]*\}")
_TRAILING_COMMA_BRACE = re.compile(r",\s*}")
_TRAILING_COMMA_BRACKET = re.compile(r",\s*]")

_ISSUE_SCHEMA = """{
  "issues": [
    {
      "type": "syntax|logic|security|performance|style",
      "severity": "low|medium|high",
      "message": "Description of the issue",
      "line": 1,
      "column": 1,
      "suggestion": "How to fix this issue",
      "fixedCode": "Corrected code snippet"
    }
  ]
}"""

_REFACTOR_SCHEMA = """{
  "refactoredCode": "The improved code",
  "explanation": "Explanation of the refactoring changes",
  "improvements": ["List of specific improvements made"]
}"""

_SUGGESTION_SCHEMA = """{
  "suggestions": [
    {
      "suggestion": "Brief description of the suggestion",
      "code": "Improved code snippet",
      "explanation": "Detailed explanation of the improvement"
    }
  ]
}"""


def _backoff_handler(details):
    exception = details["exception"]
    _module_logger.warning(
        f"AI request backing off {details['wait']:.1f}s after {categorize_error(exception).value} error: {exception}"
    )


def extract_json(text: str) -> Dict[str, Any]:
    """Pull the outermost JSON object out of model text, tolerating trailing commas."""
    match = _JSON_BLOCK.search(text or "")
    if not match:
        raise MalformedResponseError("No JSON found in response")
    cleaned = _TRAILING_COMMA_BRACE.sub("}", match.group(0))
    cleaned = _TRAILING_COMMA_BRACKET.sub("]", cleaned)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise MalformedResponseError(f"Model returned invalid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise MalformedResponseError("Model JSON is not an object")
    return parsed


def _code_block(language: str, code: str) -> str:
    return f"```{language}\n{code}\n```"


class GeminiClient:
    """
    Async client for the Generative Language ``generateContent`` endpoint.

    Every public method returns a ``ServiceResult``; missing API key, quota
    exhaustion, transport errors and unparsable answers all become its
    ``error`` string.
    """

    def __init__(
        self,
        api_key: Optional[str],
        model: str = AIConfig.MODEL_NAME,
        http_session: Optional[aiohttp.ClientSession] = None,
        clock: Callable[[], float] = time.time,
        logger_obj: Optional[logging.Logger] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.clock = clock
        self.logger = logger_obj or logging.getLogger(__name__)
        self._http = http_session
        self._owns_http = http_session is None
        self._requests: Deque[float] = deque()
        self._cache: Dict[str, Tuple[float, Dict[str, Any]]] = {}

    def is_available(self) -> bool:
        return bool(self.api_key)

    async def close(self) -> None:
        if self._http is not None and self._owns_http and not self._http.closed:
            await self._http.close()

    # ----------------------------- Quota -----------------------------
    def _prune(self, now: float) -> None:
        while self._requests and now - self._requests[0] >= AIConfig.RATE_LIMIT_WINDOW_SECONDS:
            self._requests.popleft()

    def _prune_cache(self, now: float) -> None:
        expired = [key for key, (stored, _) in self._cache.items() if now - stored >= AIConfig.CACHE_TTL_SECONDS]
        for key in expired:
            del self._cache[key]

    def get_rate_limit_status(self) -> Dict[str, Any]:
        """Requests left in the rolling window and when the oldest one expires."""
        now = self.clock()
        self._prune(now)
        remaining = AIConfig.RATE_LIMIT_REQUESTS - len(self._requests)
        reset_time = (self._requests[0] if self._requests else now) + AIConfig.RATE_LIMIT_WINDOW_SECONDS
        return {"requests_remaining": max(remaining, 0), "reset_time": reset_time}

    def _reserve(self) -> None:
        now = self.clock()
        self._prune(now)
        if len(self._requests) >= AIConfig.RATE_LIMIT_REQUESTS:
            raise RateLimitExceededError("Rate limit exceeded. Please try again later.")
        self._requests.append(now)

    # ----------------------------- Transport -----------------------------
    async def _generate(self, prompt: str) -> str:
        if not self.is_available():
            raise AIServiceUnavailableError("AI analysis is not available: no API key configured")
        self._reserve()
        return await self._post(prompt)

    @backoff.on_exception(
        backoff.expo,
        (aiohttp.ClientError, asyncio.TimeoutError, TransientRemoteError),
        max_tries=AIConfig.MAX_RETRIES,
        on_backoff=_backoff_handler,
        jitter=backoff.full_jitter,
    )
    async def _post(self, prompt: str) -> str:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
            self._owns_http = True

        body = {"contents": [{"parts": [{"text": prompt}]}]}
        async with self._http.post(
            AIConfig.get_generate_url(self.model),
            params={"key": self.api_key},
            json=body,
            timeout=aiohttp.ClientTimeout(total=AIConfig.REQUEST_TIMEOUT),
        ) as resp:
            text = await resp.text()
            if resp.status >= 500:
                raise TransientRemoteError(f"AI service error {resp.status}", status=resp.status)
            try:
                payload = json.loads(text) if text else None
            except json.JSONDecodeError as e:
                raise MalformedResponseError(f"AI service returned non-JSON body: {e}") from e
            if resp.status >= 400:
                detail = (payload or {}).get("error", {}).get("message") if isinstance(payload, dict) else None
                raise AIServiceUnavailableError(detail or f"AI request failed with status {resp.status}")

        try:
            parts = payload["candidates"][0]["content"]["parts"]
            return "".join(part.get("text", "") for part in parts)
        except (KeyError, IndexError, TypeError) as e:
            raise MalformedResponseError(f"Unexpected AI response shape: {e}") from e

    # ----------------------------- Parsing -----------------------------
    @staticmethod
    def _issues(raw_issues: List[Dict[str, Any]]) -> List[AnalysisResult]:
        stamp = int(time.time() * 1000)
        return [
            AnalysisResult(
                id=f"issue-{stamp}-{index}",
                type=issue.get("type") or "logic",
                severity=issue.get("severity") or "medium",
                message=issue.get("message") or "Issue found",
                line=int(issue.get("line") or 1),
                column=int(issue.get("column") or 1),
                suggestion=issue.get("suggestion"),
                fixed_code=issue.get("fixedCode"),
            )
            for index, issue in enumerate(raw_issues or [])
        ]

    @staticmethod
    def _refactor(code: str, raw: Dict[str, Any]) -> RefactorResult:
        return RefactorResult(
            original_code=code,
            refactored_code=raw.get("refactoredCode") or code,
            explanation=raw.get("explanation") or "Code refactored",
            improvements=raw.get("improvements") or ["Code improved"],
        )

    @staticmethod
    def _suggestions(raw: List[Dict[str, Any]]) -> List[CodeSuggestion]:
        return [
            CodeSuggestion(
                suggestion=item.get("suggestion", ""),
                code=item.get("code", ""),
                explanation=item.get("explanation", ""),
            )
            for item in raw or []
        ]

    async def _run(self, prompt: str, parse: Callable[[Dict[str, Any]], Any], failure: str) -> ServiceResult:
        try:
            raw = extract_json(await self._generate(prompt))
            try:
                data = parse(raw)
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                raise MalformedResponseError(f"Unexpected fields in model JSON: {e}") from e
            return ServiceResult(data=data)
        except MalformedResponseError as e:
            self.logger.error(f"Failed to parse AI response: {e}")
            return ServiceResult(error=f"{failure}: could not parse the model response. Please try again.")
        except (AIServiceUnavailableError, RateLimitExceededError) as e:
            return ServiceResult(error=str(e))
        except (aiohttp.ClientError, asyncio.TimeoutError, TransientRemoteError) as e:
            self.logger.error(f"AI request failed: {e}")
            return ServiceResult(error=error_message(e, failure))

    # ----------------------------- Operations -----------------------------
    async def analyze_code(self, code: str, language: str, prompt: Optional[str] = None) -> ServiceResult:
        """Find bugs and issues; data is a list of AnalysisResult."""
        instruction = prompt or (
            f"Analyze this {language} code for bugs, errors, and issues. "
            "Provide specific line numbers and suggestions for fixes."
        )
        full_prompt = (
            f"{instruction}\n\nCode to analyze:\n{_code_block(language, code)}\n\n"
            f"Respond with JSON in this format:\n{_ISSUE_SCHEMA}"
        )
        return await self._run(full_prompt, lambda raw: self._issues(raw.get("issues")), "Analysis failed")

    async def get_refactoring_suggestions(
        self, code: str, language: str, issues: Optional[List[AnalysisResult]] = None
    ) -> ServiceResult:
        """Propose a refactored version; data is a RefactorResult."""
        known = ""
        if issues:
            known = "\nKnown issues:\n" + "\n".join(f"- line {i.line}: {i.message}" for i in issues) + "\n"
        prompt = (
            f"Refactor this {language} code to improve its structure, readability, and maintainability.\n\n"
            f"Original code:\n{_code_block(language, code)}\n{known}\n"
            f"Respond with JSON in this format:\n{_REFACTOR_SCHEMA}"
        )
        return await self._run(prompt, lambda raw: self._refactor(code, raw), "Refactoring failed")

    async def get_code_suggestions(self, code: str, language: str, context: Optional[str] = None) -> ServiceResult:
        prompt = (
            f"Provide code suggestions and improvements for this {language} code.\n\n"
            f"Code:\n{_code_block(language, code)}\n\n"
            + (f"Context: {context}\n\n" if context else "")
            + f"Respond with JSON in this format:\n{_SUGGESTION_SCHEMA}"
        )
        return await self._run(prompt, lambda raw: self._suggestions(raw.get("suggestions")), "Suggestions failed")

    async def analyze_all(self, code: str, language: str) -> ServiceResult:
        """Issues, refactoring and suggestions in one request, cached per code and language.

        data is a dict with ``analysis_results``, ``refactor_result`` and
        ``code_suggestions``.
        """
        cache_key = hashlib.sha256(f"{language}\x00{code}".encode("utf-8")).hexdigest()
        cached = self._cache.get(cache_key)
        if cached and self.clock() - cached[0] < AIConfig.CACHE_TTL_SECONDS:
            self.logger.debug("Serving combined analysis from cache")
            return ServiceResult(data=cached[1])

        prompt = (
            f"Analyze this {language} code comprehensively. Provide analysis, refactoring suggestions, "
            f"and code improvements in one response.\n\nCode to analyze:\n{_code_block(language, code)}\n\n"
            "Respond with JSON with three keys: \"analysis\" holding\n"
            f"{_ISSUE_SCHEMA}\n\"refactoring\" holding\n{_REFACTOR_SCHEMA}\n"
            "and \"suggestions\" holding the suggestions list of\n"
            f"{_SUGGESTION_SCHEMA}"
        )

        def parse(raw: Dict[str, Any]) -> Dict[str, Any]:
            refactoring = raw.get("refactoring")
            return {
                "analysis_results": self._issues((raw.get("analysis") or {}).get("issues")),
                "refactor_result": self._refactor(code, refactoring) if refactoring else None,
                "code_suggestions": self._suggestions(raw.get("suggestions")),
            }

        result = await self._run(prompt, parse, "Analysis failed")
        if result.ok:
            now = self.clock()
            self._prune_cache(now)
            self._cache[cache_key] = (now, result.data)
        return result
