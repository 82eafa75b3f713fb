"""AI analysis of the current snippet; results live only in the application state."""

import logging
from typing import Any, Dict, Optional

from bugsentinel.data.services.sync_types import ServiceResult, Snippet


class AnalysisService:
    def __init__(self, ai_client, state, logger_obj: Optional[logging.Logger] = None):
        self.ai_client = ai_client
        self.state = state
        self.logger = logger_obj or logging.getLogger(__name__)

    def is_available(self) -> bool:
        return self.ai_client.is_available()

    def get_rate_limit_status(self) -> Dict[str, Any]:
        return self.ai_client.get_rate_limit_status()

    def _target(self, snippet: Optional[Snippet]) -> Optional[Snippet]:
        return snippet or self.state.current_snippet

    async def analyze(self, snippet: Optional[Snippet] = None, prompt: Optional[str] = None) -> ServiceResult:
        """Find issues in ``snippet`` (default: the current one)."""
        target = self._target(snippet)
        if target is None:
            return ServiceResult(error="No snippet selected")

        self.state.set_analyzing(True)
        try:
            result = await self.ai_client.analyze_code(target.code, target.language, prompt=prompt)
        finally:
            self.state.set_analyzing(False)

        if result.ok:
            self.state.set_analysis_results(result.data)
            self.logger.info(f"Analysis of {target.id} found {len(result.data)} issue(s)")
        return result

    async def refactor(self, snippet: Optional[Snippet] = None) -> ServiceResult:
        target = self._target(snippet)
        if target is None:
            return ServiceResult(error="No snippet selected")

        self.state.set_analyzing(True)
        try:
            result = await self.ai_client.get_refactoring_suggestions(
                target.code, target.language, issues=self.state.analysis_results or None
            )
        finally:
            self.state.set_analyzing(False)

        if result.ok:
            self.state.set_refactor_result(result.data)
        return result

    async def suggest(self, snippet: Optional[Snippet] = None, context: Optional[str] = None) -> ServiceResult:
        target = self._target(snippet)
        if target is None:
            return ServiceResult(error="No snippet selected")

        self.state.set_analyzing(True)
        try:
            result = await self.ai_client.get_code_suggestions(target.code, target.language, context=context)
        finally:
            self.state.set_analyzing(False)

        if result.ok:
            self.state.set_code_suggestions(result.data)
        return result

    async def analyze_all(self, snippet: Optional[Snippet] = None) -> ServiceResult:
        """Issues, refactoring and suggestions from a single request."""
        target = self._target(snippet)
        if target is None:
            return ServiceResult(error="No snippet selected")

        self.state.set_analyzing(True)
        try:
            result = await self.ai_client.analyze_all(target.code, target.language)
        finally:
            self.state.set_analyzing(False)

        if result.ok:
            self.state.set_analysis_results(result.data["analysis_results"])
            self.state.set_refactor_result(result.data["refactor_result"])
            self.state.set_code_suggestions(result.data["code_suggestions"])
        return result
