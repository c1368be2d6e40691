"""Evaluator that delegates the completion decision to an advisor agent.

The advisor is asked, in the same session, to review the transcript.  It either
calls the ``iteration_loop_complete`` tool (ending the loop out-of-band) or
answers with feedback.  The evaluation itself therefore never reports
completion; it only keeps the loop moving with a note about the pending review.
"""
from __future__ import annotations

import logging

from agentloop.core.iteration import EvaluationRequest, EvaluationResult
from agentloop.core.templates import advisor_evaluation_template
from agentloop.integrations.host_client import HostClient

logger = logging.getLogger("agentloop.advisor")

DEFAULT_ADVISOR_AGENT = "advisor"


class AdvisorEvaluator:
    def __init__(self, host: HostClient, agent: str = DEFAULT_ADVISOR_AGENT) -> None:
        self.host = host
        self.agent = agent or DEFAULT_ADVISOR_AGENT

    async def __call__(self, request: EvaluationRequest) -> EvaluationResult:
        prompt = advisor_evaluation_template(
            session_id=request.session_id,
            iteration=request.iteration,
            max_iterations=request.max_iterations,
            prompt=request.prompt,
            transcript=request.transcript,
        )
        try:
            await self.host.send_instruction(request.session_id, prompt, agent=self.agent)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to trigger advisor evaluation for %s: %s", request.session_id, exc)
            return EvaluationResult(
                is_complete=False,
                feedback=f"Failed to trigger advisor evaluation: {exc}. Please continue working on the task.",
                confidence=0.3,
            )
        logger.info(
            "Advisor evaluation requested for %s (iteration %d/%d)",
            request.session_id,
            request.iteration,
            request.max_iterations,
        )
        return EvaluationResult(
            is_complete=False,
            feedback=(
                f"Advisor agent triggered for evaluation (iteration {request.iteration}/{request.max_iterations}). "
                "Awaiting advisor response..."
            ),
            confidence=0.5,
        )
