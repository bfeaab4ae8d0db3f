"""
Session-facing agent.

Wraps the action handler so that domain failures come back as unsuccessful
results rather than exceptions. The agent reads the session but never writes
to it; recording and merging are the gateway's job.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from toolgate.agent.actions import ActionHandler
from toolgate.errors import GatewayError
from toolgate.models import ActionRequest, ActionResult, CandidateAction
from toolgate.sessions import Session

logger = logging.getLogger(__name__)


class CadCamAgent:
    def __init__(self, action_handler: Optional[ActionHandler] = None):
        self.action_handler = action_handler or ActionHandler()

    def get_available_actions(self, session: Session) -> List[CandidateAction]:
        return self.action_handler.get_available_actions(session.context)

    def execute_action(self, request: ActionRequest, session: Session) -> ActionResult:
        try:
            return self.action_handler.execute(request.action, request.parameters, session.context)
        except GatewayError as e:
            logger.warning(f"Action {request.action} failed for session {session.id}: {e.message}")
            if e.code == "unknown_action":
                message = e.message
            else:
                message = f'Failed to execute action "{request.action}": {e.message}'
            return ActionResult(success=False, message=message)
