from fastapi import Request

from .state import AgentState


def get_state(request: Request) -> AgentState:
    return request.app.state.agent
