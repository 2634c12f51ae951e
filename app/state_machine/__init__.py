"""
State Machine Module for Conversation Flows
"""
from app.state_machine.states import FlowType, Intent
from app.state_machine.manager import SessionManager
from app.state_machine.handlers import IncomingMessage, MessageResponse
from app.state_machine.router import MessageRouter

__all__ = [
    "FlowType",
    "Intent",
    "SessionManager",
    "IncomingMessage",
    "MessageResponse",
    "MessageRouter",
]
