"""Execution session implementations."""

from auto_resume.session.base import ExecutionSession, SessionError
from auto_resume.session.replay import ReplaySession
from auto_resume.session.tmux import TmuxSession

__all__ = [
    "ExecutionSession",
    "ReplaySession",
    "SessionError",
    "TmuxSession",
]
