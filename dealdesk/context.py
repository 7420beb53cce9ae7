from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
event_depth_var: ContextVar[int] = ContextVar("event_depth", default=0)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def enter_event_handler() -> Token[int]:
    return event_depth_var.set(event_depth_var.get() + 1)


def exit_event_handler(token: Token[int]) -> None:
    event_depth_var.reset(token)


def get_event_depth() -> int:
    return event_depth_var.get()
