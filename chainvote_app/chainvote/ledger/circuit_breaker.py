import logging
import socket

import requests
from django.conf import settings
from django.core.cache import cache
from web3.exceptions import TimeExhausted

logger = logging.getLogger("chainvote.ledger")

_LEDGER_CIRCUIT_OPEN_CACHE_KEY = "ledger_circuit_open"
_LEDGER_CIRCUIT_FAILURES_CACHE_KEY = "ledger_circuit_consecutive_failures"


def _log_circuit_breaker_transition(
    *,
    from_state: str,
    to_state: str,
    failure_count: int,
    cooldown_seconds: int,
) -> None:
    logger.warning(
        "chainvote.ledger.circuit_breaker.transition from_state=%s to_state=%s failure_count=%d cooldown_seconds=%d",
        from_state,
        to_state,
        failure_count,
        cooldown_seconds,
        extra={
            "event": "chainvote.ledger.circuit_breaker.transition",
            "component": "ledger",
            "from_state": from_state,
            "to_state": to_state,
            "outcome": "transition",
            "failure_count": failure_count,
            "cooldown_seconds": cooldown_seconds,
        },
    )


def ledger_circuit_open() -> bool:
    try:
        return bool(cache.get(_LEDGER_CIRCUIT_OPEN_CACHE_KEY))
    except Exception:
        return False


def _open_ledger_circuit(*, failure_count: int = 0) -> None:
    cooldown_seconds = settings.LEDGER_CIRCUIT_BREAKER_COOLDOWN_SECONDS
    was_open = ledger_circuit_open()

    try:
        cache.add(_LEDGER_CIRCUIT_OPEN_CACHE_KEY, True, timeout=cooldown_seconds)
    except Exception:
        return

    if not was_open and ledger_circuit_open():
        _log_circuit_breaker_transition(
            from_state="closed",
            to_state="open",
            failure_count=failure_count,
            cooldown_seconds=cooldown_seconds,
        )


def reset_ledger_circuit_failures() -> None:
    was_open = ledger_circuit_open()

    try:
        cache.delete(_LEDGER_CIRCUIT_FAILURES_CACHE_KEY)
        cache.delete(_LEDGER_CIRCUIT_OPEN_CACHE_KEY)
    except Exception:
        return

    if was_open:
        _log_circuit_breaker_transition(
            from_state="open",
            to_state="closed",
            failure_count=0,
            cooldown_seconds=settings.LEDGER_CIRCUIT_BREAKER_COOLDOWN_SECONDS,
        )


def record_ledger_availability_failure() -> None:
    cooldown_seconds = settings.LEDGER_CIRCUIT_BREAKER_COOLDOWN_SECONDS
    threshold = settings.LEDGER_CIRCUIT_BREAKER_CONSECUTIVE_FAILURES

    try:
        cache.add(_LEDGER_CIRCUIT_FAILURES_CACHE_KEY, 0, timeout=cooldown_seconds)
        failures = int(cache.incr(_LEDGER_CIRCUIT_FAILURES_CACHE_KEY))
    except Exception:
        return

    if failures >= threshold:
        _open_ledger_circuit(failure_count=failures)


def is_ledger_availability_error(exc: BaseException) -> bool:
    # TimeExhausted is a receipt wait running out, not a dead node.
    if isinstance(exc, TimeExhausted):
        return False
    return isinstance(
        exc,
        (
            requests.exceptions.Timeout,
            requests.exceptions.ConnectionError,
            requests.exceptions.SSLError,
            socket.timeout,
            ConnectionError,
        ),
    )


__all__ = [
    "ledger_circuit_open",
    "reset_ledger_circuit_failures",
    "record_ledger_availability_failure",
    "is_ledger_availability_error",
]
